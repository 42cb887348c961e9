from __future__ import annotations

import contextlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Iterator, List, Optional

import structlog

# Correlation ID carried through every gate decision made for one request
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Substrings of field names whose values are credentials or contact data
_PII_KEYS = ("password", "secret", "token", "code", "email", "authorization", "api_key")
_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a correlation id for the current context, generating one if absent."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


@contextlib.contextmanager
def request_context(
    correlation_id: Optional[str] = None, **fields: Any
) -> Iterator[str]:
    """Scope a correlation id plus tenant/user fields to one block of gate calls.

    Everything logged inside the block carries the bound fields; the previous
    correlation id is restored on exit.
    """
    token = correlation_id_var.set(correlation_id or str(uuid.uuid4()))
    try:
        with structlog.contextvars.bound_contextvars(**fields):
            yield correlation_id_var.get()
    finally:
        correlation_id_var.reset(token)


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _mask(value: str) -> str:
    if len(value) > 4:
        return f"{value[:2]}***{value[-2:]}"
    return "***"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask string values of credential-like and contact fields.

    Counts and flags such as ``backup_codes_issued=10`` pass through untouched.
    """
    for key, value in list(event_dict.items()):
        if key == "event" or not isinstance(value, str):
            continue
        if any(pii in key.lower() for pii in _PII_KEYS):
            event_dict[key] = _mask(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def _build_processors(json_output: bool, development_mode: bool) -> List[Any]:
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )
    return processors


def configure_logging(
    log_level: Optional[str] = None,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """Configure structlog; unset arguments fall back to LOG_LEVEL, LOG_JSON and LOG_DEV_MODE."""
    level_name = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", "true")
    if development_mode is None:
        development_mode = _env_flag("LOG_DEV_MODE", "false")

    structlog.configure(
        processors=_build_processors(json_output, development_mode),
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_gate_decision(
    gate: str, allowed: bool, logger: Optional[Any] = None, **fields: Any
) -> None:
    """Emit one structured line per admission decision taken by a gate."""
    log = logger or get_logger("gates")
    if allowed:
        log.debug("gate_allowed", gate=gate, **fields)
    else:
        log.info("gate_denied", gate=gate, **fields)
