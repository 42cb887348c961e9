#!/usr/bin/env python3
"""Apply due quota resets for every tenant counter.

Counters reset lazily when they are checked or incremented. Run this from cron
or another scheduler so idle counters also roll over and get a usage log row.

Usage:
    DATABASE_URL=postgresql://... python scripts/quota_sweep.py
    python scripts/quota_sweep.py --at 2026-01-01T00:00:00+00:00 --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: Set to "true" to sweep the local memory store instead
"""
from __future__ import annotations

import argparse
import sys
from datetime import datetime, timezone
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _parse_at(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid ISO timestamp: {value}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def sweep(at: datetime | None = None, dry_run: bool = False) -> int:
    """Reset every due counter and return how many were (or would be) reset."""
    # Import here to avoid loading config before env vars are set
    from tenantguard.logging import request_context
    from tenantguard.service.quota import is_reset_due
    from tenantguard.service.runtime import get_runtime

    runtime = get_runtime()
    now = at or datetime.now(timezone.utc)

    with request_context(job="quota_sweep", dry_run=dry_run):
        if dry_run:
            due = [
                limit
                for limit in runtime.store.list_quota_limits()
                if is_reset_due(limit.reset_period, limit.last_reset_at, now)
            ]
            for limit in due:
                print(
                    f"would reset {limit.tenant_id}/{limit.resource_type} "
                    f"({limit.reset_period}, usage {limit.current_usage})"
                )
            return len(due)

        return runtime.quota.sweep_resets(now)


def main() -> int:
    parser = argparse.ArgumentParser(description="Apply due tenant quota resets")
    parser.add_argument(
        "--at",
        type=_parse_at,
        default=None,
        help="Evaluate resets as of this ISO-8601 time (default: now)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List counters that are due without resetting them",
    )
    args = parser.parse_args()

    try:
        count = sweep(args.at, dry_run=args.dry_run)
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    verb = "due" if args.dry_run else "reset"
    print(f"{count} quota counter(s) {verb}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
