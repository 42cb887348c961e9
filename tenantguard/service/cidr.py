"""IPv4 allow-list matching.

Patterns are either a literal dotted quad (exact string match) or
``network/prefix``. Malformed input never raises; it simply does not match.
"""

from __future__ import annotations

import re
from typing import Optional

IP_PATTERN_RE = re.compile(r"^([0-9]{1,3}\.){3}[0-9]{1,3}(/[0-9]{1,2})?$")


def _to_bits(ip: str) -> Optional[str]:
    parts = ip.split(".")
    if len(parts) != 4:
        return None
    bits = []
    for part in parts:
        if not part.isdigit() or not part.isascii():
            return None
        octet = int(part)
        if octet > 255:
            return None
        bits.append(format(octet, "08b"))
    return "".join(bits)


def ip_matches_cidr(ip: str, pattern: str) -> bool:
    if not ip or not pattern:
        return False
    if "/" not in pattern:
        return ip == pattern

    network, _, prefix_raw = pattern.partition("/")
    if not prefix_raw.isdigit() or not prefix_raw.isascii():
        return False
    prefix = int(prefix_raw)
    if prefix > 32:
        return False

    ip_bits = _to_bits(ip)
    network_bits = _to_bits(network)
    if ip_bits is None or network_bits is None:
        return False
    return ip_bits[:prefix] == network_bits[:prefix]


def is_valid_ip_pattern(pattern: str) -> bool:
    """Syntax check applied before a whitelist entry is written."""
    return bool(pattern) and IP_PATTERN_RE.fullmatch(pattern) is not None


__all__ = ["IP_PATTERN_RE", "ip_matches_cidr", "is_valid_ip_pattern"]
