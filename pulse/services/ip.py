"""
Client address helpers.

The collector never stores a raw address: it extracts the caller's IP
from proxy headers and truncates it before any lookup or persistence.
"""

from typing import Mapping

UNKNOWN_IP = "unknown"


def get_client_ip(headers: Mapping[str, str]) -> str:
    """
    Extract the client IP from proxy headers.

    Priority: first address of X-Forwarded-For > X-Real-IP > "unknown".
    Expects case-insensitive headers (Starlette ``Headers``).
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    return UNKNOWN_IP


def anonymize_ip(ip: str) -> str:
    """
    Truncate an address for privacy.

    IPv4: zero the last octet (203.0.113.55 -> 203.0.113.0)
    IPv6: keep the first three groups, a /48 (2001:db8:85a3::8a2e -> 2001:db8:85a3::)
    Anything else is returned unchanged.
    """
    if not ip:
        return ""

    if "." in ip:
        parts = ip.split(".")
        if len(parts) == 4:
            return f"{parts[0]}.{parts[1]}.{parts[2]}.0"

    if ":" in ip:
        parts = ip.split(":")
        if len(parts) >= 3:
            return f"{parts[0]}:{parts[1]}:{parts[2]}::"

    return ip
