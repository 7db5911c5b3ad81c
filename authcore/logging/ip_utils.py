"""IP address logging policy."""

from __future__ import annotations

import ipaddress
import os

IP_MODES = {"full", "anonymized", "off"}


def anonymize_ip(ip: str | None, mode: str | None = None) -> str | None:
    """Render ``ip`` according to ``mode`` (``LOG_IP_MODE`` when omitted).

    ``anonymized`` keeps the /24 (IPv4) or /64 (IPv6) network, ``off``
    drops the address entirely.
    """

    mode_value = (mode if mode is not None else os.getenv("LOG_IP_MODE") or "full").lower()
    if mode_value not in IP_MODES:
        mode_value = "full"
    if mode_value == "off":
        return None

    if not ip or ip == "unknown":
        return "unknown"
    try:
        parsed = ipaddress.ip_address(ip)
    except ValueError:
        return "unknown"

    if mode_value == "anonymized":
        prefix = 24 if parsed.version == 4 else 64
        return ipaddress.ip_network(f"{parsed}/{prefix}", strict=False).with_prefixlen
    return str(parsed)
