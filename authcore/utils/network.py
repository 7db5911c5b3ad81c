"""Client address resolution behind trusted proxies."""

from __future__ import annotations

import ipaddress
from collections.abc import Iterable
from functools import lru_cache

from fastapi import Request

from ..config import DEFAULT_TRUSTED_PROXIES

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


@lru_cache(maxsize=16)
def _parse_networks(ranges: tuple[str, ...]) -> tuple[IPNetwork, ...]:
    return tuple(ipaddress.ip_network(item, strict=False) for item in ranges)


def _normalise_ip(value: str | None) -> str | None:
    if not value:
        return None
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None


def _is_trusted_proxy(host: str | None, networks: Iterable[IPNetwork]) -> bool:
    if not host:
        return False
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return False
    return any(ip in network for network in networks)


def _trusted_ranges(request: Request) -> tuple[str, ...]:
    app = request.scope.get("app")
    settings = getattr(app.state, "settings", None) if app is not None else None
    if settings is None:
        return DEFAULT_TRUSTED_PROXIES
    return settings.trusted_proxies


def get_client_ip(request: Request) -> str:
    """Return the originating client IP address for a request.

    ``X-Forwarded-For`` is honoured only when the direct peer sits inside a
    trusted proxy range.
    """

    networks = _parse_networks(_trusted_ranges(request))
    host_ip: str | None = None
    trusted_proxy = False
    if request.client and request.client.host:
        host_ip = _normalise_ip(request.client.host)
        if host_ip is None:
            # Non-IP peers such as the test transport's "testclient".
            trusted_proxy = True
        elif not _is_trusted_proxy(host_ip, networks):
            return host_ip
        else:
            trusted_proxy = True

    if trusted_proxy:
        xff = request.headers.get("X-Forwarded-For")
        if xff:
            first = _normalise_ip(xff.split(",")[0])
            if first:
                return first

    if host_ip:
        return host_ip
    return "unknown"
