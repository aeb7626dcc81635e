"""
Helpers for pulling client context out of Starlette requests.

The client address is the socket peer unless that peer is a configured
trusted proxy, in which case ``x-forwarded-for`` is walked from the right
and the first hop not owned by a trusted proxy wins. Hops further left
were written by the client and are never trusted.
"""

import ipaddress
from collections.abc import Iterable
from typing import Any

from starlette.requests import Request

from learnacademy.security.settings import get_settings


def is_trusted_proxy(address: str | None, trusted: Iterable[str]) -> bool:
    if not address:
        return False
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        ip = None
    for entry in trusted:
        if entry == address:
            return True
        if ip is None:
            continue
        try:
            if ip in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False


def get_client_ip(request: Request, trusted_proxies: Iterable[str] | None = None) -> str | None:
    """Client IP, honouring ``x-forwarded-for`` only from trusted proxies."""
    trusted = list(get_settings().trusted_proxies if trusted_proxies is None else trusted_proxies)
    peer = request.client.host if request.client else None
    if not is_trusted_proxy(peer, trusted):
        return peer

    forwarded = request.headers.get("x-forwarded-for")
    if not forwarded:
        return peer
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if not is_trusted_proxy(hop, trusted):
            return hop
    return hops[0] if hops else peer


def request_context(request: Request) -> dict[str, Any]:
    """Request fields recorded on audit events."""
    return {
        "ip_address": get_client_ip(request),
        "user_agent": request.headers.get("user-agent"),
        "method": request.method,
        "path": request.url.path,
        "request_id": getattr(request.state, "correlation_id", None) or request.headers.get("x-request-id"),
    }
