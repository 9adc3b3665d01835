"""Tracker key resolution for rate limiting.

A tracker key names the counter bucket a request is charged against. The
policy prefers the authenticated user over network identity so that limits
follow the logical user when known, and fall back to the client address for
anonymous traffic.

Priority (first match wins):
- authenticated user id -> ``"user:<id>"``
- primary client address -> address verbatim (no prefix, so existing
  address-keyed buckets keep working)
- connection-layer address -> address verbatim
- nothing usable -> ``"unknown"``
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from fastapi import Request

USER_KEY_PREFIX = "user:"
UNKNOWN_TRACKER_KEY = "unknown"


@dataclass(frozen=True)
class RequestIdentity:
    """Identity signals of an inbound request, in priority order.

    Attributes:
        user_id: Authenticated user identifier set by upstream auth.
        ip: Primary client address (proxy-reported when trusted).
        remote_address: Peer address of the underlying connection.
    """

    user_id: str | None = None
    ip: str | None = None
    remote_address: str | None = None


TrackerStrategy = Callable[[RequestIdentity], str]


def _present(value: Any) -> str | None:
    """Return value if it is a usable identity signal, else None."""
    if isinstance(value, str) and value.strip():
        return value
    return None


def resolve_tracker_key(identity: RequestIdentity) -> str:
    """Map request identity to the rate limit bucket key.

    Total and side-effect free: malformed or blank fields count as absent and
    the sentinel is returned when nothing usable remains.

    Args:
        identity: Identity signals extracted from the request.

    Returns:
        str: Non-empty tracker key.

    Examples:
        >>> resolve_tracker_key(RequestIdentity(user_id="42"))
        'user:42'
        >>> resolve_tracker_key(RequestIdentity(ip="203.0.113.7"))
        '203.0.113.7'
        >>> resolve_tracker_key(RequestIdentity(remote_address="::1"))
        '::1'
        >>> resolve_tracker_key(RequestIdentity())
        'unknown'
    """

    user_id = _present(getattr(identity, "user_id", None))
    if user_id is not None:
        return f"{USER_KEY_PREFIX}{user_id}"

    for address in (
        getattr(identity, "ip", None),
        getattr(identity, "remote_address", None),
    ):
        if _present(address) is not None:
            return address

    return UNKNOWN_TRACKER_KEY


def classify_tracker_key(key: str) -> str:
    """Return the key type ("user", "ip" or "unknown") for log fields."""
    if key.startswith(USER_KEY_PREFIX):
        return "user"
    if key == UNKNOWN_TRACKER_KEY:
        return "unknown"
    return "ip"


def _forwarded_address(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        # Leftmost non-empty entry is the originating client
        for hop in forwarded_for.split(","):
            if hop.strip():
                return hop.strip()
    real_ip = request.headers.get("x-real-ip")
    return real_ip.strip() if real_ip else None


def identity_from_request(request: Request, *, trust_proxy_headers: bool) -> RequestIdentity:
    """Extract identity signals from a FastAPI request.

    Args:
        request: Incoming request; ``request.state.user_id`` is read when an
            upstream middleware populated it.
        trust_proxy_headers: Whether X-Forwarded-For / X-Real-IP may be used
            as the primary client address.

    Returns:
        RequestIdentity with absent signals left as None.
    """

    user_id = getattr(request.state, "user_id", None)
    ip = _forwarded_address(request) if trust_proxy_headers else None
    remote_address = request.client.host if request.client else None
    return RequestIdentity(user_id=user_id, ip=ip, remote_address=remote_address)
