"""
Rate limiter: in-process sliding window.

Limits:
  - Per client IP on /track-event: configurable (default 240/min)

One landing page view emits at most ~7 events, so the default leaves
plenty of headroom for shared NAT addresses.
"""

import time
from fastapi import HTTPException, Request
from smartlink.config import get_settings

import structlog

logger = structlog.get_logger()

_memory_store: dict[str, list[float]] = {}

_PRIVATE_PREFIXES = (
    "10.", "172.16.", "172.17.", "172.18.", "172.19.",
    "172.20.", "172.21.", "172.22.", "172.23.", "172.24.",
    "172.25.", "172.26.", "172.27.", "172.28.", "172.29.",
    "172.30.", "172.31.", "192.168.", "127.", "::1",
)


def reset_rate_limits():
    _memory_store.clear()


def _sliding_window_check(key: str, limit: int, window_seconds: int = 60) -> tuple[bool, int]:
    now = time.time()
    cutoff = now - window_seconds

    if key not in _memory_store:
        _memory_store[key] = []

    _memory_store[key] = [t for t in _memory_store[key] if t > cutoff]
    current_count = len(_memory_store[key])

    if current_count >= limit:
        return False, 0

    _memory_store[key].append(now)
    return True, limit - current_count - 1


def check_rate_limit(key: str, limit: int, window: int = 60):
    allowed, remaining = _sliding_window_check(key, limit, window)
    if not allowed:
        logger.info("rate_limited", key=key, limit=limit)
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded. Slow down.",
            headers={
                "Retry-After": str(window),
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": "0",
            },
        )
    return remaining


def get_client_ip(request: Request) -> str:
    """Real client IP: first public hop of x-forwarded-for, then x-real-ip."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ips = [ip.strip() for ip in forwarded.split(",") if ip.strip()]
        for ip in ips:
            if not ip.startswith(_PRIVATE_PREFIXES):
                return ip
        if ips:
            return ips[0]
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "0.0.0.0"


def rate_limit_ip(request: Request, limit: int | None = None):
    settings = get_settings()
    return check_rate_limit(
        f"ip:{get_client_ip(request)}",
        limit or settings.rate_limit_track_event_per_minute,
    )
