"""
Rate limiting middleware using slowapi.

Protects the public endpoints against excessive use. Limits are keyed on
the real client IP and stored in Redis when configured, in memory otherwise.

Rate Limits:
- Webhook: 100 requests per minute (gateways deliver in bursts)
- Checkout: 5 attempts per minute
- Trial confirmation: 10 requests per minute
- Reconciliation: 5 requests per minute
- Default: 100 requests per minute
"""

import ipaddress
import logging
import re

from starlette.requests import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from infrastructure.config.settings import settings

logger = logging.getLogger(__name__)

# Simple pattern to quickly reject obviously invalid IPs before parsing
_IP_LIKE = re.compile(r"^[\d.:a-fA-F]+$")


def _is_valid_ip(value: str) -> bool:
    """Return True if *value* looks like a valid IPv4 or IPv6 address."""
    if not _IP_LIKE.match(value):
        return False
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


def _is_private_ip(value: str) -> bool:
    """Return True if *value* is a private, loopback, or link-local address.

    Private addresses in forwarding headers can be spoofed to dodge the limit.
    """
    try:
        addr = ipaddress.ip_address(value)
        return addr.is_private or addr.is_loopback or addr.is_link_local
    except ValueError:
        return False


def _get_real_ip(request: Request) -> str:
    """Extract real client IP from proxy headers, falling back to remote address.

    Behind a reverse proxy every request would otherwise share the proxy's
    bucket. Candidates must parse as public IP addresses; anything else falls
    back to the connection address.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        # X-Forwarded-For can be a comma-separated list; first entry is the client
        candidate = forwarded.split(",")[0].strip()
        if _is_valid_ip(candidate) and not _is_private_ip(candidate):
            return candidate
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        candidate = real_ip.strip()
        if _is_valid_ip(candidate) and not _is_private_ip(candidate):
            return candidate
    return get_remote_address(request)

# Rate limit configurations
# Format: "count/period" where period can be: second, minute, hour, day
RATE_LIMITS = {
    "webhook": "100/minute",
    "checkout": "5/minute",
    "trial_confirm": "10/minute",
    "reconcile": "5/minute",
    "default": "100/minute",
}

# Create limiter instance with IP-based key function.
# Uses Redis when available, falls back to in-memory storage.
# default_limits applies the 100/minute cap globally to every route via
# SlowAPIMiddleware; per-endpoint @limiter.limit decorators override it.
_storage_uri = settings.redis_url if settings.redis_url else "memory://"

# In-memory counters are per process
if not settings.redis_url and settings.environment != "test":
    logger.warning("Rate limiter using in-memory storage, limits are per worker process")
    if settings.is_production:
        logger.critical("Rate limiter has no Redis in production. Set REDIS_URL.")

limiter = Limiter(
    key_func=_get_real_ip,
    storage_uri=_storage_uri,
    default_limits=[RATE_LIMITS["default"]],
)


def get_rate_limit(endpoint: str) -> str:
    """
    Get rate limit configuration for a specific endpoint.

    Args:
        endpoint: The endpoint identifier (e.g., "webhook", "checkout")

    Returns:
        str: Rate limit string in format "count/period"

    Example:
        >>> get_rate_limit("checkout")
        "5/minute"
        >>> get_rate_limit("unknown")
        "100/minute"
    """
    return RATE_LIMITS.get(endpoint, RATE_LIMITS["default"])
