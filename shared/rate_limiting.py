"""
Request rate limits for the write endpoints

Mutating endpoints carry a per-caller budget; reads are not limited.

Features:
- Callers keyed by token subject, else by client address
- Budgets per endpoint class (write, review, moderation)
- Counters kept in Redis so every worker shares them
"""

from fastapi import Request
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from typing import Callable
import hashlib
import logging
import os

from shared.auth import decode_access_token

logger = logging.getLogger(__name__)

RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
RATE_LIMIT_STORAGE_URI = os.getenv(
    "RATE_LIMIT_STORAGE_URI",
    f"redis://{os.getenv('REDIS_HOST', 'localhost')}:{os.getenv('REDIS_PORT', 6379)}"
)


def get_user_identifier(request: Request) -> str:
    """
    Key a request by its caller.

    Uses the user id of a valid token, then a digest of an unreadable
    token, otherwise falls back to IP address.

    Args:
        request: Incoming request

    Returns:
        str: ``user_<id>``, ``token_<digest>`` or the client address
    """
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header[len("Bearer "):]
        payload = decode_access_token(token)
        if payload and payload.get("sub"):
            return f"user_{payload['sub']}"
        return f"token_{hashlib.sha256(token.encode()).hexdigest()[:16]}"

    return get_remote_address(request)


limiter = Limiter(
    key_func=get_user_identifier,
    storage_uri=RATE_LIMIT_STORAGE_URI,
    enabled=RATE_LIMIT_ENABLED,
)

RATE_LIMITS = {
    "write": "30/minute",     # Booking and catalog mutations
    "review": "60/minute",    # Approve/reject/cancel
    "moderation": "20/minute",  # Bans and config
    "default": "60/minute",
}


def get_rate_limit(endpoint_type: str = "default") -> str:
    """
    Limit string of an endpoint class.

    Args:
        endpoint_type: write, review or moderation

    Returns:
        str: Rate limit string (e.g., "30/minute")
    """
    return RATE_LIMITS.get(endpoint_type, RATE_LIMITS["default"])


def rate_limit_decorator(limit_type: str = "default"):
    """
    Apply the budget of an endpoint class.

    The decorated endpoint must accept a ``request: Request`` argument.

    Args:
        limit_type: Endpoint class (write, review, moderation)

    Returns:
        Decorator function

    Example:
        @app.post("/reservations")
        @rate_limit_decorator("write")
        def create(request: Request, ...):
            pass
    """
    def decorator(func: Callable):
        return limiter.limit(get_rate_limit(limit_type))(func)
    return decorator


def setup_rate_limiting(app):
    """
    Attach the shared limiter and its 429 handler to an application.

    Args:
        app: FastAPI application instance

    Example:
        app = FastAPI()
        setup_rate_limiting(app)
    """
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    if not RATE_LIMIT_ENABLED:
        logger.info("Rate limiting disabled")
