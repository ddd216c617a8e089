"""Rate limiting for the token endpoints using slowapi."""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.core.config import settings

LOGIN_LIMIT = "10/minute"
REFRESH_LIMIT = "30/minute"
SESSION_LIMIT = "10/minute"


def get_user_identifier(request: Request) -> str:
    """
    Get identifier for rate limiting.
    Uses user ID if authenticated, otherwise IP address.
    """
    # Set by the get_current_user dependency
    user = getattr(request.state, "user", None)
    if user and hasattr(user, "id"):
        return f"user:{user.id}"

    return get_remote_address(request)


# Shared counters across workers when Redis is configured
limiter = Limiter(
    key_func=get_user_identifier,
    default_limits=["1000/minute"],
    storage_uri=settings.REDIS_URL or "memory://",
)
