from app.models.user import User
from app.models.refresh_token import RefreshToken
from app.models.token_blacklist import TokenBlacklist

__all__ = [
    "User",
    "RefreshToken",
    "TokenBlacklist",
]
