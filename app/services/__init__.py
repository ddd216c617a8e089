from app.services.auth_service import AuthService
from app.services.refresh_token_store import RefreshTokenStore, RefreshTokenReports
from app.services.revocation_ledger import RevocationLedger, RevocationReports, RevocationCache
from app.services.token_service import TokenLifecycleService

__all__ = [
    "AuthService",
    "RefreshTokenStore",
    "RefreshTokenReports",
    "RevocationLedger",
    "RevocationReports",
    "RevocationCache",
    "TokenLifecycleService",
]
