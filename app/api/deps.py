import logging
from typing import Generator, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.csrf import CsrfTokenPool, InMemorySessionStore, SessionStore
from app.core.database import SessionLocal
from app.core.exceptions import ForbiddenError, InvalidCredentialsError, TokenError
from app.core.security import TokenCodec
from app.models import User
from app.schemas.tokens import DeviceInfo, TokenClaims
from app.services.refresh_token_store import RefreshTokenStore
from app.services.revocation_ledger import RevocationCache, RevocationLedger
from app.services.token_service import TokenLifecycleService

logger = logging.getLogger(__name__)

# HTTP Bearer token scheme; a missing header gets the same 401 as a bad token
security = HTTPBearer(auto_error=False)

CSRF_HEADER = "X-CSRF-Token"
DEVICE_ID_HEADER = "X-Device-Id"


def get_db() -> Generator:
    """Database session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_token_codec(request: Request) -> TokenCodec:
    """The codec built at startup. Built lazily if the app was started without lifespan."""
    codec = getattr(request.app.state, "token_codec", None)
    if codec is None:
        codec = TokenCodec.from_settings()
        request.app.state.token_codec = codec
    return codec


def get_revocation_cache(request: Request) -> RevocationCache:
    cache = getattr(request.app.state, "revocation_cache", None)
    if cache is None:
        cache = RevocationCache.from_settings()
        request.app.state.revocation_cache = cache
    return cache


def get_session_store(request: Request) -> SessionStore:
    store = getattr(request.app.state, "session_store", None)
    if store is None:
        store = InMemorySessionStore()
        request.app.state.session_store = store
    return store


def get_token_service(
    db: Session = Depends(get_db),
    codec: TokenCodec = Depends(get_token_codec),
    cache: RevocationCache = Depends(get_revocation_cache),
) -> TokenLifecycleService:
    return TokenLifecycleService(
        codec=codec,
        store=RefreshTokenStore(db),
        ledger=RevocationLedger(db, cache=cache, access_token_ttl=codec.access_token_ttl),
    )


def get_device_info(request: Request) -> DeviceInfo:
    """Device info for the calling client, from its headers and address."""
    return DeviceInfo.from_request_headers(
        user_agent=request.headers.get("user-agent", ""),
        ip_address=request.client.host if request.client else None,
        device_id=request.headers.get(DEVICE_ID_HEADER),
    )


def get_current_claims(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    tokens: TokenLifecycleService = Depends(get_token_service),
) -> TokenClaims:
    """
    Dependency to validate the bearer access token.
    Every failure maps to the same 401 so callers cannot tell why.
    """
    if credentials is None:
        raise InvalidCredentialsError()

    try:
        return tokens.validate_access_token(credentials.credentials)
    except TokenError as e:
        logger.info(f"Rejected access token: {e.error_code}")
        raise InvalidCredentialsError()


def get_current_user(
    request: Request,
    claims: TokenClaims = Depends(get_current_claims),
    db: Session = Depends(get_db),
) -> User:
    """
    Dependency to get the current authenticated user from JWT token.
    Raises InvalidCredentialsError if the token is invalid or the user is gone.
    """
    if claims.user_id is None:
        raise InvalidCredentialsError()

    user = db.query(User).filter(User.id == claims.user_id).first()
    if user is None:
        raise InvalidCredentialsError()

    # Read by the rate limiter key function
    request.state.user = user
    return user


def require_admin(
    current_user: User = Depends(get_current_user),
) -> User:
    """
    Dependency to require admin role.
    Raises ForbiddenError if user is not an admin.
    """
    if not current_user.is_admin:
        raise ForbiddenError("Admin access required")
    return current_user


def get_csrf_pool(
    current_user: User = Depends(get_current_user),
    store: SessionStore = Depends(get_session_store),
) -> CsrfTokenPool:
    """A CSRF pool for the current user's session, scoped to this request."""
    return CsrfTokenPool(
        store,
        session_id=f"user:{current_user.id}",
        max_tokens=settings.CSRF_MAX_TOKENS,
        ttl_seconds=settings.CSRF_TOKEN_TTL_SECONDS,
    )


def require_csrf_token(
    request: Request,
    pool: CsrfTokenPool = Depends(get_csrf_pool),
) -> None:
    """Dependency for state-changing admin routes: consumes one CSRF token."""
    if not pool.verify(request.headers.get(CSRF_HEADER)):
        raise ForbiddenError("Invalid or missing CSRF token")
