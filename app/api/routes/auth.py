import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.api.deps import (
    get_csrf_pool,
    get_current_claims,
    get_current_user,
    get_db,
    get_device_info,
    get_token_service,
)
from app.core.config import settings
from app.core.csrf import CsrfTokenPool
from app.core.exceptions import InvalidCredentialsError, TokenError, ValidationError
from app.core.rate_limit import LOGIN_LIMIT, REFRESH_LIMIT, SESSION_LIMIT, limiter
from app.models import User
from app.schemas.auth import (
    AuthResponse,
    ChangePasswordRequest,
    CsrfTokenResponse,
    LoginRequest,
    LogoutRequest,
    LogoutResponse,
    RefreshTokenRequest,
    SessionResponse,
    TokenResponse,
    UserResponse,
)
from app.schemas.tokens import DeviceInfo, RevocationReason, TokenClaims, TokenPair, TokenType
from app.services.auth_service import AuthService
from app.services.token_service import TokenLifecycleService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


def _token_response(pair: TokenPair) -> dict:
    return {
        "access_token": pair.access_token,
        "refresh_token": pair.refresh_token,
        "expires_in": pair.access_expires_in(),
        "refresh_expires_at": pair.refresh_token_expires_at,
    }


@router.post("/login", response_model=AuthResponse)
@limiter.limit(LOGIN_LIMIT)
def login(
    request: Request,
    data: LoginRequest,
    db: Session = Depends(get_db),
    tokens: TokenLifecycleService = Depends(get_token_service),
    device_info: DeviceInfo = Depends(get_device_info),
):
    """
    Authenticate user and return an access/refresh token pair.
    """
    if data.device_name:
        device_info = device_info.model_copy(update={"device_name": data.device_name})

    try:
        user, pair = AuthService.login(db, tokens, data.email, data.password, device_info)
    except ValueError:
        raise InvalidCredentialsError()

    return AuthResponse(**_token_response(pair), user=UserResponse.model_validate(user))


@router.post("/refresh", response_model=TokenResponse)
@limiter.limit(REFRESH_LIMIT)
def refresh_access_token(
    request: Request,
    data: RefreshTokenRequest,
    tokens: TokenLifecycleService = Depends(get_token_service),
    device_info: DeviceInfo = Depends(get_device_info),
):
    """
    Exchange a refresh token for a new pair.
    Implements token rotation: the presented refresh token cannot be used again.
    """
    try:
        pair = tokens.refresh(data.refresh_token, device_info)
    except TokenError as e:
        logger.info(f"Refresh rejected: {e.error_code}")
        raise InvalidCredentialsError()

    return TokenResponse(**_token_response(pair))


@router.post("/logout", response_model=LogoutResponse)
def logout(
    data: LogoutRequest,
    claims: TokenClaims = Depends(get_current_claims),
    current_user: User = Depends(get_current_user),
    tokens: TokenLifecycleService = Depends(get_token_service),
):
    """
    Logout by revoking the current access token and, if given, its refresh token.
    Optionally revoke every session of the user.
    """
    revoked = 0
    if data.revoke_all:
        revoked = tokens.revoke_all_for_user(current_user.id, RevocationReason.LOGOUT_ALL_SESSIONS)
    elif data.refresh_token:
        try:
            refresh_claims = tokens.codec.validate_token(data.refresh_token, expected_type=TokenType.REFRESH)
            if refresh_claims.user_id != current_user.id:
                logger.warning(f"User {current_user.id} tried to log out a refresh token of another user")
            elif tokens.revoke(refresh_claims.jti, RevocationReason.USER_LOGOUT):
                revoked = 1
        except TokenError as e:
            # Logging out with a bad refresh token still ends the access session
            logger.info(f"Ignored unusable refresh token on logout: {e.error_code}")

    tokens.revoke_claims(claims, RevocationReason.USER_LOGOUT)

    return LogoutResponse(message="Logged out successfully", sessions_revoked=revoked)


@router.post("/logout-all", response_model=LogoutResponse)
@limiter.limit(SESSION_LIMIT)
def logout_all(
    request: Request,
    current_user: User = Depends(get_current_user),
    tokens: TokenLifecycleService = Depends(get_token_service),
):
    """Revoke every session of the current user, this one included."""
    revoked = tokens.revoke_all_for_user(current_user.id, RevocationReason.LOGOUT_ALL_SESSIONS)
    return LogoutResponse(message="Logged out of all sessions", sessions_revoked=revoked)


@router.get("/me", response_model=UserResponse)
def get_current_user_info(
    current_user: User = Depends(get_current_user),
):
    """
    Get current authenticated user's info.
    """
    return UserResponse.model_validate(current_user)


@router.get("/sessions", response_model=list[SessionResponse])
def list_sessions(
    claims: TokenClaims = Depends(get_current_claims),
    current_user: User = Depends(get_current_user),
    tokens: TokenLifecycleService = Depends(get_token_service),
):
    """Active sessions (unexpired, unrevoked refresh tokens) of the current user."""
    return [
        SessionResponse(
            jti=record.jti,
            device_id=record.device_info.device_id,
            device_name=record.device_info.device_name,
            device_type=record.device_info.device_type,
            ip_address=record.device_info.ip_address,
            platform=record.device_info.platform,
            browser=record.device_info.browser,
            created_at=record.created_at,
            last_used_at=record.last_used_at,
            expires_at=record.expires_at,
            current=record.access_token_jti == claims.jti,
        )
        for record in tokens.list_sessions(current_user.id)
    ]


@router.post("/change-password", response_model=LogoutResponse)
def change_password(
    data: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    tokens: TokenLifecycleService = Depends(get_token_service),
):
    """
    Change the current user's password.
    Every existing session is revoked; the client has to log in again.
    """
    try:
        AuthService.change_password(db, current_user, data.current_password, data.new_password)
    except ValueError as e:
        raise ValidationError(str(e))

    revoked = tokens.revoke_all_for_user(current_user.id, RevocationReason.PASSWORD_CHANGED)
    return LogoutResponse(message="Password updated successfully", sessions_revoked=revoked)


@router.get("/csrf-token", response_model=CsrfTokenResponse)
def get_csrf_token(
    pool: CsrfTokenPool = Depends(get_csrf_pool),
):
    """Issue a single-use CSRF token for the current session."""
    return CsrfTokenResponse(csrf_token=pool.generate(), expires_in=settings.CSRF_TOKEN_TTL_SECONDS)
