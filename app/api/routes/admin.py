from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_db, get_token_service, require_admin, require_csrf_token
from app.core.config import settings
from app.core.exceptions import NotFoundError
from app.models import User
from app.schemas.admin import (
    CleanupReport,
    RevokeRequest,
    RevokeResponse,
    SearchCriteria,
    SearchResult,
    TokenRecordResponse,
    UserTokensResponse,
)
from app.schemas.tokens import RevocationEntry, RevocationReason, TokenType
from app.services.refresh_token_store import RefreshTokenReports
from app.services.revocation_ledger import RevocationReports
from app.services.token_service import TokenLifecycleService

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/revocations/stats")
def get_revocation_stats(
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Ledger counts by reason and type, plus refresh token totals."""
    return {
        "ledger": RevocationReports(db).get_blacklist_stats(),
        "refresh_tokens": RefreshTokenReports(db).get_system_stats(),
    }


@router.get("/revocations/search", response_model=SearchResult)
def search_revocations(
    user_id: Optional[int] = Query(default=None, gt=0),
    device_id: Optional[str] = Query(default=None, max_length=255),
    token_type: Optional[TokenType] = None,
    reason: Optional[RevocationReason] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Filter ledger entries for incident response."""
    criteria = SearchCriteria(
        user_id=user_id,
        device_id=device_id,
        token_type=token_type,
        reason=reason,
        date_from=date_from,
        date_to=date_to,
    )
    return RevocationReports(db).search(criteria, limit=limit, offset=offset)


@router.get("/revocations/health")
def get_revocation_health(
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Ledger size against its cap."""
    return RevocationReports(db).get_health_status(settings.BLACKLIST_MAX_SIZE)


@router.get("/revocations/high-priority", response_model=list[RevocationEntry])
def get_high_priority_revocations(
    limit: int = Query(default=50, ge=1, le=200),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Active security-related ledger entries, newest first."""
    return RevocationReports(db).get_high_priority_entries(limit)


@router.post("/revocations/cleanup", response_model=CleanupReport, dependencies=[Depends(require_csrf_token)])
def run_revocation_cleanup(
    admin: User = Depends(require_admin),
    tokens: TokenLifecycleService = Depends(get_token_service),
):
    """Run the cleanup sweeps now instead of waiting for the scheduler."""
    return tokens.run_cleanup()


@router.get("/users/{user_id}/tokens", response_model=UserTokensResponse)
def get_user_tokens(
    user_id: int,
    limit: int = Query(default=50, ge=1, le=200),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    tokens: TokenLifecycleService = Depends(get_token_service),
):
    """Refresh token history and stats for one user."""
    if db.query(User).filter(User.id == user_id).first() is None:
        raise NotFoundError("User")

    records = tokens.store.list_by_user(user_id, limit=limit)
    return UserTokensResponse(
        user_id=user_id,
        stats=RefreshTokenReports(db).get_user_token_stats(user_id),
        tokens=[
            TokenRecordResponse(
                jti=record.jti,
                status=record.effective_status(),
                device_id=record.device_info.device_id,
                device_name=record.device_info.device_name,
                ip_address=record.device_info.ip_address,
                platform=record.device_info.platform,
                browser=record.device_info.browser,
                parent_token_jti=record.parent_token_jti,
                revoked_reason=record.revoked_reason,
                revoked_at=record.revoked_at,
                last_used_at=record.last_used_at,
                expires_at=record.expires_at,
                created_at=record.created_at,
            )
            for record in records
        ],
    )


@router.post("/users/{user_id}/revoke", response_model=RevokeResponse, dependencies=[Depends(require_csrf_token)])
def revoke_user_tokens(
    user_id: int,
    data: RevokeRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    tokens: TokenLifecycleService = Depends(get_token_service),
):
    """Revoke every session of a user, e.g. after a suspected account compromise."""
    if db.query(User).filter(User.id == user_id).first() is None:
        raise NotFoundError("User")

    revoked = tokens.revoke_all_for_user(user_id, data.reason)
    return RevokeResponse(revoked=revoked, reason=data.reason)


@router.post("/devices/{device_id}/revoke", response_model=RevokeResponse, dependencies=[Depends(require_csrf_token)])
def revoke_device_tokens(
    device_id: str,
    data: RevokeRequest,
    admin: User = Depends(require_admin),
    tokens: TokenLifecycleService = Depends(get_token_service),
):
    """Revoke every session issued to a device, e.g. one reported lost."""
    revoked = tokens.revoke_all_for_device(device_id, data.reason)
    return RevokeResponse(revoked=revoked, reason=data.reason)
