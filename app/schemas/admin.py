from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from app.schemas.tokens import RevocationEntry, RevocationReason, TokenStatus, TokenType


class SearchCriteria(BaseModel):
    """Filters for revocation ledger searches. Unset fields do not filter."""

    user_id: Optional[int] = Field(None, gt=0)
    device_id: Optional[str] = None
    token_type: Optional[TokenType] = None
    reason: Optional[RevocationReason] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None


class SearchResult(BaseModel):
    entries: list[RevocationEntry]
    total: int
    limit: int
    offset: int
    has_more: bool


# Admin request/response schemas
class RevokeRequest(BaseModel):
    reason: RevocationReason = RevocationReason.MANUAL_REVOCATION


class RevokeResponse(BaseModel):
    revoked: int
    reason: RevocationReason


class TokenRecordResponse(BaseModel):
    jti: str
    status: TokenStatus
    device_id: str
    device_name: str
    ip_address: str
    platform: Optional[str]
    browser: Optional[str]
    parent_token_jti: Optional[str]
    revoked_reason: Optional[str]
    revoked_at: Optional[datetime]
    last_used_at: Optional[datetime]
    expires_at: datetime
    created_at: Optional[datetime]


class UserTokensResponse(BaseModel):
    user_id: int
    stats: dict
    tokens: list[TokenRecordResponse]


class CleanupReport(BaseModel):
    """Counts from one run of the out-of-band sweeps."""

    refresh_tokens_expired: int
    refresh_tokens_deleted: int
    revoked_tokens_deleted: int
    ledger_expired_deleted: int
    ledger_old_deleted: int
    ledger_evicted: int
