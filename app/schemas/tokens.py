"""
Value types for the token lifecycle.

Records are frozen pydantic models. State changes never mutate a record in
place: ``mark_revoked``/``mark_used``/``update_last_used`` build a new record
through full validation, so the previous value stays available to the caller
for the conditional update in the refresh token store.
"""

import hashlib
import ipaddress
import json
import re
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.core.timeutils import from_timestamp, to_naive_utc, utcnow


JTI_PATTERN = re.compile(r"^[A-Za-z0-9_-]{8,255}$")
TOKEN_HASH_PATTERN = re.compile(r"^[a-f0-9]{64}$")
MAX_EXPIRY = timedelta(days=3653)  # 10 years
MAX_METADATA_BYTES = 65535

# Claims the codec owns; callers may not set them through custom claims.
RESERVED_CLAIMS = frozenset({"iss", "aud", "iat", "exp", "nbf", "jti", "type"})
REQUIRED_CLAIMS = ("iss", "aud", "iat", "exp", "jti", "type")


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class TokenStatus(str, Enum):
    ACTIVE = "active"
    USED = "used"
    REVOKED = "revoked"
    EXPIRED = "expired"


class RevocationReason(str, Enum):
    USER_LOGOUT = "user_logout"
    TOKEN_REVOKED = "token_revoked"
    SECURITY_BREACH = "security_breach"
    PASSWORD_CHANGED = "password_changed"
    ACCOUNT_SUSPENDED = "account_suspended"
    MANUAL_REVOCATION = "manual_revocation"
    TOKEN_EXPIRED = "token_expired"
    INVALID_SIGNATURE = "invalid_signature"
    DEVICE_LOST = "device_lost"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    LOGOUT_ALL_SESSIONS = "logout_all_sessions"
    TOKEN_ROTATION_REUSE = "token_rotation_reuse"


SECURITY_REASONS = frozenset({
    RevocationReason.SECURITY_BREACH,
    RevocationReason.SUSPICIOUS_ACTIVITY,
    RevocationReason.DEVICE_LOST,
    RevocationReason.INVALID_SIGNATURE,
    RevocationReason.TOKEN_ROTATION_REUSE,
})

USER_INITIATED_REASONS = frozenset({
    RevocationReason.USER_LOGOUT,
    RevocationReason.MANUAL_REVOCATION,
    RevocationReason.DEVICE_LOST,
    RevocationReason.LOGOUT_ALL_SESSIONS,
})

REASON_DESCRIPTIONS = {
    RevocationReason.USER_LOGOUT: "User logged out",
    RevocationReason.TOKEN_REVOKED: "Token manually revoked",
    RevocationReason.SECURITY_BREACH: "Security breach detected",
    RevocationReason.PASSWORD_CHANGED: "Password changed",
    RevocationReason.ACCOUNT_SUSPENDED: "Account suspended",
    RevocationReason.MANUAL_REVOCATION: "Manual revocation",
    RevocationReason.TOKEN_EXPIRED: "Token expired",
    RevocationReason.INVALID_SIGNATURE: "Invalid signature",
    RevocationReason.DEVICE_LOST: "Device reported lost",
    RevocationReason.SUSPICIOUS_ACTIVITY: "Suspicious activity detected",
    RevocationReason.LOGOUT_ALL_SESSIONS: "Logged out of all sessions",
    RevocationReason.TOKEN_ROTATION_REUSE: "Refresh token reused after rotation",
}


def _check_jti(value: str) -> str:
    if not JTI_PATTERN.match(value):
        raise ValueError("JTI must be 8-255 characters of [A-Za-z0-9_-]")
    return value


class DeviceInfo(BaseModel):
    """Device a token pair was issued to."""

    model_config = ConfigDict(frozen=True)

    device_id: str = Field(..., min_length=1, max_length=255)
    device_name: str = Field(..., min_length=1, max_length=255)
    ip_address: str
    user_agent: str = Field("", max_length=1000)
    platform: Optional[str] = Field(None, max_length=50)
    browser: Optional[str] = Field(None, max_length=50)

    @field_validator("ip_address")
    @classmethod
    def validate_ip(cls, value: str) -> str:
        try:
            ipaddress.ip_address(value)
        except ValueError:
            raise ValueError(f"Invalid IP address: {value}")
        return value

    @property
    def device_type(self) -> str:
        ua = self.user_agent.lower()
        if "ipad" in ua or "tablet" in ua:
            return "tablet"
        if "mobile" in ua or "iphone" in ua or "android" in ua:
            return "mobile"
        return "desktop"

    @classmethod
    def from_request_headers(
        cls,
        user_agent: str,
        ip_address: Optional[str],
        device_id: Optional[str] = None,
        device_name: Optional[str] = None,
    ) -> "DeviceInfo":
        """
        Build device info from request data.

        Without an explicit device id the id is derived from the user agent
        only, so a client keeps its id when its network address changes.
        """
        user_agent = (user_agent or "")[:1000]
        try:
            ipaddress.ip_address(ip_address or "")
        except ValueError:
            ip_address = "0.0.0.0"

        platform = _parse_platform(user_agent)
        browser = _parse_browser(user_agent)
        if not device_id:
            device_id = hashlib.sha256(user_agent.encode()).hexdigest()[:32]
        if not device_name:
            device_name = f"{browser or 'Unknown Browser'} on {platform or 'Unknown Platform'}"

        return cls(
            device_id=device_id[:255],
            device_name=device_name[:255],
            ip_address=ip_address,
            user_agent=user_agent,
            platform=platform,
            browser=browser,
        )


def _parse_platform(user_agent: str) -> Optional[str]:
    if "iPhone" in user_agent or "iPad" in user_agent:
        return "iOS"
    if "Android" in user_agent:
        return "Android"
    if "Windows" in user_agent:
        return "Windows"
    if "Mac OS X" in user_agent or "Macintosh" in user_agent:
        return "macOS"
    if "Linux" in user_agent:
        return "Linux"
    return None


def _parse_browser(user_agent: str) -> Optional[str]:
    # Order matters: Edge and Chrome UAs also mention Safari
    for marker, name in (("Edg/", "Edge"), ("Firefox/", "Firefox"), ("Chrome/", "Chrome"), ("Safari/", "Safari")):
        if marker in user_agent:
            return name
    return None


class RefreshTokenRecord(BaseModel):
    """One issued refresh token. The raw token is never stored, only its hash."""

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    jti: str
    user_id: int
    token_hash: str
    expires_at: datetime
    device_info: DeviceInfo
    status: TokenStatus = TokenStatus.ACTIVE
    revoked_reason: Optional[str] = None
    revoked_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    parent_token_jti: Optional[str] = None
    access_token_jti: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("expires_at", "revoked_at", "last_used_at", "created_at", "updated_at")
    @classmethod
    def normalize_datetimes(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value)

    @field_validator("jti")
    @classmethod
    def validate_jti(cls, value: str) -> str:
        return _check_jti(value)

    @field_validator("parent_token_jti", "access_token_jti")
    @classmethod
    def validate_linked_jti(cls, value: Optional[str]) -> Optional[str]:
        return _check_jti(value) if value is not None else value

    @field_validator("user_id")
    @classmethod
    def validate_user_id(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("User ID must be a positive integer")
        return value

    @field_validator("token_hash")
    @classmethod
    def validate_token_hash(cls, value: str) -> str:
        if not TOKEN_HASH_PATTERN.match(value):
            raise ValueError("Token hash must be a valid SHA256 hash")
        return value

    @field_validator("expires_at")
    @classmethod
    def validate_expires_at(cls, value: datetime) -> datetime:
        if value > utcnow() + MAX_EXPIRY:
            raise ValueError("Expiration time cannot be more than 10 years in the future")
        return value

    @model_validator(mode="after")
    def validate_revoked_data(self) -> "RefreshTokenRecord":
        if self.status == TokenStatus.REVOKED:
            if not self.revoked_reason:
                raise ValueError("Revoked reason is required when status is revoked")
            if self.revoked_at is None:
                raise ValueError("Revoked time is required when status is revoked")
        elif self.revoked_reason is not None or self.revoked_at is not None:
            raise ValueError("Revoked reason and time should only be set when status is revoked")
        return self

    def _with(self, **changes: Any) -> "RefreshTokenRecord":
        changes.setdefault("updated_at", utcnow())
        return type(self).model_validate({**dict(self), **changes})

    def mark_revoked(
        self, reason: Union[RevocationReason, str], at: Optional[datetime] = None
    ) -> "RefreshTokenRecord":
        if self.status == TokenStatus.REVOKED:
            return self
        reason_value = reason.value if isinstance(reason, RevocationReason) else reason
        return self._with(
            status=TokenStatus.REVOKED,
            revoked_reason=reason_value,
            revoked_at=at or utcnow(),
        )

    def mark_used(self, at: Optional[datetime] = None) -> "RefreshTokenRecord":
        if self.status != TokenStatus.ACTIVE:
            raise ValueError(f"Cannot mark a {self.status.value} refresh token as used")
        return self._with(status=TokenStatus.USED, last_used_at=at or utcnow())

    def update_last_used(self, at: Optional[datetime] = None) -> "RefreshTokenRecord":
        return self._with(last_used_at=at or utcnow())

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def effective_status(self, now: Optional[datetime] = None) -> TokenStatus:
        """Stored status, with EXPIRED derived from ``expires_at`` for active tokens."""
        if self.status == TokenStatus.ACTIVE and self.is_expired(now):
            return TokenStatus.EXPIRED
        return self.status

    def can_be_refreshed(self, now: Optional[datetime] = None) -> bool:
        return self.effective_status(now) == TokenStatus.ACTIVE

    def belongs_to_user(self, user_id: int) -> bool:
        return self.user_id == user_id

    def belongs_to_device(self, device_id: str) -> bool:
        return self.device_info.device_id == device_id

    def remaining_seconds(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        if self.is_expired(now):
            return 0
        return int((self.expires_at - now).total_seconds())

    def is_near_expiry(self, threshold_seconds: int = 3600, now: Optional[datetime] = None) -> bool:
        return self.remaining_seconds(now) <= threshold_seconds


class RevocationEntry(BaseModel):
    """A denied token id, kept until the token it denies would have expired anyway."""

    model_config = ConfigDict(frozen=True)

    jti: str = Field(..., min_length=1, max_length=255)
    token_type: TokenType
    reason: RevocationReason
    expires_at: datetime
    blacklisted_at: datetime = Field(default_factory=utcnow)
    token_hash: Optional[str] = None
    user_id: Optional[int] = None
    device_id: Optional[str] = Field(None, min_length=1, max_length=255)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("expires_at", "blacklisted_at")
    @classmethod
    def normalize_datetimes(cls, value: datetime) -> datetime:
        return to_naive_utc(value)

    @field_validator("blacklisted_at")
    @classmethod
    def validate_blacklisted_at(cls, value: datetime) -> datetime:
        # Late registration is fine, but not wildly out of range
        now = utcnow()
        if value < now - timedelta(days=365) or value > now + timedelta(days=365):
            raise ValueError("Blacklisted time must be within one year of now")
        return value

    @field_validator("token_hash")
    @classmethod
    def validate_token_hash(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not TOKEN_HASH_PATTERN.match(value):
            raise ValueError("Token hash must be a valid SHA256 hash")
        return value

    @field_validator("user_id")
    @classmethod
    def validate_user_id(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value <= 0:
            raise ValueError("User ID must be a positive integer")
        return value

    @field_validator("metadata")
    @classmethod
    def validate_metadata(cls, value: dict[str, Any]) -> dict[str, Any]:
        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Metadata must be JSON serializable: {e}")
        if len(encoded) > MAX_METADATA_BYTES:
            raise ValueError("Metadata size cannot exceed 64KB")
        return value

    @classmethod
    def for_user_logout(
        cls,
        jti: str,
        token_type: TokenType,
        expires_at: datetime,
        user_id: int,
        device_id: Optional[str] = None,
    ) -> "RevocationEntry":
        return cls(
            jti=jti,
            token_type=token_type,
            expires_at=expires_at,
            reason=RevocationReason.USER_LOGOUT,
            user_id=user_id,
            device_id=device_id,
        )

    @classmethod
    def for_security_breach(
        cls,
        jti: str,
        token_type: TokenType,
        expires_at: datetime,
        reason: RevocationReason = RevocationReason.SECURITY_BREACH,
        user_id: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> "RevocationEntry":
        if reason not in SECURITY_REASONS:
            reason = RevocationReason.SECURITY_BREACH
        return cls(
            jti=jti,
            token_type=token_type,
            expires_at=expires_at,
            reason=reason,
            user_id=user_id,
            metadata=metadata or {},
        )

    @property
    def is_security_related(self) -> bool:
        return self.reason in SECURITY_REASONS

    @property
    def is_user_initiated(self) -> bool:
        return self.reason in USER_INITIATED_REASONS

    @property
    def reason_description(self) -> str:
        return REASON_DESCRIPTIONS.get(self.reason, "Unknown reason")

    def is_active(self, now: Optional[datetime] = None) -> bool:
        # Once the denied token has expired on its own the entry is moot
        return self.expires_at > (now or utcnow())

    def can_be_cleaned_up(self, now: Optional[datetime] = None) -> bool:
        return not self.is_active(now)

    def priority(self, now: Optional[datetime] = None) -> int:
        """Eviction order under the size cap: lower is evicted first."""
        if self.can_be_cleaned_up(now):
            return 1
        if not self.is_security_related and not self.is_user_initiated:
            return 2
        if self.is_user_initiated and not self.is_security_related:
            return 3
        return 4


class TokenPair(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    token_type: str = "Bearer"

    @field_validator("token_type")
    @classmethod
    def validate_token_type(cls, value: str) -> str:
        if value != "Bearer":
            raise ValueError("Token type must be Bearer")
        return value

    def authorization_header(self) -> str:
        return f"{self.token_type} {self.access_token}"

    def access_expires_in(self, now: Optional[datetime] = None) -> int:
        return max(0, int((self.access_token_expires_at - (now or utcnow())).total_seconds()))


def validate_custom_claims(claims: Optional[dict[str, Any]]) -> dict[str, Any]:
    """Check caller-supplied claims before they are merged into a token payload."""
    claims = dict(claims or {})
    for key in claims:
        if not isinstance(key, str):
            raise ValueError("Claim names must be strings")
        if key in RESERVED_CLAIMS:
            raise ValueError(f"Claim '{key}' is reserved")
    if "sub" in claims and not isinstance(claims["sub"], str):
        raise ValueError("Claim 'sub' must be a string")
    try:
        json.dumps(claims)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Claims must be JSON serializable: {e}")
    return claims


class TokenClaims(BaseModel):
    """Verified claim set: standard claims plus an explicit bag of caller claims."""

    model_config = ConfigDict(frozen=True)

    iss: str
    aud: Union[str, list[str]]
    iat: int
    exp: int
    jti: str
    type: TokenType
    sub: Optional[str] = None
    extra: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        standard = {key: payload[key] for key in REQUIRED_CLAIMS if key in payload}
        extra = {
            key: value
            for key, value in payload.items()
            if key not in RESERVED_CLAIMS and key != "sub"
        }
        return cls(**standard, sub=payload.get("sub"), extra=extra)

    def to_payload(self) -> dict[str, Any]:
        payload = dict(self.extra)
        if self.sub is not None:
            payload["sub"] = self.sub
        payload.update(
            iss=self.iss, aud=self.aud, iat=self.iat, exp=self.exp, jti=self.jti, type=self.type.value
        )
        return payload

    @property
    def custom_claims(self) -> dict[str, Any]:
        """Caller claims as they were passed at generation time."""
        claims = dict(self.extra)
        if self.sub is not None:
            claims["sub"] = self.sub
        return claims

    @property
    def user_id(self) -> Optional[int]:
        if self.sub is None or not self.sub.isdigit():
            return None
        return int(self.sub)

    @property
    def expires_at(self) -> datetime:
        return from_timestamp(self.exp)

    @property
    def issued_at(self) -> datetime:
        return from_timestamp(self.iat)
