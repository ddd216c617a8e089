"""
Token lifecycle orchestration: issue, rotate, revoke, validate.

Refresh token state machine: ACTIVE -> USED on a successful rotation,
ACTIVE/USED -> REVOKED on logout or a security event. EXPIRED is derived
from ``expires_at`` and only persisted by the cleanup sweep.
"""

import logging
from datetime import timedelta
from typing import Any, Optional, Union

from app.core.config import settings
from app.core.exceptions import (
    ConcurrentModification,
    InvalidToken,
    SecurityIncident,
    TokenExpired,
    TokenRevoked,
    TokenValidationFailed,
)
from app.core.security import TokenCodec, hash_token
from app.core.timeutils import from_timestamp, utcnow
from app.schemas.admin import CleanupReport
from app.schemas.tokens import (
    DeviceInfo,
    RefreshTokenRecord,
    RevocationEntry,
    RevocationReason,
    TokenClaims,
    TokenPair,
    TokenStatus,
    TokenType,
)
from app.services.refresh_token_store import RefreshTokenStore
from app.services.revocation_ledger import RevocationLedger

logger = logging.getLogger(__name__)

MAX_SAVE_ATTEMPTS = 3


class TokenLifecycleService:
    def __init__(
        self,
        codec: TokenCodec,
        store: RefreshTokenStore,
        ledger: RevocationLedger,
        max_tokens_per_user: Optional[int] = None,
        device_binding: Optional[bool] = None,
    ):
        self.codec = codec
        self.store = store
        self.ledger = ledger
        self.max_tokens_per_user = (
            settings.MAX_REFRESH_TOKENS_PER_USER if max_tokens_per_user is None else max_tokens_per_user
        )
        self.device_binding = settings.REFRESH_DEVICE_BINDING if device_binding is None else device_binding

    def issue(
        self,
        user_id: int,
        device_info: DeviceInfo,
        custom_claims: Optional[dict[str, Any]] = None,
        parent_token_jti: Optional[str] = None,
    ) -> TokenPair:
        """
        Mint an access/refresh pair and persist the refresh record.

        Without ``parent_token_jti`` the record starts a new rotation chain.
        """
        self._enforce_token_limit(user_id)

        claims = dict(custom_claims or {})
        claims["sub"] = str(user_id)
        claims["device_id"] = device_info.device_id

        access_token = self.codec.generate_access_token(claims)
        refresh_token = self.codec.generate_refresh_token(claims)

        # Freshly signed by us, so reading them back unverified is safe
        access_payload = self.codec.parse_unsafe(access_token)
        refresh_payload = self.codec.parse_unsafe(refresh_token)
        access_expires_at = from_timestamp(access_payload["exp"])
        refresh_expires_at = from_timestamp(refresh_payload["exp"])

        self.store.create(RefreshTokenRecord(
            jti=refresh_payload["jti"],
            user_id=user_id,
            token_hash=hash_token(refresh_token),
            expires_at=refresh_expires_at,
            device_info=device_info,
            parent_token_jti=parent_token_jti,
            access_token_jti=access_payload["jti"],
        ))

        logger.info(
            f"Issued token pair for user {user_id} on device {device_info.device_id} "
            f"(refresh {refresh_payload['jti']}, parent {parent_token_jti})"
        )

        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_token_expires_at=access_expires_at,
            refresh_token_expires_at=refresh_expires_at,
        )

    def _enforce_token_limit(self, user_id: int) -> None:
        if self.max_tokens_per_user <= 0:
            return

        active = self.store.list_by_user(user_id, active_only=True)
        # Newest first, so the oldest sessions are at the end
        while len(active) >= self.max_tokens_per_user:
            oldest = active.pop()
            self._revoke_record(oldest, RevocationReason.TOKEN_REVOKED)
            logger.info(f"Token limit reached for user {user_id}; revoked oldest token {oldest.jti}")

    def refresh(self, refresh_token: str, device_info: Optional[DeviceInfo] = None) -> TokenPair:
        """
        Exchange a refresh token for a new pair, retiring the presented one.

        Presenting a refresh token that was already used or revoked revokes
        its whole rotation chain and raises SecurityIncident.
        """
        claims = self.codec.validate_token(refresh_token, expected_type=TokenType.REFRESH)

        if self.ledger.is_revoked(claims.jti):
            raise TokenRevoked(claims.jti)

        record = self.store.find_by_jti(claims.jti)
        if record is None or record.token_hash != hash_token(refresh_token):
            raise InvalidToken("Unknown refresh token")

        if record.status != TokenStatus.ACTIVE:
            raise self._revoke_chain(record)

        if self.device_binding and device_info and not record.belongs_to_device(device_info.device_id):
            logger.warning(
                f"Refresh token {record.jti} presented from device {device_info.device_id}, "
                f"issued to {record.device_info.device_id}"
            )
            raise TokenValidationFailed("Refresh token is bound to another device")

        try:
            self.store.save(record.mark_used(), expected_status=TokenStatus.ACTIVE)
        except ConcurrentModification:
            # Another request rotated this token first
            raise self._revoke_chain(record)

        pair = self.issue(
            record.user_id,
            device_info or record.device_info,
            custom_claims=claims.custom_claims,
            parent_token_jti=record.jti,
        )
        logger.info(f"Rotated refresh token {record.jti} for user {record.user_id}")
        return pair

    def _revoke_chain(self, record: RefreshTokenRecord) -> SecurityIncident:
        """Revoke the rotation chain containing ``record`` and return the error to raise."""
        root_jti = self.store.find_chain_root(record.jti) or record.jti
        family = self.store.revoke_family(root_jti, RevocationReason.TOKEN_ROTATION_REUSE)
        added = self.ledger.add_batch(
            self.ledger.entries_for_records(family, RevocationReason.TOKEN_ROTATION_REUSE)
        )
        logger.warning(
            f"Refresh token reuse detected for {record.jti} (user {record.user_id}); "
            f"revoked {len(family)} chain record(s), {added} ledger entries"
        )
        return SecurityIncident(record.jti, user_id=record.user_id, revoked_count=len(family))

    def _revoke_record(self, record: RefreshTokenRecord, reason: RevocationReason) -> RefreshTokenRecord:
        attempts = 0
        while record.status != TokenStatus.REVOKED and attempts < MAX_SAVE_ATTEMPTS:
            attempts += 1
            try:
                record = self.store.save(record.mark_revoked(reason), expected_status=record.status)
            except ConcurrentModification:
                latest = self.store.find_by_jti(record.jti)
                if latest is None:
                    break
                record = latest

        self.ledger.add_batch(self.ledger.entries_for_records([record], reason))
        return record

    def revoke(self, jti: str, reason: Union[RevocationReason, str] = RevocationReason.MANUAL_REVOCATION) -> bool:
        """
        Revoke a token by id.

        A refresh token id revokes its record and denies it together with its
        paired access token. Any other id is treated as an access token and is
        denied for the longest an access token can live.
        """
        reason = RevocationReason(reason)
        record = self.store.find_by_jti(jti)
        if record is not None:
            self._revoke_record(record, reason)
            logger.info(f"Revoked refresh token {jti} ({reason.value})")
            return True

        return self.ledger.add(RevocationEntry(
            jti=jti,
            token_type=TokenType.ACCESS,
            reason=reason,
            expires_at=utcnow() + self.codec.access_token_ttl,
        ))

    def revoke_token(
        self, token: str, reason: Union[RevocationReason, str] = RevocationReason.USER_LOGOUT
    ) -> bool:
        """Revoke a presented token string. Already-expired tokens are left alone."""
        reason = RevocationReason(reason)
        try:
            claims = self.codec.validate_token(token)
        except TokenExpired:
            return False

        return self.revoke_claims(claims, reason)

    def revoke_claims(
        self, claims: TokenClaims, reason: Union[RevocationReason, str] = RevocationReason.USER_LOGOUT
    ) -> bool:
        """Revoke an already validated token, recording its user and device on the ledger entry."""
        reason = RevocationReason(reason)
        if claims.type == TokenType.REFRESH:
            return self.revoke(claims.jti, reason)

        return self.ledger.add(RevocationEntry(
            jti=claims.jti,
            token_type=TokenType.ACCESS,
            reason=reason,
            expires_at=claims.expires_at,
            user_id=claims.user_id,
            device_id=claims.extra.get("device_id"),
        ))

    def revoke_all_for_user(
        self,
        user_id: int,
        reason: Union[RevocationReason, str] = RevocationReason.LOGOUT_ALL_SESSIONS,
        exclude_jti: Optional[str] = None,
    ) -> int:
        """Revoke every refresh token of a user and deny their live access tokens."""
        reason = RevocationReason(reason)
        added = self.ledger.revoke_all_for_user(user_id, reason, exclude_jti=exclude_jti)
        count = self.store.revoke_all_for_user(user_id, reason, exclude_jti=exclude_jti)
        log = logger.warning if reason == RevocationReason.SECURITY_BREACH else logger.info
        log(f"Revoked {count} refresh token(s) for user {user_id} ({reason.value}), {added} ledger entries")
        return count

    def revoke_all_for_device(
        self, device_id: str, reason: Union[RevocationReason, str] = RevocationReason.DEVICE_LOST
    ) -> int:
        reason = RevocationReason(reason)
        added = self.ledger.revoke_all_for_device(device_id, reason)
        count = self.store.revoke_all_for_device(device_id, reason)
        logger.info(f"Revoked {count} refresh token(s) for device {device_id} ({reason.value}), {added} ledger entries")
        return count

    def validate_access_token(self, token: str) -> TokenClaims:
        claims = self.codec.validate_token(token, expected_type=TokenType.ACCESS)
        if self.ledger.is_revoked(claims.jti):
            raise TokenRevoked(claims.jti)
        return claims

    def list_sessions(self, user_id: int) -> list[RefreshTokenRecord]:
        return self.store.list_by_user(user_id, active_only=True)

    def run_cleanup(
        self,
        revoked_retention_days: Optional[int] = None,
        ledger_retention_days: Optional[int] = None,
        ledger_max_size: Optional[int] = None,
    ) -> CleanupReport:
        """Out-of-band sweep over both stores. Never called on the request path."""
        if revoked_retention_days is None:
            revoked_retention_days = settings.REVOKED_TOKEN_RETENTION_DAYS
        if ledger_retention_days is None:
            ledger_retention_days = settings.BLACKLIST_RETENTION_DAYS
        if ledger_max_size is None:
            ledger_max_size = settings.BLACKLIST_MAX_SIZE

        now = utcnow()
        report = CleanupReport(
            refresh_tokens_expired=self.store.mark_expired(now),
            # Expired records are kept for the retention window for auditing
            refresh_tokens_deleted=self.store.cleanup_expired(now - timedelta(days=revoked_retention_days)),
            revoked_tokens_deleted=self.store.cleanup_revoked(revoked_retention_days),
            ledger_expired_deleted=self.ledger.cleanup_expired_entries(),
            ledger_old_deleted=self.ledger.cleanup_old_entries(ledger_retention_days),
            ledger_evicted=self.ledger.enforce_size_limit(ledger_max_size),
        )
        logger.info(f"Token cleanup finished: {report.model_dump()}")
        return report
