"""
Durable state machine for refresh tokens.

``RefreshTokenStore`` is the transactional contract (create, find, save,
bulk revoke, cleanup). Aggregates used by dashboards and incident response
live in ``RefreshTokenReports`` so the write path stays small.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Union

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from app.core.exceptions import ConcurrentModification
from app.core.timeutils import utcnow
from app.models.refresh_token import RefreshToken
from app.schemas.tokens import DeviceInfo, RefreshTokenRecord, RevocationReason, TokenStatus

logger = logging.getLogger(__name__)

def _reason_value(reason: Union[RevocationReason, str]) -> str:
    return reason.value if isinstance(reason, RevocationReason) else reason


def to_record(row: RefreshToken) -> RefreshTokenRecord:
    """Map an ORM row to its value type."""
    return RefreshTokenRecord(
        id=row.id,
        jti=row.jti,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=row.expires_at,
        device_info=DeviceInfo(
            device_id=row.device_id,
            device_name=row.device_name,
            ip_address=row.ip_address,
            user_agent=row.user_agent or "",
            platform=row.platform,
            browser=row.browser,
        ),
        status=TokenStatus(row.status),
        revoked_reason=row.revoked_reason,
        revoked_at=row.revoked_at,
        last_used_at=row.last_used_at,
        parent_token_jti=row.parent_token_jti,
        access_token_jti=row.access_token_jti,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _state_columns(record: RefreshTokenRecord) -> dict:
    """Columns a state transition may change."""
    return {
        "status": record.status.value,
        "revoked_reason": record.revoked_reason,
        "revoked_at": record.revoked_at,
        "last_used_at": record.last_used_at,
        "updated_at": record.updated_at or utcnow(),
    }


class RefreshTokenStore:
    """Repository for refresh token records. Each write commits."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        now = utcnow()
        device = record.device_info
        row = RefreshToken(
            jti=record.jti,
            user_id=record.user_id,
            token_hash=record.token_hash,
            expires_at=record.expires_at,
            status=record.status.value,
            revoked_reason=record.revoked_reason,
            revoked_at=record.revoked_at,
            last_used_at=record.last_used_at,
            parent_token_jti=record.parent_token_jti,
            access_token_jti=record.access_token_jti,
            device_id=device.device_id,
            device_name=device.device_name,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            platform=device.platform,
            browser=device.browser,
            created_at=record.created_at or now,
            updated_at=record.updated_at or now,
        )
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return to_record(row)

    def find_by_jti(self, jti: str) -> Optional[RefreshTokenRecord]:
        row = self.db.query(RefreshToken).filter(RefreshToken.jti == jti).first()
        return to_record(row) if row else None

    def find_by_token_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        row = self.db.query(RefreshToken).filter(RefreshToken.token_hash == token_hash).first()
        return to_record(row) if row else None

    def save(self, updated: RefreshTokenRecord, expected_status: TokenStatus) -> RefreshTokenRecord:
        """
        Persist a state transition produced by the record's ``mark_*`` methods.

        The update only applies while the stored status is still
        ``expected_status``. If another request moved the row first, nothing
        is written and ConcurrentModification is raised.
        """
        count = self.db.query(RefreshToken).filter(
            RefreshToken.jti == updated.jti,
            RefreshToken.status == expected_status.value,
        ).update(_state_columns(updated), synchronize_session=False)

        if count == 0:
            self.db.rollback()
            raise ConcurrentModification(updated.jti, expected_status.value)

        self.db.commit()
        return updated

    def revoke_all_for_user(
        self,
        user_id: int,
        reason: Union[RevocationReason, str],
        exclude_jti: Optional[str] = None,
    ) -> int:
        query = self.db.query(RefreshToken).filter(
            RefreshToken.user_id == user_id,
            RefreshToken.status == TokenStatus.ACTIVE.value,
        )
        if exclude_jti:
            query = query.filter(RefreshToken.jti != exclude_jti)
        return self._bulk_revoke(query, reason)

    def revoke_all_for_device(self, device_id: str, reason: Union[RevocationReason, str]) -> int:
        query = self.db.query(RefreshToken).filter(
            RefreshToken.device_id == device_id,
            RefreshToken.status == TokenStatus.ACTIVE.value,
        )
        return self._bulk_revoke(query, reason)

    def _bulk_revoke(self, query, reason: Union[RevocationReason, str]) -> int:
        now = utcnow()
        count = query.update({
            "status": TokenStatus.REVOKED.value,
            "revoked_reason": _reason_value(reason),
            "revoked_at": now,
            "updated_at": now,
        }, synchronize_session=False)
        self.db.commit()
        return count

    def list_by_user(
        self, user_id: int, limit: Optional[int] = None, active_only: bool = False
    ) -> list[RefreshTokenRecord]:
        query = self.db.query(RefreshToken).filter(RefreshToken.user_id == user_id)
        if active_only:
            query = query.filter(
                RefreshToken.status == TokenStatus.ACTIVE.value,
                RefreshToken.expires_at > utcnow(),
            )
        query = query.order_by(RefreshToken.created_at.desc(), RefreshToken.id.desc())
        if limit:
            query = query.limit(limit)
        return [to_record(row) for row in query.all()]

    def list_by_device(self, device_id: str, limit: Optional[int] = None) -> list[RefreshTokenRecord]:
        query = self.db.query(RefreshToken).filter(
            RefreshToken.device_id == device_id
        ).order_by(RefreshToken.created_at.desc(), RefreshToken.id.desc())
        if limit:
            query = query.limit(limit)
        return [to_record(row) for row in query.all()]

    def count_active_for_user(self, user_id: int) -> int:
        return self.db.query(func.count(RefreshToken.id)).filter(
            RefreshToken.user_id == user_id,
            RefreshToken.status == TokenStatus.ACTIVE.value,
            RefreshToken.expires_at > utcnow(),
        ).scalar() or 0

    # Rotation chains

    def find_chain_root(self, jti: str) -> Optional[str]:
        """Walk parent links up to the first token of the rotation chain."""
        current = self.db.query(RefreshToken).filter(RefreshToken.jti == jti).first()
        if current is None:
            return None

        # Corrupted parent links can form a cycle
        visited = {current.jti}
        while current.parent_token_jti and current.parent_token_jti not in visited:
            parent = self.db.query(RefreshToken).filter(
                RefreshToken.jti == current.parent_token_jti
            ).first()
            if parent is None:
                break
            current = parent
            visited.add(current.jti)

        return current.jti

    def get_token_family(self, root_jti: str) -> list[RefreshTokenRecord]:
        """All records descending from ``root_jti``, root included."""
        root = self.db.query(RefreshToken).filter(RefreshToken.jti == root_jti).first()
        if root is None:
            return []

        family = [root]
        seen = {root.jti}
        parent_jtis = [root.jti]
        while parent_jtis:
            children = self.db.query(RefreshToken).filter(
                RefreshToken.parent_token_jti.in_(parent_jtis)
            ).all()
            children = [child for child in children if child.jti not in seen]
            if not children:
                break
            family.extend(children)
            seen.update(child.jti for child in children)
            parent_jtis = [child.jti for child in children]

        return [to_record(row) for row in family]

    def revoke_family(
        self, root_jti: str, reason: Union[RevocationReason, str]
    ) -> list[RefreshTokenRecord]:
        """
        Revoke every not-yet-revoked member of a rotation chain.

        Returns the full family as it stands afterwards so the caller can
        deny the matching token ids elsewhere.
        """
        family_jtis = [record.jti for record in self.get_token_family(root_jti)]
        if not family_jtis:
            return []

        query = self.db.query(RefreshToken).filter(
            RefreshToken.jti.in_(family_jtis),
            RefreshToken.status != TokenStatus.REVOKED.value,
        )
        count = self._bulk_revoke(query, reason)
        logger.warning(f"Revoked {count} refresh token(s) in chain rooted at {root_jti}")
        return self.get_token_family(root_jti)

    # Sweeps (run out of band, never on the request path)

    def mark_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        count = self.db.query(RefreshToken).filter(
            RefreshToken.status == TokenStatus.ACTIVE.value,
            RefreshToken.expires_at <= now,
        ).update({
            "status": TokenStatus.EXPIRED.value,
            "updated_at": now,
        }, synchronize_session=False)
        self.db.commit()
        return count

    def cleanup_expired(self, before: Optional[datetime] = None) -> int:
        before = before or utcnow()
        count = self.db.query(RefreshToken).filter(
            RefreshToken.expires_at <= before
        ).delete(synchronize_session=False)
        self.db.commit()
        return count

    def cleanup_revoked(self, days: int = 30) -> int:
        cutoff = utcnow() - timedelta(days=days)
        count = self.db.query(RefreshToken).filter(
            RefreshToken.status == TokenStatus.REVOKED.value,
            RefreshToken.revoked_at <= cutoff,
        ).delete(synchronize_session=False)
        self.db.commit()
        return count


class RefreshTokenReports:
    """Read-only aggregates over refresh tokens."""

    def __init__(self, db: Session):
        self.db = db

    def _status_counts(self, *filters) -> dict:
        now = utcnow()
        row = self.db.query(
            func.count(RefreshToken.id),
            func.sum(case(
                ((RefreshToken.status == TokenStatus.ACTIVE.value) & (RefreshToken.expires_at > now), 1),
                else_=0,
            )),
            func.sum(case(
                ((RefreshToken.status == TokenStatus.EXPIRED.value) | (
                    (RefreshToken.status == TokenStatus.ACTIVE.value) & (RefreshToken.expires_at <= now)
                ), 1),
                else_=0,
            )),
            func.sum(case((RefreshToken.status == TokenStatus.USED.value, 1), else_=0)),
            func.sum(case((RefreshToken.status == TokenStatus.REVOKED.value, 1), else_=0)),
        ).filter(*filters).one()

        total, active, expired, used, revoked = row
        return {
            "total": total or 0,
            "active": active or 0,
            "expired": expired or 0,
            "used": used or 0,
            "revoked": revoked or 0,
        }

    def get_user_token_stats(self, user_id: int) -> dict:
        stats = self._status_counts(RefreshToken.user_id == user_id)

        devices = self.db.query(
            RefreshToken.device_id,
            RefreshToken.device_name,
            func.count(RefreshToken.id),
            func.max(RefreshToken.created_at),
        ).filter(
            RefreshToken.user_id == user_id
        ).group_by(RefreshToken.device_id, RefreshToken.device_name).all()

        stats["devices"] = [
            {
                "device_id": device_id,
                "device_name": device_name,
                "token_count": count,
                "last_issued_at": last_issued,
            }
            for device_id, device_name, count, last_issued in devices
        ]
        return stats

    def get_system_stats(self) -> dict:
        stats = self._status_counts()
        stats["unique_users"] = self.db.query(
            func.count(func.distinct(RefreshToken.user_id))
        ).scalar() or 0
        stats["unique_devices"] = self.db.query(
            func.count(func.distinct(RefreshToken.device_id))
        ).scalar() or 0
        return stats

    def get_tokens_near_expiry(self, threshold_hours: int = 24) -> list[RefreshTokenRecord]:
        now = utcnow()
        rows = self.db.query(RefreshToken).filter(
            RefreshToken.status == TokenStatus.ACTIVE.value,
            RefreshToken.expires_at > now,
            RefreshToken.expires_at <= now + timedelta(hours=threshold_hours),
        ).order_by(RefreshToken.expires_at).all()
        return [to_record(row) for row in rows]
