"""
Denylist of token ids, consulted on every authenticated request.

Membership is answered from the unique ``jti`` index, fronted by a small
in-process cache of positive hits. Misses are never cached: a revocation
written by another worker must take effect on the next request here.
"""

import logging
import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Iterable, Optional, Union

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.timeutils import utcnow
from app.models.refresh_token import RefreshToken
from app.models.token_blacklist import TokenBlacklist
from app.schemas.admin import SearchCriteria, SearchResult
from app.schemas.tokens import (
    SECURITY_REASONS,
    RevocationEntry,
    RevocationReason,
    TokenType,
)

logger = logging.getLogger(__name__)

SECURITY_REASON_VALUES = [reason.value for reason in SECURITY_REASONS]


class RevocationCache:
    """
    Thread-safe bounded cache of revoked jtis.

    Each jti is kept for at most ``ttl`` and never past the expiry of the
    token it denies. The ttl bounds how long a removal made by another
    worker goes unseen here. When full, the oldest insertion is dropped; a
    dropped jti is simply looked up again.
    """

    def __init__(self, max_entries: int = 10000, ttl: timedelta = timedelta(seconds=60)) -> None:
        self._lock = threading.Lock()
        self._entries: OrderedDict[str, datetime] = OrderedDict()
        self.max_entries = max_entries
        self.ttl = ttl

    @classmethod
    def from_settings(cls) -> "RevocationCache":
        return cls(
            settings.REVOCATION_CACHE_MAX_ENTRIES,
            ttl=timedelta(seconds=settings.REVOCATION_CACHE_TTL_SECONDS),
        )

    def contains(self, jti: str, now: Optional[datetime] = None) -> bool:
        with self._lock:
            expires_at = self._entries.get(jti)
            if expires_at is None:
                return False
            if expires_at <= (now or utcnow()):
                del self._entries[jti]
                return False
            return True

    def add(self, jti: str, expires_at: datetime, now: Optional[datetime] = None) -> None:
        if self.max_entries <= 0:
            return
        expires_at = min(expires_at, (now or utcnow()) + self.ttl)
        with self._lock:
            self._entries[jti] = expires_at
            self._entries.move_to_end(jti)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def discard(self, jti: str) -> None:
        with self._lock:
            self._entries.pop(jti, None)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._lock:
            stale = [jti for jti, expires_at in self._entries.items() if expires_at <= now]
            for jti in stale:
                del self._entries[jti]
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def to_entry(row: TokenBlacklist) -> RevocationEntry:
    return RevocationEntry(
        jti=row.jti,
        token_type=TokenType(row.token_type),
        reason=RevocationReason(row.reason),
        expires_at=row.expires_at,
        blacklisted_at=row.blacklisted_at,
        token_hash=row.token_hash,
        user_id=row.user_id,
        device_id=row.device_id,
        metadata=row.metadata_json or {},
    )


def _to_row(entry: RevocationEntry) -> TokenBlacklist:
    return TokenBlacklist(
        jti=entry.jti,
        token_type=entry.token_type.value,
        token_hash=entry.token_hash,
        user_id=entry.user_id,
        device_id=entry.device_id,
        reason=entry.reason.value,
        blacklisted_at=entry.blacklisted_at,
        expires_at=entry.expires_at,
        metadata_json=dict(entry.metadata),
    )


class RevocationLedger:
    """Transactional side of the denylist. Each write commits."""

    def __init__(
        self,
        db: Session,
        cache: Optional[RevocationCache] = None,
        access_token_ttl: Optional[timedelta] = None,
    ):
        self.db = db
        self.cache = cache if cache is not None else RevocationCache.from_settings()
        self.access_token_ttl = access_token_ttl or timedelta(seconds=settings.access_token_ttl_seconds)

    def add(self, entry: RevocationEntry) -> bool:
        """Deny ``entry.jti``. Returns False if it was already denied."""
        if self.db.query(TokenBlacklist.id).filter(TokenBlacklist.jti == entry.jti).first():
            return False

        self.db.add(_to_row(entry))
        try:
            self.db.commit()
        except IntegrityError:
            # Lost a race with another writer; the jti is denied either way
            self.db.rollback()
            return False

        self.cache.add(entry.jti, entry.expires_at)
        self._log_added(entry)
        return True

    def _log_added(self, entry: RevocationEntry) -> None:
        if entry.is_security_related:
            logger.warning(
                f"Security revocation of {entry.token_type.value} token {entry.jti} "
                f"(user {entry.user_id}, reason {entry.reason.value})"
            )
        else:
            logger.info(f"Revoked {entry.token_type.value} token {entry.jti} ({entry.reason.value})")

    def is_revoked(self, jti: str) -> bool:
        now = utcnow()
        if self.cache.contains(jti, now):
            return True

        expires_at = self.db.query(TokenBlacklist.expires_at).filter(
            TokenBlacklist.jti == jti,
            TokenBlacklist.expires_at > now,
        ).scalar()
        if expires_at is None:
            return False

        self.cache.add(jti, expires_at)
        return True

    def is_token_hash_revoked(self, token_hash: str) -> bool:
        return self.db.query(TokenBlacklist.id).filter(
            TokenBlacklist.token_hash == token_hash,
            TokenBlacklist.expires_at > utcnow(),
        ).first() is not None

    def find_by_jti(self, jti: str) -> Optional[RevocationEntry]:
        row = self.db.query(TokenBlacklist).filter(TokenBlacklist.jti == jti).first()
        return to_entry(row) if row else None

    def remove(self, jti: str) -> bool:
        count = self.db.query(TokenBlacklist).filter(
            TokenBlacklist.jti == jti
        ).delete(synchronize_session=False)
        self.db.commit()
        self.cache.discard(jti)
        return count > 0

    # Batch variants

    def add_batch(self, entries: Iterable[RevocationEntry]) -> int:
        """Deny several jtis in one transaction. Returns how many were new."""
        pending: dict[str, RevocationEntry] = {}
        for entry in entries:
            pending.setdefault(entry.jti, entry)
        if not pending:
            return 0

        existing = {
            row.jti
            for row in self.db.query(TokenBlacklist.jti).filter(
                TokenBlacklist.jti.in_(list(pending))
            ).all()
        }
        new_entries = [entry for jti, entry in pending.items() if jti not in existing]
        if not new_entries:
            return 0

        self.db.add_all([_to_row(entry) for entry in new_entries])
        try:
            self.db.commit()
        except IntegrityError:
            # A concurrent writer inserted some of them; fall back to one at a time
            self.db.rollback()
            return sum(1 for entry in new_entries if self.add(entry))

        for entry in new_entries:
            self.cache.add(entry.jti, entry.expires_at)
            self._log_added(entry)
        return len(new_entries)

    def is_revoked_batch(self, jtis: Iterable[str]) -> dict[str, bool]:
        now = utcnow()
        result = {}
        unknown = []
        for jti in jtis:
            if self.cache.contains(jti, now):
                result[jti] = True
            else:
                result[jti] = False
                unknown.append(jti)

        if unknown:
            rows = self.db.query(TokenBlacklist.jti, TokenBlacklist.expires_at).filter(
                TokenBlacklist.jti.in_(unknown),
                TokenBlacklist.expires_at > now,
            ).all()
            for jti, expires_at in rows:
                result[jti] = True
                self.cache.add(jti, expires_at)

        return result

    def remove_batch(self, jtis: Iterable[str]) -> int:
        jtis = list(jtis)
        if not jtis:
            return 0
        count = self.db.query(TokenBlacklist).filter(
            TokenBlacklist.jti.in_(jtis)
        ).delete(synchronize_session=False)
        self.db.commit()
        for jti in jtis:
            self.cache.discard(jti)
        return count

    # Bulk revocation from refresh token records

    def entries_for_records(self, records, reason: Union[RevocationReason, str]) -> list[RevocationEntry]:
        """
        Ledger entries denying each record's refresh token and its paired access token.

        Tokens already past their expiry are skipped.
        """
        reason = RevocationReason(reason)
        now = utcnow()
        entries = []
        for record in records:
            # Accepts ORM rows and RefreshTokenRecord values alike
            if isinstance(record, RefreshToken):
                device_id = record.device_id
            else:
                device_id = record.device_info.device_id

            if record.expires_at > now:
                entries.append(RevocationEntry(
                    jti=record.jti,
                    token_type=TokenType.REFRESH,
                    reason=reason,
                    expires_at=record.expires_at,
                    token_hash=record.token_hash,
                    user_id=record.user_id,
                    device_id=device_id,
                ))

            if record.access_token_jti:
                issued_at = record.created_at or now
                access_expires_at = min(record.expires_at, issued_at + self.access_token_ttl)
                if access_expires_at > now:
                    entries.append(RevocationEntry(
                        jti=record.access_token_jti,
                        token_type=TokenType.ACCESS,
                        reason=reason,
                        expires_at=access_expires_at,
                        user_id=record.user_id,
                        device_id=device_id,
                    ))
        return entries

    def revoke_all_for_user(
        self,
        user_id: int,
        reason: Union[RevocationReason, str],
        exclude_jti: Optional[str] = None,
    ) -> int:
        query = self.db.query(RefreshToken).filter(
            RefreshToken.user_id == user_id,
            RefreshToken.expires_at > utcnow(),
        )
        if exclude_jti:
            query = query.filter(RefreshToken.jti != exclude_jti)
        count = self.add_batch(self.entries_for_records(query.all(), reason))
        logger.info(f"Added {count} ledger entries for user {user_id}")
        return count

    def revoke_all_for_device(self, device_id: str, reason: Union[RevocationReason, str]) -> int:
        rows = self.db.query(RefreshToken).filter(
            RefreshToken.device_id == device_id,
            RefreshToken.expires_at > utcnow(),
        ).all()
        count = self.add_batch(self.entries_for_records(rows, reason))
        logger.info(f"Added {count} ledger entries for device {device_id}")
        return count

    # Capacity discipline

    def cleanup_expired_entries(self) -> int:
        now = utcnow()
        count = self.db.query(TokenBlacklist).filter(
            TokenBlacklist.expires_at <= now
        ).delete(synchronize_session=False)
        self.db.commit()
        self.cache.purge_expired(now)
        return count

    def cleanup_old_entries(self, days: int = 90) -> int:
        cutoff = utcnow() - timedelta(days=days)
        stale = [
            row.jti
            for row in self.db.query(TokenBlacklist.jti).filter(
                TokenBlacklist.blacklisted_at < cutoff
            ).all()
        ]
        return self.remove_batch(stale)

    def count(self) -> int:
        return self.db.query(func.count(TokenBlacklist.id)).scalar() or 0

    def is_size_exceeded(self, max_size: int) -> bool:
        return self.count() > max_size

    def enforce_size_limit(self, max_size: int) -> int:
        """
        Shrink the ledger to ``max_size`` entries.

        Eviction order: expired entries, then the oldest entries with
        ordinary reasons, then the oldest security-related entries.
        Returns the number of entries removed.
        """
        excess = self.count() - max_size
        if excess <= 0:
            return 0

        removed = self.cleanup_expired_entries()
        excess -= removed

        for security_related in (False, True):
            if excess <= 0:
                break
            query = self.db.query(TokenBlacklist.jti)
            if security_related:
                query = query.filter(TokenBlacklist.reason.in_(SECURITY_REASON_VALUES))
            else:
                query = query.filter(TokenBlacklist.reason.notin_(SECURITY_REASON_VALUES))
            victims = [
                row.jti
                for row in query.order_by(TokenBlacklist.blacklisted_at, TokenBlacklist.id).limit(excess).all()
            ]
            evicted = self.remove_batch(victims)
            removed += evicted
            excess -= evicted

        logger.warning(f"Revocation ledger over {max_size} entries; evicted {removed}")
        return removed


class RevocationReports:
    """Read-only views over the ledger for operations and incident response."""

    def __init__(self, db: Session):
        self.db = db

    def get_size_info(self) -> dict:
        now = utcnow()
        total = self.db.query(func.count(TokenBlacklist.id)).scalar() or 0
        active = self.db.query(func.count(TokenBlacklist.id)).filter(
            TokenBlacklist.expires_at > now
        ).scalar() or 0
        oldest, newest = self.db.query(
            func.min(TokenBlacklist.blacklisted_at),
            func.max(TokenBlacklist.blacklisted_at),
        ).one()
        return {
            "total": total,
            "active": active,
            "expired": total - active,
            "oldest_entry_at": oldest,
            "newest_entry_at": newest,
        }

    def _grouped(self, column, *filters) -> dict[str, int]:
        rows = self.db.query(column, func.count(TokenBlacklist.id)).filter(*filters).group_by(column).all()
        return {key: count for key, count in rows}

    def get_blacklist_stats(self) -> dict:
        now = utcnow()
        size = self.get_size_info()
        security_related = self.db.query(func.count(TokenBlacklist.id)).filter(
            TokenBlacklist.reason.in_(SECURITY_REASON_VALUES)
        ).scalar() or 0
        last_24h = self.db.query(func.count(TokenBlacklist.id)).filter(
            TokenBlacklist.blacklisted_at >= now - timedelta(hours=24)
        ).scalar() or 0
        return {
            "total": size["total"],
            "active": size["active"],
            "expired": size["expired"],
            "by_reason": self._grouped(TokenBlacklist.reason),
            "by_type": self._grouped(TokenBlacklist.token_type),
            "security_related": security_related,
            "last_24h": last_24h,
        }

    def get_user_stats(self, user_id: int) -> dict:
        now = utcnow()
        user_filter = TokenBlacklist.user_id == user_id
        total = self.db.query(func.count(TokenBlacklist.id)).filter(user_filter).scalar() or 0
        active = self.db.query(func.count(TokenBlacklist.id)).filter(
            user_filter, TokenBlacklist.expires_at > now
        ).scalar() or 0
        last_revoked = self.db.query(func.max(TokenBlacklist.blacklisted_at)).filter(user_filter).scalar()
        return {
            "user_id": user_id,
            "total": total,
            "active": active,
            "by_reason": self._grouped(TokenBlacklist.reason, user_filter),
            "last_revoked_at": last_revoked,
        }

    def search(self, criteria: SearchCriteria, limit: int = 50, offset: int = 0) -> SearchResult:
        query = self.db.query(TokenBlacklist)
        if criteria.user_id is not None:
            query = query.filter(TokenBlacklist.user_id == criteria.user_id)
        if criteria.device_id:
            query = query.filter(TokenBlacklist.device_id == criteria.device_id)
        if criteria.token_type:
            query = query.filter(TokenBlacklist.token_type == criteria.token_type.value)
        if criteria.reason:
            query = query.filter(TokenBlacklist.reason == criteria.reason.value)
        if criteria.date_from:
            query = query.filter(TokenBlacklist.blacklisted_at >= criteria.date_from)
        if criteria.date_to:
            query = query.filter(TokenBlacklist.blacklisted_at <= criteria.date_to)

        total = query.count()
        rows = query.order_by(
            TokenBlacklist.blacklisted_at.desc(), TokenBlacklist.id.desc()
        ).offset(offset).limit(limit).all()

        return SearchResult(
            entries=[to_entry(row) for row in rows],
            total=total,
            limit=limit,
            offset=offset,
            has_more=offset + len(rows) < total,
        )

    def get_high_priority_entries(self, limit: int = 100) -> list[RevocationEntry]:
        """Active security-related entries, newest first."""
        rows = self.db.query(TokenBlacklist).filter(
            TokenBlacklist.reason.in_(SECURITY_REASON_VALUES),
            TokenBlacklist.expires_at > utcnow(),
        ).order_by(TokenBlacklist.blacklisted_at.desc()).limit(limit).all()
        return [to_entry(row) for row in rows]

    def get_health_status(self, max_size: int) -> dict:
        size = self.get_size_info()
        usage = size["total"] / max_size if max_size > 0 else 1.0
        expired_ratio = size["expired"] / size["total"] if size["total"] else 0.0

        issues = []
        status = "healthy"
        if usage >= 1.0:
            status = "critical"
            issues.append("Ledger is at or over its size limit")
        elif usage >= 0.8:
            status = "warning"
            issues.append("Ledger is above 80% of its size limit")
        if expired_ratio > 0.5:
            if status == "healthy":
                status = "warning"
            issues.append("More than half of the entries are expired; cleanup may not be running")

        return {
            "status": status,
            "total": size["total"],
            "max_size": max_size,
            "usage_percent": round(usage * 100, 2),
            "expired_ratio": round(expired_ratio, 4),
            "issues": issues,
        }
