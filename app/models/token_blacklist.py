"""Token blacklist model for invalidated tokens."""

from sqlalchemy import Column, DateTime, Index, Integer, JSON, String

from app.core.database import Base
from app.core.timeutils import utcnow


class TokenBlacklist(Base):
    """Stores revoked token ids until the token they deny expires."""

    __tablename__ = "token_blacklist"

    id = Column(Integer, primary_key=True, autoincrement=True)
    jti = Column(String(255), unique=True, nullable=False, index=True)  # JWT ID
    token_type = Column(String(20), nullable=False)  # 'access' or 'refresh'
    token_hash = Column(String(64), nullable=True, index=True)
    user_id = Column(Integer, nullable=True)
    device_id = Column(String(255), nullable=True)
    reason = Column(String(50), nullable=False)
    blacklisted_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    metadata_json = Column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_token_blacklist_expires_at", "expires_at"),
        Index("ix_token_blacklist_user_id", "user_id"),
        Index("ix_token_blacklist_device_id", "device_id"),
        Index("ix_token_blacklist_reason", "reason"),
        Index("ix_token_blacklist_blacklisted_at", "blacklisted_at"),
    )

    def __repr__(self):
        return f"<TokenBlacklist {self.jti} ({self.reason})>"
