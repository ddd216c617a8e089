"""Refresh token model for rotation and replay detection."""

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from app.core.database import Base
from app.core.timeutils import utcnow


class RefreshToken(Base):
    """One row per issued refresh token. Only the token hash is stored."""

    __tablename__ = "refresh_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    jti = Column(String(255), unique=True, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token_hash = Column(String(64), unique=True, nullable=False)  # SHA-256 hash
    expires_at = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default="active")  # active/used/revoked/expired
    revoked_reason = Column(String(50), nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    last_used_at = Column(DateTime, nullable=True)
    parent_token_jti = Column(String(255), nullable=True)
    access_token_jti = Column(String(255), nullable=True)

    # Device the pair was issued to
    device_id = Column(String(255), nullable=False)
    device_name = Column(String(255), nullable=False)
    ip_address = Column(String(45), nullable=False)
    user_agent = Column(String(1000), nullable=False, default="")
    platform = Column(String(50), nullable=True)
    browser = Column(String(50), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    user = relationship("User", back_populates="refresh_tokens")

    __table_args__ = (
        Index("ix_refresh_tokens_user_id_status", "user_id", "status"),
        Index("ix_refresh_tokens_device_id", "device_id"),
        Index("ix_refresh_tokens_parent_token_jti", "parent_token_jti"),
        Index("ix_refresh_tokens_expires_at", "expires_at"),
    )

    def __repr__(self):
        return f"<RefreshToken {self.jti} ({self.status})>"
