from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Environment
    ENVIRONMENT: str = "development"

    # Database
    DATABASE_URL: str = "sqlite:///./bulletin.db"

    # JWT signing (asymmetric only; PEM text or a path to a PEM file)
    JWT_ALGORITHM: str = "RS256"
    JWT_PRIVATE_KEY: Optional[str] = None
    JWT_PUBLIC_KEY: Optional[str] = None
    JWT_PRIVATE_KEY_PATH: Optional[str] = None
    JWT_PUBLIC_KEY_PATH: Optional[str] = None
    JWT_ISSUER: str = "bulletin-api"
    JWT_AUDIENCE: str = "bulletin-client"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    # Refresh token policy
    MAX_REFRESH_TOKENS_PER_USER: int = 10
    REFRESH_DEVICE_BINDING: bool = True
    REVOKED_TOKEN_RETENTION_DAYS: int = 30

    # Revocation ledger
    BLACKLIST_MAX_SIZE: int = 100000
    BLACKLIST_RETENTION_DAYS: int = 90
    REVOCATION_CACHE_MAX_ENTRIES: int = 10000
    REVOCATION_CACHE_TTL_SECONDS: int = 60

    # Background sweeps
    ENABLE_SCHEDULER: bool = True
    CLEANUP_INTERVAL_MINUTES: int = 60

    # CSRF
    CSRF_TOKEN_TTL_SECONDS: int = 3600
    CSRF_MAX_TOKENS: int = 10

    # CORS
    FRONTEND_URL: str = "http://localhost:5173"

    # Redis (optional, for distributed rate limiting)
    REDIS_URL: Optional[str] = None

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.ACCESS_TOKEN_EXPIRE_MINUTES * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.REFRESH_TOKEN_EXPIRE_DAYS * 24 * 3600

    def load_private_key(self) -> Optional[str]:
        """Return the signing key PEM, reading it from disk if only a path is set."""
        if self.JWT_PRIVATE_KEY:
            return self.JWT_PRIVATE_KEY
        if self.JWT_PRIVATE_KEY_PATH:
            return Path(self.JWT_PRIVATE_KEY_PATH).read_text()
        return None

    def load_public_key(self) -> Optional[str]:
        """Return the verification key PEM, reading it from disk if only a path is set."""
        if self.JWT_PUBLIC_KEY:
            return self.JWT_PUBLIC_KEY
        if self.JWT_PUBLIC_KEY_PATH:
            return Path(self.JWT_PUBLIC_KEY_PATH).read_text()
        return None

    def validate_required_secrets(self) -> list[str]:
        """Validate that critical secrets are set. Returns list of errors."""
        errors = []
        if not (self.JWT_PRIVATE_KEY or self.JWT_PRIVATE_KEY_PATH):
            errors.append("JWT_PRIVATE_KEY or JWT_PRIVATE_KEY_PATH must be set")
        if not (self.JWT_PUBLIC_KEY or self.JWT_PUBLIC_KEY_PATH):
            errors.append("JWT_PUBLIC_KEY or JWT_PUBLIC_KEY_PATH must be set")
        if not self.DATABASE_URL:
            errors.append("DATABASE_URL must be set")
        if self.ACCESS_TOKEN_EXPIRE_MINUTES <= 0 or self.REFRESH_TOKEN_EXPIRE_DAYS <= 0:
            errors.append("Token lifetimes must be positive")
        return errors

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
