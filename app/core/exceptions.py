"""Custom exceptions and error handling for the Bulletin API."""

from datetime import datetime
from typing import Optional

from fastapi import HTTPException, status


# Token lifecycle errors (domain layer, never shown verbatim to clients)
class TokenError(Exception):
    """Base exception for token issuance, validation and revocation failures."""

    error_code = "TOKEN_ERROR"

    def __init__(self, message: str = "Token error"):
        super().__init__(message)
        self.message = message


class ConfigurationError(TokenError):
    """Raised at startup when the signing keys are missing or do not match."""

    error_code = "CONFIGURATION_ERROR"


class TokenGenerationError(TokenError):
    """Raised when a token cannot be signed or its claims are unusable."""

    error_code = "TOKEN_GENERATION_FAILED"


class InvalidToken(TokenError):
    """Raised for malformed tokens, missing claims or unknown token ids."""

    error_code = "INVALID_TOKEN"


class TokenExpired(TokenError):
    """Raised when a correctly signed token is past its expiry."""

    error_code = "TOKEN_EXPIRED"

    def __init__(self, expired_at: Optional[datetime] = None, message: str = "Token has expired"):
        super().__init__(message)
        self.expired_at = expired_at


class TokenValidationFailed(TokenError):
    """Raised for bad signatures and issuer/audience mismatches."""

    error_code = "TOKEN_VALIDATION_FAILED"


class TokenRevoked(TokenError):
    """Raised when the token id is present in the revocation ledger."""

    error_code = "TOKEN_REVOKED"

    def __init__(self, jti: str, message: str = "Token has been revoked"):
        super().__init__(message)
        self.jti = jti


class SecurityIncident(TokenError):
    """Raised when a used or revoked refresh token is presented again."""

    error_code = "SECURITY_INCIDENT"

    def __init__(
        self,
        jti: str,
        user_id: Optional[int] = None,
        revoked_count: int = 0,
        message: str = "Refresh token reuse detected",
    ):
        super().__init__(message)
        self.jti = jti
        self.user_id = user_id
        self.revoked_count = revoked_count


class ConcurrentModification(TokenError):
    """Raised when a refresh token row changed status under a conditional update."""

    error_code = "CONCURRENT_MODIFICATION"

    def __init__(self, jti: str, expected_status: str):
        super().__init__(f"Refresh token {jti} is no longer {expected_status}")
        self.jti = jti
        self.expected_status = expected_status


class BulletinException(HTTPException):
    """Base exception for Bulletin API."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: str | None = None,
        headers: dict | None = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code


# Authentication Errors (401, 403)
class InvalidCredentialsError(BulletinException):
    """Raised for every authentication failure; the detail never says why."""

    def __init__(self, detail: str = "Invalid or expired credentials"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            error_code="INVALID_CREDENTIALS",
            headers={"WWW-Authenticate": "Bearer"},
        )


class ForbiddenError(BulletinException):
    """Raised when user lacks permission for an action."""

    def __init__(self, detail: str = "You do not have permission to perform this action"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=detail,
            error_code="FORBIDDEN",
        )


# Resource Errors (404)
class NotFoundError(BulletinException):
    """Raised when a resource is not found."""

    def __init__(self, resource: str = "Resource", detail: str | None = None):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=detail or f"{resource} not found",
            error_code="NOT_FOUND",
        )


# Validation Errors (400)
class ValidationError(BulletinException):
    """Raised when input validation fails."""

    def __init__(self, detail: str = "Invalid input"):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
            error_code="VALIDATION_ERROR",
        )


# Server Errors (500)
class InternalServerError(BulletinException):
    """Raised for unexpected server errors."""

    def __init__(self, detail: str = "An unexpected error occurred"):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=detail,
            error_code="INTERNAL_ERROR",
        )
