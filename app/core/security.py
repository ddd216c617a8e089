import hashlib
import logging
import os
import secrets
import threading
import time
from datetime import datetime, timedelta
from typing import Any, Optional

from jose import ExpiredSignatureError, JWTError, jws, jwt
from jose.exceptions import JOSEError, JWTClaimsError
from passlib.context import CryptContext
from pydantic import ValidationError as PydanticValidationError

from app.core.config import settings
from app.core.exceptions import (
    ConfigurationError,
    InvalidToken,
    TokenExpired,
    TokenGenerationError,
    TokenValidationFailed,
)
from app.core.timeutils import from_timestamp, to_timestamp, utcnow
from app.schemas.tokens import REQUIRED_CLAIMS, TokenClaims, TokenType, validate_custom_claims

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Only asymmetric families: verifiers must never hold a signing secret
ASYMMETRIC_ALGORITHMS = frozenset({
    "RS256", "RS384", "RS512",
    "PS256", "PS384", "PS512",
    "ES256", "ES384", "ES512",
})

KEY_PROBE = b"bulletin-key-pair-probe"


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a plain password against a hashed password."""
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """Hash a password using bcrypt."""
    return pwd_context.hash(password)


def hash_token(token: str) -> str:
    """Create SHA-256 hash of a token for storage."""
    return hashlib.sha256(token.encode()).hexdigest()


def generate_jti() -> str:
    """
    Build a token id that stays unique across workers and threads.

    Layout: microsecond clock, process id, thread id and 128 random bits,
    hex encoded and joined with '-'.
    """
    return "-".join((
        format(time.time_ns() // 1000, "x"),
        format(os.getpid(), "x"),
        format(threading.get_ident(), "x"),
        secrets.token_hex(16),
    ))


class TokenCodec:
    """
    Signs and verifies access and refresh tokens.

    Stateless apart from its configuration: it knows nothing about storage
    or revocation. A codec that constructs successfully holds a matching key
    pair, so signing problems surface at startup rather than on a request.
    """

    def __init__(
        self,
        private_key: Optional[str],
        public_key: Optional[str],
        algorithm: str = "RS256",
        issuer: str = "bulletin-api",
        audience: str = "bulletin-client",
        access_token_ttl: timedelta = timedelta(minutes=15),
        refresh_token_ttl: timedelta = timedelta(days=7),
    ):
        if algorithm not in ASYMMETRIC_ALGORITHMS:
            raise ConfigurationError(f"Unsupported signing algorithm: {algorithm}")
        if not private_key or not public_key:
            raise ConfigurationError("Both a private and a public key must be configured")
        if access_token_ttl.total_seconds() <= 0 or refresh_token_ttl.total_seconds() <= 0:
            raise ConfigurationError("Token lifetimes must be positive")

        self.private_key = private_key
        self.public_key = public_key
        self.algorithm = algorithm
        self.issuer = issuer
        self.audience = audience
        self.access_token_ttl = access_token_ttl
        self.refresh_token_ttl = refresh_token_ttl

        self._verify_key_pair()

    @classmethod
    def from_settings(cls, config=settings) -> "TokenCodec":
        try:
            private_key = config.load_private_key()
            public_key = config.load_public_key()
        except OSError as e:
            raise ConfigurationError(f"Could not read signing keys: {e}")

        return cls(
            private_key=private_key,
            public_key=public_key,
            algorithm=config.JWT_ALGORITHM,
            issuer=config.JWT_ISSUER,
            audience=config.JWT_AUDIENCE,
            access_token_ttl=timedelta(seconds=config.access_token_ttl_seconds),
            refresh_token_ttl=timedelta(seconds=config.refresh_token_ttl_seconds),
        )

    def _verify_key_pair(self) -> None:
        try:
            signed = jws.sign(KEY_PROBE, self.private_key, algorithm=self.algorithm)
            verified = jws.verify(signed, self.public_key, algorithms=[self.algorithm])
        except (JOSEError, ValueError, TypeError) as e:
            raise ConfigurationError(f"Signing key pair is unusable: {e}")

        if verified != KEY_PROBE:
            raise ConfigurationError("Signing key pair does not match")

    # Generation

    def generate_access_token(
        self, claims: Optional[dict[str, Any]] = None, ttl: Optional[timedelta] = None
    ) -> str:
        return self._generate(TokenType.ACCESS, claims, ttl if ttl is not None else self.access_token_ttl)

    def generate_refresh_token(
        self, claims: Optional[dict[str, Any]] = None, ttl: Optional[timedelta] = None
    ) -> str:
        return self._generate(TokenType.REFRESH, claims, ttl if ttl is not None else self.refresh_token_ttl)

    def _generate(self, token_type: TokenType, claims: Optional[dict[str, Any]], ttl: timedelta) -> str:
        try:
            custom = validate_custom_claims(claims)
        except ValueError as e:
            raise TokenGenerationError(f"Invalid custom claims: {e}")

        now = utcnow()
        payload = dict(custom)
        # Standard claims are applied last
        payload.update({
            "iss": self.issuer,
            "aud": self.audience,
            "iat": to_timestamp(now),
            "exp": to_timestamp(now + ttl),
            "jti": generate_jti(),
            "type": token_type.value,
        })

        try:
            return jwt.encode(payload, self.private_key, algorithm=self.algorithm)
        except (JOSEError, ValueError, TypeError) as e:
            logger.error(f"Failed to sign {token_type.value} token: {e}")
            raise TokenGenerationError("Failed to sign token")

    # Validation

    def validate_token(self, token: str, expected_type: Optional[TokenType] = None) -> TokenClaims:
        """
        Verify and decode a token.

        Raises:
            InvalidToken: malformed token, missing claims or wrong type
            TokenExpired: valid signature but past ``exp``
            TokenValidationFailed: bad signature, issuer or audience
        """
        # Structural check first so garbage never reaches the verifier
        self.parse_unsafe(token)

        try:
            payload = jwt.decode(
                token,
                self.public_key,
                algorithms=[self.algorithm],
                options={"verify_aud": False, "verify_iss": False},
            )
        except ExpiredSignatureError:
            expired_at = self.get_expiration(token)
            logger.info(f"Rejected expired token (expired at {expired_at})")
            raise TokenExpired(expired_at=expired_at)
        except JWTClaimsError as e:
            raise InvalidToken(f"Invalid token claims: {e}")
        except JOSEError as e:
            raise TokenValidationFailed(f"Token verification failed: {e}")

        missing = [claim for claim in REQUIRED_CLAIMS if claim not in payload]
        if missing:
            raise InvalidToken(f"Token is missing required claims: {', '.join(missing)}")

        try:
            claims = TokenClaims.from_payload(payload)
        except PydanticValidationError as e:
            raise InvalidToken(f"Token claims are malformed: {e.error_count()} error(s)")

        if expected_type is not None and claims.type != expected_type:
            raise InvalidToken(f"Expected a {expected_type.value} token")

        if claims.iss != self.issuer:
            raise TokenValidationFailed("Token issuer does not match")

        audiences = claims.aud if isinstance(claims.aud, list) else [claims.aud]
        if self.audience not in audiences:
            raise TokenValidationFailed("Token audience does not match")

        return claims

    def parse_unsafe(self, token: str) -> dict[str, Any]:
        """
        Decode the payload WITHOUT verifying the signature.

        For diagnostics only (logging, reporting an expiry). Nothing read here
        may be used to authorize a request.
        """
        if not isinstance(token, str) or token.count(".") != 2:
            raise InvalidToken("Token must have three segments")

        try:
            jwt.get_unverified_header(token)
            return jwt.get_unverified_claims(token)
        except JWTError as e:
            raise InvalidToken(f"Malformed token: {e}")

    def get_expiration(self, token: str) -> Optional[datetime]:
        """Expiry read from the unverified payload, or None if it cannot be determined."""
        try:
            exp = self.parse_unsafe(token).get("exp")
        except InvalidToken:
            return None

        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return None
        try:
            return from_timestamp(exp)
        except (OverflowError, OSError, ValueError):
            return None

    def is_expired(self, token: str) -> bool:
        """
        Whether the token is past its expiry.

        A token whose expiry cannot be determined counts as expired.
        """
        expires_at = self.get_expiration(token)
        if expires_at is None:
            logger.warning("Could not determine token expiry; treating it as expired")
            return True
        return expires_at <= utcnow()
