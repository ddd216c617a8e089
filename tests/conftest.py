"""Pytest configuration and fixtures."""

import os
import uuid
from datetime import timedelta

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa


def _generate_key_pair() -> tuple[str, str]:
    """Fresh RSA key pair as PEM strings."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


PRIVATE_KEY_PEM, PUBLIC_KEY_PEM = _generate_key_pair()

# Set test environment variables BEFORE importing app modules
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("ENABLE_SCHEDULER", "false")
os.environ["JWT_PRIVATE_KEY"] = PRIVATE_KEY_PEM
os.environ["JWT_PUBLIC_KEY"] = PUBLIC_KEY_PEM

# Disable rate limiting for tests by monkey-patching BEFORE imports
from slowapi import Limiter
from slowapi.util import get_remote_address

# Create disabled limiter
_disabled_limiter = Limiter(key_func=get_remote_address, enabled=False)

# Patch the rate_limit module before it's imported elsewhere
import app.core.rate_limit as rate_limit_module
rate_limit_module.limiter = _disabled_limiter

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.core.security import TokenCodec, hash_token
from app.core.timeutils import utcnow
from app.api.deps import get_db
from app.schemas.tokens import DeviceInfo, RefreshTokenRecord
from app.services.auth_service import AuthService
from app.services.refresh_token_store import RefreshTokenStore
from app.services.revocation_ledger import RevocationCache, RevocationLedger
from app.services.token_service import TokenLifecycleService
from main import app

# Create in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

ADMIN_PASSWORD = "AdminPass123"
USER_PASSWORD = "UserPass123"


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database session for each test."""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db_session):
    """Create a test client with database override."""
    app.dependency_overrides[get_db] = lambda: db_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture(scope="session")
def other_key_pair():
    """A second, unrelated RSA key pair."""
    return _generate_key_pair()


@pytest.fixture
def codec():
    return TokenCodec.from_settings()


@pytest.fixture
def store(db_session):
    return RefreshTokenStore(db_session)


@pytest.fixture
def ledger(db_session, codec):
    return RevocationLedger(db_session, cache=RevocationCache(), access_token_ttl=codec.access_token_ttl)


@pytest.fixture
def service(codec, store, ledger):
    return TokenLifecycleService(codec, store, ledger, max_tokens_per_user=10, device_binding=True)


@pytest.fixture
def device():
    return DeviceInfo(
        device_id="device-laptop-0001",
        device_name="Chrome on macOS",
        ip_address="203.0.113.10",
        user_agent="Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
                   "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        platform="macOS",
        browser="Chrome",
    )


@pytest.fixture
def phone():
    return DeviceInfo(
        device_id="device-phone-0002",
        device_name="Safari on iOS",
        ip_address="198.51.100.7",
        user_agent="Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
                   "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1",
        platform="iOS",
        browser="Safari",
    )


@pytest.fixture
def admin_user(db_session):
    return AuthService.create_user(db_session, "admin@test.com", ADMIN_PASSWORD, "Test Admin", is_admin=True)


@pytest.fixture
def regular_user(db_session):
    return AuthService.create_user(db_session, "user@test.com", USER_PASSWORD, "Test User")


@pytest.fixture
def make_record(store, regular_user, device):
    """Persist a refresh token record directly, bypassing the codec."""

    def _make(
        user_id=None,
        jti=None,
        device_info=None,
        parent_token_jti=None,
        expires_in=timedelta(days=7),
        access_token_jti=None,
    ):
        jti = jti or f"jti-{uuid.uuid4().hex}"
        return store.create(RefreshTokenRecord(
            jti=jti,
            user_id=user_id or regular_user.id,
            token_hash=hash_token(f"raw-{jti}"),
            expires_at=utcnow() + expires_in,
            device_info=device_info or device,
            parent_token_jti=parent_token_jti,
            access_token_jti=access_token_jti,
        ))

    return _make


@pytest.fixture
def login(client):
    """Log in through the API and return the response body."""

    def _login(email, password, headers=None):
        response = client.post(
            "/api/auth/login",
            json={"email": email, "password": password},
            headers=headers or {},
        )
        assert response.status_code == 200, response.text
        return response.json()

    return _login


@pytest.fixture
def user_tokens(login, regular_user):
    return login(regular_user.email, USER_PASSWORD)


@pytest.fixture
def admin_tokens(login, admin_user):
    return login(admin_user.email, ADMIN_PASSWORD)