"""Tests for the token value types."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from app.core.security import hash_token
from app.core.timeutils import utcnow
from app.schemas.tokens import (
    DeviceInfo,
    RefreshTokenRecord,
    RevocationEntry,
    RevocationReason,
    TokenClaims,
    TokenPair,
    TokenStatus,
    TokenType,
    validate_custom_claims,
)

CHROME_MAC_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)


def _record(device, **overrides):
    values = {
        "jti": "refresh-jti-0001",
        "user_id": 1,
        "token_hash": hash_token("raw-token"),
        "expires_at": utcnow() + timedelta(days=7),
        "device_info": device,
    }
    values.update(overrides)
    return RefreshTokenRecord(**values)


class TestDeviceInfo:
    def test_from_request_headers_parses_user_agent(self):
        info = DeviceInfo.from_request_headers(CHROME_MAC_UA, "203.0.113.10")

        assert info.platform == "macOS"
        assert info.browser == "Chrome"
        assert info.device_name == "Chrome on macOS"
        assert info.device_type == "desktop"
        assert len(info.device_id) == 32

    def test_derived_device_id_ignores_ip(self):
        """Moving between networks keeps the same derived device id."""
        home = DeviceInfo.from_request_headers(IPHONE_UA, "198.51.100.7")
        cafe = DeviceInfo.from_request_headers(IPHONE_UA, "192.0.2.44")

        assert home.device_id == cafe.device_id
        assert home.device_type == "mobile"
        assert home.platform == "iOS"
        assert home.browser == "Safari"

    def test_explicit_device_id_wins(self):
        info = DeviceInfo.from_request_headers(CHROME_MAC_UA, "203.0.113.10", device_id="my-laptop")

        assert info.device_id == "my-laptop"

    def test_unparseable_ip_falls_back(self):
        info = DeviceInfo.from_request_headers("curl/8.0", None)

        assert info.ip_address == "0.0.0.0"
        assert info.platform is None
        assert info.device_name == "Unknown Browser on Unknown Platform"

    def test_invalid_ip_rejected_on_direct_construction(self):
        with pytest.raises(ValidationError):
            DeviceInfo(device_id="d1", device_name="Laptop", ip_address="not-an-ip")

    def test_ipv6_accepted(self):
        info = DeviceInfo(device_id="d1", device_name="Laptop", ip_address="2001:db8::1")

        assert info.ip_address == "2001:db8::1"


class TestRefreshTokenRecord:
    def test_defaults(self, device):
        record = _record(device)

        assert record.status == TokenStatus.ACTIVE
        assert record.can_be_refreshed()
        assert record.belongs_to_user(1)
        assert record.belongs_to_device(device.device_id)
        assert not record.belongs_to_device("elsewhere")

    @pytest.mark.parametrize("jti", ["short", "has spaces in it", "x" * 256, "semi;colon-jti"])
    def test_invalid_jti(self, device, jti):
        with pytest.raises(ValidationError):
            _record(device, jti=jti)

    def test_invalid_user_id(self, device):
        with pytest.raises(ValidationError):
            _record(device, user_id=0)

    def test_invalid_token_hash(self, device):
        with pytest.raises(ValidationError):
            _record(device, token_hash="not-a-hash")

    def test_expiry_too_far_in_future(self, device):
        with pytest.raises(ValidationError):
            _record(device, expires_at=utcnow() + timedelta(days=3700))

    def test_revoked_status_requires_reason_and_time(self, device):
        with pytest.raises(ValidationError):
            _record(device, status=TokenStatus.REVOKED)

    def test_revoked_fields_require_revoked_status(self, device):
        with pytest.raises(ValidationError):
            _record(device, revoked_reason="user_logout", revoked_at=utcnow())

    def test_mark_used_returns_new_record(self, device):
        record = _record(device)

        used = record.mark_used()

        assert used.status == TokenStatus.USED
        assert used.last_used_at is not None
        assert record.status == TokenStatus.ACTIVE

    def test_mark_used_only_from_active(self, device):
        used = _record(device).mark_used()

        with pytest.raises(ValueError):
            used.mark_used()

    def test_mark_revoked(self, device):
        revoked = _record(device).mark_revoked(RevocationReason.USER_LOGOUT)

        assert revoked.status == TokenStatus.REVOKED
        assert revoked.revoked_reason == "user_logout"
        assert revoked.revoked_at is not None
        assert not revoked.can_be_refreshed()

    def test_mark_revoked_is_idempotent(self, device):
        revoked = _record(device).mark_revoked(RevocationReason.USER_LOGOUT)

        again = revoked.mark_revoked(RevocationReason.SECURITY_BREACH)

        assert again is revoked
        assert again.revoked_reason == "user_logout"

    def test_used_record_can_be_revoked(self, device):
        revoked = _record(device).mark_used().mark_revoked(RevocationReason.TOKEN_ROTATION_REUSE)

        assert revoked.status == TokenStatus.REVOKED

    def test_update_last_used(self, device):
        record = _record(device)
        at = utcnow() - timedelta(minutes=5)

        touched = record.update_last_used(at)

        assert touched.last_used_at == at
        assert touched.status == TokenStatus.ACTIVE

    def test_records_are_frozen(self, device):
        record = _record(device)

        with pytest.raises(ValidationError):
            record.status = TokenStatus.USED

    def test_expired_is_derived(self, device):
        record = _record(device, expires_at=utcnow() - timedelta(seconds=1))

        assert record.is_expired()
        assert record.effective_status() == TokenStatus.EXPIRED
        assert record.status == TokenStatus.ACTIVE
        assert not record.can_be_refreshed()
        assert record.remaining_seconds() == 0

    def test_near_expiry(self, device):
        record = _record(device, expires_at=utcnow() + timedelta(minutes=30))

        assert record.is_near_expiry(threshold_seconds=3600)
        assert not record.is_near_expiry(threshold_seconds=60)


class TestRevocationEntry:
    def test_for_user_logout(self):
        entry = RevocationEntry.for_user_logout(
            "access-jti-0001", TokenType.ACCESS, utcnow() + timedelta(minutes=15), user_id=3, device_id="d1"
        )

        assert entry.reason == RevocationReason.USER_LOGOUT
        assert entry.is_user_initiated
        assert not entry.is_security_related
        assert entry.reason_description == "User logged out"
        assert entry.priority() == 3

    def test_for_security_breach_coerces_reason(self):
        entry = RevocationEntry.for_security_breach(
            "access-jti-0002", TokenType.ACCESS, utcnow() + timedelta(minutes=15),
            reason=RevocationReason.USER_LOGOUT,
        )

        assert entry.reason == RevocationReason.SECURITY_BREACH
        assert entry.is_security_related
        assert entry.priority() == 4

    def test_priority_ordering(self):
        future = utcnow() + timedelta(hours=1)
        expired = RevocationEntry(
            jti="e1", token_type=TokenType.ACCESS, reason=RevocationReason.SECURITY_BREACH,
            expires_at=utcnow() - timedelta(seconds=1),
        )
        ordinary = RevocationEntry(
            jti="e2", token_type=TokenType.ACCESS, reason=RevocationReason.PASSWORD_CHANGED, expires_at=future
        )

        assert expired.can_be_cleaned_up()
        assert expired.priority() == 1
        assert ordinary.priority() == 2

    def test_blacklisted_at_bounds(self):
        with pytest.raises(ValidationError):
            RevocationEntry(
                jti="e3", token_type=TokenType.ACCESS, reason=RevocationReason.USER_LOGOUT,
                expires_at=utcnow(), blacklisted_at=utcnow() - timedelta(days=400),
            )

    def test_metadata_size_limit(self):
        with pytest.raises(ValidationError):
            RevocationEntry(
                jti="e4", token_type=TokenType.ACCESS, reason=RevocationReason.USER_LOGOUT,
                expires_at=utcnow(), metadata={"blob": "x" * 70000},
            )

    def test_unknown_reason_rejected(self):
        with pytest.raises(ValidationError):
            RevocationEntry(jti="e5", token_type=TokenType.ACCESS, reason="bored", expires_at=utcnow())


class TestTokenClaims:
    def test_payload_round_trip(self):
        payload = {
            "iss": "bulletin-api", "aud": "bulletin-clients", "iat": 1700000000, "exp": 1700000900,
            "jti": "abc12345", "type": "access", "sub": "12", "role": "admin",
        }

        claims = TokenClaims.from_payload(payload)

        assert claims.user_id == 12
        assert claims.extra == {"role": "admin"}
        assert claims.to_payload() == payload
        assert claims.expires_at - claims.issued_at == timedelta(seconds=900)

    def test_non_numeric_subject(self):
        claims = TokenClaims.from_payload({
            "iss": "i", "aud": "a", "iat": 1, "exp": 2, "jti": "abc12345", "type": "refresh", "sub": "svc-worker",
        })

        assert claims.user_id is None
        assert claims.custom_claims == {"sub": "svc-worker"}


class TestCustomClaims:
    def test_accepts_json_values(self):
        claims = validate_custom_claims({"sub": "1", "roles": ["a"], "n": 3, "flag": None})

        assert claims["roles"] == ["a"]

    def test_none_is_empty(self):
        assert validate_custom_claims(None) == {}

    @pytest.mark.parametrize("claims", [{"exp": 1}, {1: "x"}, {"sub": 5}, {"at": object()}])
    def test_rejects(self, claims):
        with pytest.raises(ValueError):
            validate_custom_claims(claims)


class TestTokenPair:
    def test_authorization_header(self):
        now = utcnow()
        pair = TokenPair(
            access_token="a.b.c",
            refresh_token="d.e.f",
            access_token_expires_at=now + timedelta(minutes=15),
            refresh_token_expires_at=now + timedelta(days=7),
        )

        assert pair.authorization_header() == "Bearer a.b.c"
        assert 0 < pair.access_expires_in(now) <= 900
