"""Tests for the admin revocation endpoints."""

from fastapi import status

USER_PASSWORD = "UserPass123"


def auth_header(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def csrf_headers(client, token: str) -> dict:
    """Auth header plus a freshly issued CSRF token."""
    headers = auth_header(token)
    response = client.get("/api/auth/csrf-token", headers=headers)
    assert response.status_code == status.HTTP_200_OK
    headers["X-CSRF-Token"] = response.json()["csrf_token"]
    return headers


class TestAdminAccess:
    def test_non_admin_is_forbidden(self, client, user_tokens):
        response = client.get("/api/admin/revocations/stats", headers=auth_header(user_tokens["access_token"]))

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.json()["detail"] == "Admin access required"

    def test_anonymous_is_unauthorized(self, client):
        response = client.get("/api/admin/revocations/stats")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED


class TestRevocationReports:
    def test_stats(self, client, admin_tokens, user_tokens):
        client.post("/api/auth/logout", json={}, headers=auth_header(user_tokens["access_token"]))

        response = client.get("/api/admin/revocations/stats", headers=auth_header(admin_tokens["access_token"]))

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["ledger"]["total"] == 1
        assert data["ledger"]["by_reason"] == {"user_logout": 1}
        assert data["refresh_tokens"]["unique_users"] == 2

    def test_search(self, client, admin_tokens, user_tokens, regular_user):
        client.post(
            "/api/auth/logout",
            json={"refresh_token": user_tokens["refresh_token"]},
            headers=auth_header(user_tokens["access_token"]),
        )

        response = client.get(
            "/api/admin/revocations/search",
            params={"user_id": regular_user.id, "token_type": "refresh"},
            headers=auth_header(admin_tokens["access_token"]),
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["total"] == 1
        assert data["entries"][0]["reason"] == "user_logout"
        assert data["has_more"] is False

    def test_logout_is_searchable_by_user(self, client, admin_tokens, user_tokens, regular_user):
        client.post("/api/auth/logout", json={}, headers=auth_header(user_tokens["access_token"]))

        response = client.get(
            "/api/admin/revocations/search",
            params={"user_id": regular_user.id, "token_type": "access"},
            headers=auth_header(admin_tokens["access_token"]),
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["total"] == 1
        assert data["entries"][0]["reason"] == "user_logout"
        assert data["entries"][0]["device_id"]

    def test_search_rejects_unknown_reason(self, client, admin_tokens):
        response = client.get(
            "/api/admin/revocations/search",
            params={"reason": "bored"},
            headers=auth_header(admin_tokens["access_token"]),
        )

        assert response.status_code == 422

    def test_health(self, client, admin_tokens):
        response = client.get("/api/admin/revocations/health", headers=auth_header(admin_tokens["access_token"]))

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "healthy"

    def test_high_priority_after_replay(self, client, admin_tokens, user_tokens):
        client.post("/api/auth/refresh", json={"refresh_token": user_tokens["refresh_token"]})
        client.post("/api/auth/refresh", json={"refresh_token": user_tokens["refresh_token"]})

        response = client.get(
            "/api/admin/revocations/high-priority", headers=auth_header(admin_tokens["access_token"])
        )

        assert response.status_code == status.HTTP_200_OK
        entries = response.json()
        assert entries
        assert {e["reason"] for e in entries} == {"token_rotation_reuse"}

    def test_user_tokens(self, client, admin_tokens, user_tokens, regular_user):
        client.post("/api/auth/refresh", json={"refresh_token": user_tokens["refresh_token"]})

        response = client.get(
            f"/api/admin/users/{regular_user.id}/tokens", headers=auth_header(admin_tokens["access_token"])
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["stats"]["total"] == 2
        assert [t["status"] for t in data["tokens"]] == ["active", "used"]
        assert data["tokens"][0]["parent_token_jti"] == data["tokens"][1]["jti"]

    def test_user_tokens_unknown_user(self, client, admin_tokens):
        response = client.get("/api/admin/users/9999/tokens", headers=auth_header(admin_tokens["access_token"]))

        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestAdminRevocation:
    def test_revoke_user_requires_csrf(self, client, admin_tokens, regular_user):
        response = client.post(
            f"/api/admin/users/{regular_user.id}/revoke",
            json={},
            headers=auth_header(admin_tokens["access_token"]),
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.json()["detail"] == "Invalid or missing CSRF token"

    def test_revoke_user(self, client, admin_tokens, user_tokens, regular_user):
        response = client.post(
            f"/api/admin/users/{regular_user.id}/revoke",
            json={"reason": "security_breach"},
            headers=csrf_headers(client, admin_tokens["access_token"]),
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"revoked": 1, "reason": "security_breach"}
        assert client.get("/api/auth/me", headers=auth_header(user_tokens["access_token"])).status_code == 401
        refresh = client.post("/api/auth/refresh", json={"refresh_token": user_tokens["refresh_token"]})
        assert refresh.status_code == status.HTTP_401_UNAUTHORIZED

    def test_csrf_token_is_single_use(self, client, admin_tokens, regular_user):
        headers = csrf_headers(client, admin_tokens["access_token"])

        first = client.post(f"/api/admin/users/{regular_user.id}/revoke", json={}, headers=headers)
        second = client.post(f"/api/admin/users/{regular_user.id}/revoke", json={}, headers=headers)

        assert first.status_code == status.HTTP_200_OK
        assert first.json()["reason"] == "manual_revocation"
        assert second.status_code == status.HTTP_403_FORBIDDEN

    def test_csrf_token_bound_to_user(self, client, admin_tokens, user_tokens, regular_user):
        user_headers = csrf_headers(client, user_tokens["access_token"])
        headers = auth_header(admin_tokens["access_token"])
        headers["X-CSRF-Token"] = user_headers["X-CSRF-Token"]

        response = client.post(f"/api/admin/users/{regular_user.id}/revoke", json={}, headers=headers)

        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_revoke_unknown_user(self, client, admin_tokens):
        response = client.post(
            "/api/admin/users/9999/revoke",
            json={},
            headers=csrf_headers(client, admin_tokens["access_token"]),
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_revoke_device(self, client, login, admin_tokens, regular_user):
        lost = login(regular_user.email, USER_PASSWORD, headers={"X-Device-Id": "lost-phone"})
        kept = login(regular_user.email, USER_PASSWORD, headers={"X-Device-Id": "desk-pc"})

        response = client.post(
            "/api/admin/devices/lost-phone/revoke",
            json={"reason": "device_lost"},
            headers=csrf_headers(client, admin_tokens["access_token"]),
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["revoked"] == 1
        assert client.get("/api/auth/me", headers=auth_header(lost["access_token"])).status_code == 401
        assert client.get("/api/auth/me", headers=auth_header(kept["access_token"])).status_code == 200

    def test_cleanup(self, client, admin_tokens):
        response = client.post(
            "/api/admin/revocations/cleanup",
            headers=csrf_headers(client, admin_tokens["access_token"]),
        )

        assert response.status_code == status.HTTP_200_OK
        assert set(response.json()) == {
            "refresh_tokens_expired",
            "refresh_tokens_deleted",
            "revoked_tokens_deleted",
            "ledger_expired_deleted",
            "ledger_old_deleted",
            "ledger_evicted",
        }
