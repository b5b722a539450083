"""End-to-end HTTP tests for the auth, role and user endpoints."""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from taskdeck import app as app_module

PASSWORD = "CorrectHorse42"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _login(client, email, password=PASSWORD):
    return client.post("/api/auth/login", json={"email": email, "password": password})


def _auth_header(client, email, password=PASSWORD):
    response = _login(client, email, password)
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['data']['access_token']}"}


class TestRegistration:
    def test_register_creates_user_with_default_role(self, client):
        response = client.post(
            "/api/auth/register",
            json={
                "email": "A@X.com",
                "password": "Abc12345!",
                "first_name": "Ada",
                "last_name": "Lovelace",
            },
        )

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        user = body["data"]["user"]
        assert user["email"] == "a@x.com"
        assert user["role"]["name"] == "user"
        assert "password_hash" not in user

    def test_register_validation_errors_use_envelope(self, client):
        response = client.post(
            "/api/auth/register",
            json={"email": "not-an-email", "password": "short", "first_name": "A", "last_name": "Lovelace"},
        )

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["code"] == "VALIDATION_ERROR"
        fields = {message.split(":")[0] for message in body["errors"]}
        assert {"email", "password", "first_name"} <= fields

    def test_register_duplicate_email(self, client, make_user):
        make_user(email="taken@example.com")

        response = client.post(
            "/api/auth/register",
            json={
                "email": "taken@example.com",
                "password": "Abc12345!",
                "first_name": "Ada",
                "last_name": "Lovelace",
            },
        )

        assert response.status_code == 409
        assert response.json()["code"] == "DUPLICATE_ENTRY"


class TestLoginFlow:
    def test_login_me_refresh_logout(self, client, make_user):
        make_user(email="member@example.com")

        login = _login(client, "member@example.com")
        assert login.status_code == 200
        data = login.json()["data"]
        assert data["expires_in"] == 900
        assert data["token_type"] == "Bearer"
        assert data["user"]["email"] == "member@example.com"
        headers = {"Authorization": f"Bearer {data['access_token']}"}

        me = client.get("/api/auth/me", headers=headers)
        assert me.status_code == 200
        assert me.json()["data"]["user"]["email"] == "member@example.com"
        assert me.headers["X-RateLimit-Limit"] == "100"
        assert me.headers["X-RateLimit-Remaining"] == "99"

        refreshed = client.post(
            "/api/auth/refresh", json={"refresh_token": data["refresh_token"]}
        )
        assert refreshed.status_code == 200
        assert refreshed.json()["data"]["refresh_token"] == data["refresh_token"]

        assert client.post("/api/auth/logout", headers=headers).status_code == 200
        after = client.get("/api/auth/me", headers=headers)
        assert after.status_code == 401
        assert after.json()["code"] == "TOKEN_INVALID"
        expired_refresh = client.post(
            "/api/auth/refresh", json={"refresh_token": data["refresh_token"]}
        )
        assert expired_refresh.status_code == 401
        assert expired_refresh.json()["code"] == "REFRESH_TOKEN_INVALID"

    def test_wrong_password_then_lockout(self, client, make_user):
        make_user(email="member@example.com")

        for _ in range(4):
            response = _login(client, "member@example.com", "wrong-password")
            assert response.status_code == 401
            assert response.json()["code"] == "INVALID_CREDENTIALS"

        fifth = _login(client, "member@example.com", "wrong-password")
        assert fifth.status_code == 423
        assert fifth.json()["code"] == "ACCOUNT_LOCKED"

        correct = _login(client, "member@example.com")
        assert correct.status_code == 423

    def test_missing_token(self, client):
        response = client.get("/api/auth/me")

        assert response.status_code == 401
        assert response.json() == {
            "success": False,
            "message": "access token required",
            "errors": [],
            "code": "TOKEN_INVALID",
        }

    def test_verify_token_and_logout_all(self, client, make_user):
        make_user(email="member@example.com")
        first = _auth_header(client, "member@example.com")
        second = _auth_header(client, "member@example.com")

        verified = client.post("/api/auth/verify-token", headers=first)
        assert verified.status_code == 200
        assert verified.json()["data"]["valid"] is True

        revoked = client.post("/api/auth/logout-all", headers=first)
        assert revoked.json()["data"]["revoked_sessions"] == 2
        assert client.get("/api/auth/me", headers=second).status_code == 401

    def test_change_password_revokes_other_sessions(self, client, make_user):
        make_user(email="member@example.com")
        current = _auth_header(client, "member@example.com")
        other = _auth_header(client, "member@example.com")

        response = client.post(
            "/api/auth/password/change",
            json={"current_password": PASSWORD, "new_password": "EvenBetter99"},
            headers=current,
        )

        assert response.status_code == 200
        assert response.json()["data"]["revoked_sessions"] == 1
        assert client.get("/api/auth/me", headers=current).status_code == 200
        assert client.get("/api/auth/me", headers=other).status_code == 401
        assert _login(client, "member@example.com", "EvenBetter99").status_code == 200

    def test_login_rate_limit(self, client):
        for _ in range(10):
            assert _login(client, "nobody@example.com").status_code == 401

        limited = _login(client, "nobody@example.com")

        assert limited.status_code == 429
        assert limited.json()["code"] == "RATE_LIMIT_EXCEEDED"
        assert int(limited.headers["Retry-After"]) > 0


class TestRoleEndpoints:
    def test_role_management_requires_permissions(self, client, make_user):
        make_user(email="member@example.com")
        headers = _auth_header(client, "member@example.com")

        response = client.get("/api/roles", headers=headers)

        assert response.status_code == 403
        assert response.json()["code"] == "PERMISSION_DENIED"

    def test_super_admin_manages_custom_roles(self, client, make_user):
        make_user(email="root@example.com", role="super_admin")
        headers = _auth_header(client, "root@example.com")

        listed = client.get("/api/roles", headers=headers)
        assert [r["name"] for r in listed.json()["data"]["roles"]] == [
            "super_admin",
            "admin",
            "manager",
            "user",
        ]

        created = client.post(
            "/api/roles",
            json={
                "name": "support",
                "display_name": "Support",
                "permissions": ["tasks.view", "comments.create"],
            },
            headers=headers,
        )
        assert created.status_code == 201
        role_id = created.json()["data"]["role"]["id"]

        updated = client.put(
            f"/api/roles/{role_id}", json={"description": "Front line"}, headers=headers
        )
        assert updated.json()["data"]["role"]["description"] == "Front line"

        toggled = client.patch(f"/api/roles/{role_id}/toggle-status", headers=headers)
        assert toggled.json()["data"]["role"]["is_active"] is False

        assert client.delete(f"/api/roles/{role_id}", headers=headers).status_code == 200
        missing = client.get(f"/api/roles/{role_id}", headers=headers)
        assert missing.status_code == 404

    def test_system_roles_cannot_be_deleted(self, client, make_user):
        make_user(email="root@example.com", role="super_admin")
        headers = _auth_header(client, "root@example.com")

        response = client.delete("/api/roles/4", headers=headers)

        assert response.status_code == 403

    def test_unknown_permissions_are_rejected(self, client, make_user):
        make_user(email="root@example.com", role="super_admin")
        headers = _auth_header(client, "root@example.com")

        response = client.post(
            "/api/roles",
            json={"name": "odd_role", "display_name": "Odd", "permissions": ["tasks.fly"]},
            headers=headers,
        )

        assert response.status_code == 400
        assert response.json()["errors"] == ["permissions: unknown permission tasks.fly"]

    def test_permission_catalogue(self, client, make_user):
        make_user(email="root@example.com", role="super_admin")
        headers = _auth_header(client, "root@example.com")

        response = client.get("/api/roles/permissions", headers=headers)

        assert "tasks" in response.json()["data"]["permissions"]


class TestUserEndpoints:
    def test_owner_can_view_self_but_not_others(self, client, make_user):
        me = make_user(email="member@example.com")
        other = make_user(email="other@example.com")
        headers = _auth_header(client, "member@example.com")

        assert client.get(f"/api/users/{me.id}", headers=headers).status_code == 200
        assert client.get(f"/api/users/{other.id}", headers=headers).status_code == 403

    def test_unprivileged_caller_cannot_tell_missing_ids_from_existing(self, client, make_user):
        make_user(email="member@example.com")
        other = make_user(email="other@example.com")
        headers = _auth_header(client, "member@example.com")

        existing = client.get(f"/api/users/{other.id}", headers=headers)
        missing = client.get("/api/users/999", headers=headers)

        assert existing.status_code == missing.status_code == 403
        assert existing.json()["code"] == missing.json()["code"]

    def test_manager_can_view_others(self, client, make_user):
        make_user(email="manager@example.com", role="manager")
        other = make_user(email="other@example.com")
        headers = _auth_header(client, "manager@example.com")

        response = client.get(f"/api/users/{other.id}", headers=headers)

        assert response.status_code == 200
        assert response.json()["data"]["user"]["email"] == "other@example.com"
        assert client.get("/api/users/999", headers=headers).status_code == 404

    def test_deactivating_a_user_revokes_access(self, client, make_user):
        make_user(email="root@example.com", role="super_admin")
        target = make_user(email="member@example.com")
        admin_headers = _auth_header(client, "root@example.com")
        member_headers = _auth_header(client, "member@example.com")

        response = client.patch(
            f"/api/users/{target.id}/status",
            json={"is_active": False},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["data"]["user"]["is_active"] is False
        assert client.get("/api/auth/me", headers=member_headers).status_code == 401
        disabled = _login(client, "member@example.com")
        assert disabled.status_code == 401
        assert disabled.json()["code"] == "ACCOUNT_LOCKED"

    def test_status_toggle_without_body_and_self_guard(self, client, make_user):
        root = make_user(email="root@example.com", role="super_admin")
        target = make_user(email="member@example.com", is_active=False)
        headers = _auth_header(client, "root@example.com")

        toggled = client.patch(f"/api/users/{target.id}/status", headers=headers)
        assert toggled.json()["data"]["user"]["is_active"] is True

        own = client.patch(f"/api/users/{root.id}/status", headers=headers)
        assert own.status_code == 400


class TestAppPlumbing:
    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["redis"]["status"] == "not_configured"

    def test_healthz_reports_store_failure(self, client, runtime):
        with patch.object(
            runtime.store, "verify_connection", side_effect=RuntimeError("db down")
        ):
            response = client.get("/healthz")

        assert response.status_code == 503
        assert response.json()["checks"]["database"]["status"] == "unhealthy"

    def test_request_id_and_security_headers(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/api/nope")

        assert response.status_code == 404
        body = response.json()
        assert body["success"] is False
        assert body["code"] == "RESOURCE_NOT_FOUND"
