"""Integration tests for the HTTP credential lifecycle.

Covers login, refresh rotation with reuse detection, logout, role and tenant
enforcement, and the admin audit views, all through the FastAPI app.
"""

import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from clinicgate import app as app_module
from clinicgate.service.runtime import get_runtime

PASSWORD = "Clinic-Password-1"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def create_account(email: str, role: str, tenant_id: str = "clinic-a"):
    return asyncio.run(
        get_runtime().accounts.create_account(email, PASSWORD, role=role, tenant_id=tenant_id)
    )


def login(client, email: str, password: str = PASSWORD) -> dict:
    response = client.post("/v1/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["data"]


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class TestLogin:
    """Tests for password login."""

    def test_login_returns_credential_pair(self, client):
        account = create_account("doc@clinic.example", "doctor")

        data = login(client, "doc@clinic.example")

        assert data["token_type"] == "bearer"
        assert data["principal"] == {"id": account.id, "role": "doctor", "tenant_id": "clinic-a"}
        me = client.get("/v1/me", headers=bearer(data["access_token"]))
        assert me.status_code == 200
        assert me.json()["data"]["id"] == account.id

    def test_login_rejects_wrong_password(self, client):
        create_account("doc@clinic.example", "doctor")

        response = client.post(
            "/v1/auth/login", json={"email": "doc@clinic.example", "password": "nope-nope"}
        )

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"

    def test_lockout_answers_account_locked(self, client):
        create_account("doc@clinic.example", "doctor")
        for _ in range(5):
            client.post(
                "/v1/auth/login", json={"email": "doc@clinic.example", "password": "wrong-pass"}
            )

        response = client.post(
            "/v1/auth/login", json={"email": "doc@clinic.example", "password": PASSWORD}
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "account_locked"

    def test_login_is_rate_limited_per_email(self, client):
        limit = get_runtime().settings.login_rate_limit_per_minute
        payload = {"email": "ghost@clinic.example", "password": "whatever-pass"}
        for _ in range(limit):
            assert client.post("/v1/auth/login", json=payload).status_code == 401

        response = client.post("/v1/auth/login", json=payload)

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"

    def test_invalid_email_is_validation_error(self, client):
        response = client.post("/v1/auth/login", json={"email": "not-an-email", "password": "x"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestRefresh:
    """Tests for refresh rotation and reuse detection."""

    def test_refresh_rotates_pair(self, client):
        create_account("doc@clinic.example", "doctor")
        first = login(client, "doc@clinic.example")

        response = client.post("/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})

        assert response.status_code == 200
        second = response.json()["data"]
        assert second["refresh_token"] != first["refresh_token"]
        assert second["session_id"] == first["session_id"]

    def test_reused_refresh_revokes_session(self, client):
        create_account("doc@clinic.example", "doctor")
        first = login(client, "doc@clinic.example")
        second = client.post(
            "/v1/auth/refresh", json={"refresh_token": first["refresh_token"]}
        ).json()["data"]

        reused = client.post("/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert reused.status_code == 401
        assert reused.json()["error"]["code"] == "credential_reused"

        cut_off = client.post("/v1/auth/refresh", json={"refresh_token": second["refresh_token"]})
        assert cut_off.status_code == 401
        assert cut_off.json()["error"]["code"] == "invalid_credential"

    def test_garbage_refresh_token(self, client):
        response = client.post("/v1/auth/refresh", json={"refresh_token": "garbage"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credential"


class TestLogout:
    def test_logout_revokes_session(self, client):
        create_account("doc@clinic.example", "doctor")
        data = login(client, "doc@clinic.example")

        response = client.post("/v1/auth/logout", headers=bearer(data["access_token"]))
        assert response.status_code == 200
        assert response.json()["data"] == {"revoked": True}

        refresh = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert refresh.status_code == 401
        assert refresh.json()["error"]["code"] == "invalid_credential"


class TestAuthorization:
    """Tests for role and tenant enforcement on protected routes."""

    def test_missing_credential(self, client):
        response = client.get("/v1/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credential"

    def test_expired_access_credential(self, client):
        create_account("doc@clinic.example", "doctor")
        data = login(client, "doc@clinic.example")
        get_runtime().issuer._clock = lambda: time.time() + 3600

        response = client.get("/v1/me", headers=bearer(data["access_token"]))

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_expired"

    def test_staff_denied_admin_route_and_denial_is_audited(self, client):
        create_account("admin@clinic.example", "admin")
        create_account("front@clinic.example", "receptionist")
        admin = login(client, "admin@clinic.example")
        staff = login(client, "front@clinic.example")

        denied = client.get("/v1/admin/audit", headers=bearer(staff["access_token"]))
        assert denied.status_code == 403
        assert denied.json()["error"]["code"] == "forbidden"

        security = client.get(
            "/v1/admin/audit/security",
            params={"limit": 50},
            headers=bearer(admin["access_token"]),
        )
        assert security.status_code == 200
        denials = [
            item for item in security.json()["data"]["items"] if item["action"] == "access_denied"
        ]
        assert len(denials) == 1
        assert denials[0]["actor_id"] == staff["principal"]["id"]
        assert denials[0]["resource"] == "/v1/admin/audit"

    def test_foreign_tenant_header_is_denied(self, client):
        create_account("admin@clinic.example", "admin")
        admin = login(client, "admin@clinic.example")

        response = client.get(
            "/v1/admin/audit",
            headers={**bearer(admin["access_token"]), "X-Tenant-ID": "clinic-b"},
        )

        assert response.status_code == 403


class TestAdmin:
    """Tests for admin account management and audit views."""

    def test_create_account_in_own_tenant(self, client):
        create_account("admin@clinic.example", "admin")
        admin = login(client, "admin@clinic.example")

        response = client.post(
            "/v1/admin/accounts",
            json={"email": "new@clinic.example", "password": PASSWORD, "role": "dentist"},
            headers=bearer(admin["access_token"]),
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["role"] == "doctor"
        assert data["tenant_id"] == "clinic-a"

        duplicate = client.post(
            "/v1/admin/accounts",
            json={"email": "new@clinic.example", "password": PASSWORD, "role": "doctor"},
            headers=bearer(admin["access_token"]),
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["error"]["code"] == "conflict"

    def test_revoke_sessions_of_account(self, client):
        create_account("admin@clinic.example", "admin")
        doctor_account = create_account("doc@clinic.example", "doctor")
        admin = login(client, "admin@clinic.example")
        doctor = login(client, "doc@clinic.example")

        response = client.post(
            f"/v1/admin/accounts/{doctor_account.id}/revoke-sessions",
            headers=bearer(admin["access_token"]),
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"account_id": doctor_account.id, "revoked": 1}

        refresh = client.post("/v1/auth/refresh", json={"refresh_token": doctor["refresh_token"]})
        assert refresh.status_code == 401

    def test_revoke_sessions_other_tenant_is_not_found(self, client):
        create_account("admin@clinic.example", "admin")
        foreign = create_account("doc@other.example", "doctor", tenant_id="clinic-b")
        admin = login(client, "admin@clinic.example")

        response = client.post(
            f"/v1/admin/accounts/{foreign.id}/revoke-sessions",
            headers=bearer(admin["access_token"]),
        )
        assert response.status_code == 404

    def test_stats_and_summary(self, client):
        create_account("admin@clinic.example", "admin")
        admin = login(client, "admin@clinic.example")
        client.post(
            "/v1/auth/login", json={"email": "admin@clinic.example", "password": "bad-password"}
        )

        stats = client.get("/v1/admin/audit/stats", headers=bearer(admin["access_token"]))
        assert stats.status_code == 200
        body = stats.json()["data"]
        assert body["total"] == 2
        assert body["by_severity"]["info"] == 1
        assert body["by_severity"]["low"] == 1

        summary = client.get("/v1/admin/audit/summary", headers=bearer(admin["access_token"]))
        actions = {item["action"]: item for item in summary.json()["data"]["items"]}
        assert actions["login_failed"]["failure_count"] == 1
        assert actions["login_success"]["success_count"] == 1

    def test_audit_filter_validation(self, client):
        create_account("admin@clinic.example", "admin")
        admin = login(client, "admin@clinic.example")

        response = client.get(
            "/v1/admin/audit",
            params={"severity": "apocalyptic"},
            headers=bearer(admin["access_token"]),
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_resource_history(self, client):
        create_account("admin@clinic.example", "admin")
        admin = login(client, "admin@clinic.example")

        response = client.get(
            f"/v1/admin/audit/resources/{admin['session_id']}",
            headers=bearer(admin["access_token"]),
        )
        assert response.status_code == 200
        items = response.json()["data"]["items"]
        assert [item["action"] for item in items] == ["login_success"]


def test_request_id_is_echoed(client):
    response = client.get("/v1/me", headers={"X-Request-ID": "req-12345"})

    assert response.headers["X-Request-ID"] == "req-12345"
    assert response.json()["request_id"] == "req-12345"
    assert response.headers["Cache-Control"].startswith("no-store")


def test_healthz_reports_memory_store(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "memory"
    assert body["checks"]["redis"]["status"] == "not_configured"
