"""Tests for role and tenant enforcement in the authorization guard."""

import pytest

from clinicgate.service.errors import CredentialExpired, InvalidCredential, RoleDenied
from clinicgate.storage.models import AuditAction, Principal, Role, Severity

STAFF = Principal(id="staff-1", role=Role.STAFF, tenant_id="clinic-a")
DOCTOR = Principal(id="doc-1", role=Role.DOCTOR, tenant_id="clinic-a")
ADMIN = Principal(id="admin-1", role=Role.ADMIN, tenant_id="clinic-a")


def _entries(store, action: AuditAction):
    return [e for e in store.audit_entries if e.action == action]


class TestRoleChecks:
    async def test_matching_role_is_admitted(self, issuer, guard):
        pair = await issuer.issue(ADMIN)
        principal = await guard.check(
            f"Bearer {pair.access_token}", (Role.ADMIN,), resource="/v1/admin/audit"
        )
        assert principal == ADMIN

    async def test_no_required_roles_admits_any_principal(self, issuer, guard):
        pair = await issuer.issue(STAFF)
        assert await guard.check(f"Bearer {pair.access_token}", resource="/v1/me") == STAFF

    async def test_staff_denied_admin_resource(self, issuer, guard, store):
        pair = await issuer.issue(STAFF)

        with pytest.raises(RoleDenied) as exc_info:
            await guard.check(
                f"Bearer {pair.access_token}",
                (Role.ADMIN,),
                resource="/v1/admin/audit",
                request_meta={"ip_address": "10.0.0.5"},
            )

        assert exc_info.value.status_code == 403
        denied = _entries(store, AuditAction.ACCESS_DENIED)
        assert len(denied) == 1
        assert denied[0].actor_id == STAFF.id
        assert denied[0].resource == "/v1/admin/audit"
        assert denied[0].status == "failure"
        assert denied[0].severity == Severity.MEDIUM
        assert denied[0].metadata["required_roles"] == ["admin"]
        assert denied[0].metadata["ip_address"] == "10.0.0.5"

    async def test_legacy_role_alias_is_accepted(self, issuer, guard):
        pair = await issuer.issue(DOCTOR)
        principal = await guard.check(
            f"Bearer {pair.access_token}", ("dentist",), resource="/v1/charts"
        )
        assert principal.role == Role.DOCTOR


class TestTenantScope:
    async def test_foreign_tenant_hint_is_denied(self, issuer, guard, store):
        pair = await issuer.issue(ADMIN)

        with pytest.raises(RoleDenied):
            await guard.check(
                f"Bearer {pair.access_token}",
                (Role.ADMIN,),
                resource="/v1/admin/audit",
                tenant_hint="clinic-b",
            )

        denied = _entries(store, AuditAction.TENANT_ACCESS_DENIED)
        assert len(denied) == 1
        assert denied[0].severity == Severity.HIGH
        assert denied[0].tenant_id == "clinic-a"
        assert denied[0].metadata["requested_tenant"] == "clinic-b"

    async def test_own_tenant_hint_is_admitted(self, issuer, guard):
        pair = await issuer.issue(DOCTOR)
        principal = await guard.check(
            f"Bearer {pair.access_token}", resource="/v1/me", tenant_hint="clinic-a"
        )
        assert principal == DOCTOR


class TestCredentialFailures:
    async def test_missing_header(self, guard, store):
        with pytest.raises(InvalidCredential):
            await guard.check(None, resource="/v1/me")
        assert store.audit_entries == []

    async def test_non_bearer_scheme(self, issuer, guard):
        pair = await issuer.issue(DOCTOR)
        with pytest.raises(InvalidCredential):
            await guard.check(f"Basic {pair.access_token}", resource="/v1/me")

    async def test_expired_credential_propagates(self, issuer, guard, settings, clock, store):
        pair = await issuer.issue(DOCTOR)
        clock.advance(settings.access_token_ttl_minutes * 60)

        with pytest.raises(CredentialExpired) as exc_info:
            await guard.check(f"Bearer {pair.access_token}", (Role.ADMIN,), resource="/x")

        assert exc_info.value.error_code == "token_expired"
        # Expiry is not a denial; nothing beyond the login is audited
        assert _entries(store, AuditAction.ACCESS_DENIED) == []
