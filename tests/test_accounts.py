"""Tests for password login and failed-attempt lockout."""

from datetime import datetime, timedelta

import pytest

from clinicgate.service.accounts import AccountService
from clinicgate.service.errors import AccountLockedError, AuthenticationError, ValidationError
from clinicgate.storage.errors import ConstraintViolation
from clinicgate.storage.models import AuditAction, Role, Severity
from clinicgate.storage.redis_cache import _failure_result

PASSWORD = "correct-horse-battery"


class MutableClock:
    def __init__(self):
        self.now = datetime(2024, 3, 1, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def login_clock():
    return MutableClock()


@pytest.fixture
def accounts(store, audit, settings, login_clock):
    return AccountService(store, audit, None, settings, clock=login_clock)


def _entries(store, action: AuditAction):
    return [e for e in store.audit_entries if e.action == action]


class TestCreateAccount:
    async def test_create_hashes_password(self, accounts, store):
        account = await accounts.create_account(
            "Nurse@Clinic.Example", PASSWORD, role="receptionist", tenant_id="clinic-a"
        )

        assert account.email == "nurse@clinic.example"
        assert account.role == Role.STAFF
        assert account.password_algo == "argon2id"
        assert PASSWORD not in account.password_hash
        assert store.get_account(account.id) is account

    async def test_duplicate_email_in_tenant(self, accounts):
        await accounts.create_account("a@clinic.example", PASSWORD, role="doctor", tenant_id="t1")
        with pytest.raises(ConstraintViolation):
            await accounts.create_account(
                "A@clinic.example", PASSWORD, role="doctor", tenant_id="t1"
            )

    async def test_same_email_other_tenant(self, accounts):
        await accounts.create_account("a@clinic.example", PASSWORD, role="doctor", tenant_id="t1")
        other = await accounts.create_account(
            "a@clinic.example", PASSWORD, role="doctor", tenant_id="t2"
        )
        assert other.tenant_id == "t2"

    async def test_rejects_short_password_and_unknown_role(self, accounts):
        with pytest.raises(ValidationError):
            await accounts.create_account("a@clinic.example", "short", role="doctor", tenant_id="t1")
        with pytest.raises(ValidationError) as exc_info:
            await accounts.create_account(
                "a@clinic.example", PASSWORD, role="janitor", tenant_id="t1"
            )
        assert exc_info.value.detail == {"field": "role"}


class TestAuthenticate:
    async def test_valid_login_returns_principal(self, accounts):
        account = await accounts.create_account(
            "doc@clinic.example", PASSWORD, role=Role.DOCTOR, tenant_id="clinic-a"
        )

        principal = await accounts.authenticate("doc@clinic.example", PASSWORD)

        assert principal.id == account.id
        assert principal.role == Role.DOCTOR
        assert principal.tenant_id == "clinic-a"

    async def test_wrong_password_is_audited(self, accounts, store):
        account = await accounts.create_account(
            "doc@clinic.example", PASSWORD, role=Role.DOCTOR, tenant_id="clinic-a"
        )

        with pytest.raises(AuthenticationError) as exc_info:
            await accounts.authenticate("doc@clinic.example", "wrong-password", meta={"device": "web"})

        assert exc_info.value.status_code == 401
        failed = _entries(store, AuditAction.LOGIN_FAILED)
        assert len(failed) == 1
        assert failed[0].actor_id == account.id
        assert failed[0].status == "failure"
        assert failed[0].metadata == {"device": "web"}

    async def test_unknown_email_is_anonymous_failure(self, accounts, store, settings):
        with pytest.raises(AuthenticationError):
            await accounts.authenticate("ghost@clinic.example", PASSWORD)

        failed = _entries(store, AuditAction.LOGIN_FAILED)
        assert len(failed) == 1
        assert failed[0].actor_id is None
        assert failed[0].tenant_id == settings.default_tenant_id

    async def test_tenant_scoped_lookup(self, accounts):
        await accounts.create_account(
            "doc@clinic.example", PASSWORD, role=Role.DOCTOR, tenant_id="clinic-a"
        )
        with pytest.raises(AuthenticationError):
            await accounts.authenticate("doc@clinic.example", PASSWORD, tenant_id="clinic-b")


class TestLockout:
    async def test_lockout_after_max_attempts(self, accounts, store, settings, login_clock):
        await accounts.create_account(
            "doc@clinic.example", PASSWORD, role=Role.DOCTOR, tenant_id="clinic-a"
        )

        for _ in range(settings.login_max_attempts):
            with pytest.raises(AuthenticationError):
                await accounts.authenticate("doc@clinic.example", "wrong-password")

        locked = _entries(store, AuditAction.ACCOUNT_LOCKED)
        assert len(locked) == 1
        assert locked[0].severity == Severity.HIGH

        # Even the right password is refused while locked
        with pytest.raises(AccountLockedError) as exc_info:
            await accounts.authenticate("doc@clinic.example", PASSWORD)
        assert exc_info.value.error_code == "account_locked"
        assert exc_info.value.status_code == 403

        login_clock.now += timedelta(minutes=settings.login_lockout_minutes, seconds=1)
        principal = await accounts.authenticate("doc@clinic.example", PASSWORD)
        assert principal.tenant_id == "clinic-a"

    async def test_success_resets_failure_count(self, accounts, store, settings):
        await accounts.create_account(
            "doc@clinic.example", PASSWORD, role=Role.DOCTOR, tenant_id="clinic-a"
        )

        for _ in range(settings.login_max_attempts - 1):
            with pytest.raises(AuthenticationError):
                await accounts.authenticate("doc@clinic.example", "wrong-password")
        await accounts.authenticate("doc@clinic.example", PASSWORD)

        with pytest.raises(AuthenticationError):
            await accounts.authenticate("doc@clinic.example", "wrong-password")
        assert _entries(store, AuditAction.ACCOUNT_LOCKED) == []

    async def test_failures_outside_window_start_over(self, accounts, store, settings, login_clock):
        await accounts.create_account(
            "doc@clinic.example", PASSWORD, role=Role.DOCTOR, tenant_id="clinic-a"
        )

        for _ in range(settings.login_max_attempts - 1):
            with pytest.raises(AuthenticationError):
                await accounts.authenticate("doc@clinic.example", "wrong-password")
        login_clock.now += timedelta(minutes=settings.login_lockout_minutes + 1)

        with pytest.raises(AuthenticationError):
            await accounts.authenticate("doc@clinic.example", "wrong-password")
        assert _entries(store, AuditAction.ACCOUNT_LOCKED) == []


class ScriptedLockoutCache:
    """Replays raw lockout-script replies the way Redis returns them."""

    def __init__(self, reply):
        self.reply = reply

    async def check_login_lockout(self, subject: str) -> bool:
        return False

    async def atomic_login_failure(self, subject, max_attempts, lockout_seconds):
        return _failure_result(self.reply)

    async def clear_login_failures(self, subject: str) -> None:
        return None


class TestSharedLockout:
    @pytest.mark.parametrize(
        "reply, recorded",
        [([0, 3], 0), ([1, 5], 1), ([1, -1], 0)],
    )
    async def test_only_the_locking_failure_is_recorded(
        self, store, audit, settings, login_clock, reply, recorded
    ):
        accounts = AccountService(
            store, audit, ScriptedLockoutCache(reply), settings, clock=login_clock
        )
        await accounts.create_account(
            "doc@clinic.example", PASSWORD, role=Role.DOCTOR, tenant_id="clinic-a"
        )

        with pytest.raises(AuthenticationError):
            await accounts.authenticate("doc@clinic.example", "wrong-password")

        assert len(_entries(store, AuditAction.ACCOUNT_LOCKED)) == recorded

    def test_existing_lock_is_not_reported_as_new(self):
        assert _failure_result([1, -1]) == (False, -1)
        assert _failure_result(["1", "5"]) == (True, 5)
        assert _failure_result([0, 2]) == (False, 2)
