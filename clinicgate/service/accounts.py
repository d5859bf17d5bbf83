from __future__ import annotations

import asyncio
import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from clinicgate.config import Settings
from clinicgate.logging import get_logger
from clinicgate.service.audit import AuditTrail
from clinicgate.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ValidationError,
)
from clinicgate.storage.common import CredentialStore, call_store, normalize_email
from clinicgate.storage.models import Account, AuditAction, Principal, Role
from clinicgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class AccountService:
    """Password login with failed-attempt lockout.

    Lockout counters live in Redis when a cache is configured; otherwise a
    lock-protected in-memory map is used, which only holds for one process.
    """

    def __init__(
        self,
        store: CredentialStore,
        audit: AuditTrail,
        cache: Optional[RedisCache],
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.cache = cache
        self.settings = settings
        self._clock = clock or datetime.utcnow
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._state_lock = threading.Lock()
        self._login_attempts: dict[str, tuple[int, datetime]] = {}  # account_id -> (count, window_start)
        self._login_lockouts: dict[str, datetime] = {}  # account_id -> locked_until

    def _hash_password(self, password: str) -> tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def _verify_password(self, account: Account, password: str) -> bool:
        if account.password_algo != "argon2id":
            logger.warning(
                "password_algo_mismatch", account_id=account.id, algo=account.password_algo
            )
            return False
        try:
            return self._pwd_hasher.verify(account.password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    async def create_account(
        self,
        email: str,
        password: str,
        *,
        role: Role | str,
        tenant_id: str,
        display_name: Optional[str] = None,
    ) -> Account:
        email = normalize_email(email)
        if "@" not in email:
            raise ValidationError("invalid email", detail={"field": "email"})
        if not password or len(password) < 8:
            raise ValidationError(
                "password must be at least 8 characters", detail={"field": "password"}
            )
        try:
            parsed_role = Role.parse(role)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "role"}) from exc
        pwd_hash, algo = await asyncio.to_thread(self._hash_password, password)
        account = Account(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=pwd_hash,
            password_algo=algo,
            role=parsed_role,
            tenant_id=tenant_id,
            display_name=display_name,
        )
        created = await call_store(
            self.store.create_account,
            account,
            timeout=self.settings.store_timeout_seconds,
            operation="create_account",
        )
        logger.info(
            "account_created", account_id=created.id, tenant_id=tenant_id, role=parsed_role.value
        )
        return created

    async def _is_locked(self, account_id: str) -> bool:
        if self.cache:
            return await self.cache.check_login_lockout(account_id)
        now = self._clock()
        with self._state_lock:
            locked_until = self._login_lockouts.get(account_id)
            if locked_until and locked_until > now:
                return True
            if locked_until:
                self._login_lockouts.pop(account_id, None)
        return False

    async def _register_failure(self, account_id: str) -> tuple[bool, int]:
        """Count one failed login; returns (locked_now, attempts)."""
        max_attempts = self.settings.login_max_attempts
        window = timedelta(minutes=self.settings.login_lockout_minutes)
        if self.cache:
            return await self.cache.atomic_login_failure(
                account_id,
                max_attempts=max_attempts,
                lockout_seconds=int(window.total_seconds()),
            )
        now = self._clock()
        with self._state_lock:
            current = self._login_attempts.get(account_id)
            attempts, window_start = 1, now
            if current:
                count, prev_start = current
                if now - prev_start < window:
                    attempts, window_start = count + 1, prev_start
            if attempts >= max_attempts:
                self._login_lockouts[account_id] = now + window
                self._login_attempts.pop(account_id, None)
                return True, attempts
            self._login_attempts[account_id] = (attempts, window_start)
            return False, attempts

    async def _clear_failures(self, account_id: str) -> None:
        if self.cache:
            await self.cache.clear_login_failures(account_id)
            return
        with self._state_lock:
            self._login_attempts.pop(account_id, None)

    async def authenticate(
        self,
        email: str,
        password: str,
        *,
        tenant_id: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> Principal:
        account = await call_store(
            self.store.get_account_by_email,
            email,
            tenant_id=tenant_id,
            timeout=self.settings.store_timeout_seconds,
            operation="get_account_by_email",
        )
        audit_tenant = account.tenant_id if account else (tenant_id or self.settings.default_tenant_id)

        if account and await self._is_locked(account.id):
            logger.warning("login_locked_out", account_id=account.id)
            await self.audit.record(
                AuditAction.LOGIN_FAILED,
                tenant_id=audit_tenant,
                actor_id=account.id,
                resource="account",
                resource_id=account.id,
                description="Login attempt on locked account",
                status="failure",
                metadata=meta,
            )
            raise AccountLockedError(
                "account temporarily locked after repeated failed logins",
                detail={"retry_after_minutes": self.settings.login_lockout_minutes},
            )

        valid = False
        if account and account.is_active:
            valid = await asyncio.to_thread(self._verify_password, account, password)

        if not valid:
            await self.audit.record(
                AuditAction.LOGIN_FAILED,
                tenant_id=audit_tenant,
                actor_id=account.id if account else None,
                resource="account",
                resource_id=account.id if account else None,
                description="Invalid credentials",
                status="failure",
                metadata=meta,
            )
            if account:
                locked, attempts = await self._register_failure(account.id)
                if locked:
                    logger.warning(
                        "login_lockout_triggered", account_id=account.id, attempts=attempts
                    )
                    await self.audit.record(
                        AuditAction.ACCOUNT_LOCKED,
                        tenant_id=account.tenant_id,
                        actor_id=account.id,
                        resource="account",
                        resource_id=account.id,
                        description=(
                            f"Account locked for {self.settings.login_lockout_minutes} minutes "
                            f"after {attempts} failed logins"
                        ),
                        status="warning",
                        metadata=meta,
                    )
            raise AuthenticationError("invalid credentials")

        await self._clear_failures(account.id)
        return account.principal()
