"""Storage protocol and helpers shared between the memory and postgres backends."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, TypeVar

from clinicgate.logging import get_logger
from clinicgate.storage.errors import ConstraintViolation, StoreUnavailable
from clinicgate.storage.models import (
    Account,
    ActionSummary,
    AuditAction,
    AuditEntry,
    AuditFilter,
    RefreshFamily,
    Role,
    Severity,
)

logger = get_logger(__name__)

T = TypeVar("T")


class CredentialStore(Protocol):
    def create_family(self, family: RefreshFamily) -> RefreshFamily: ...

    def get_family(self, family_id: str) -> Optional[RefreshFamily]: ...

    def cas_advance_generation(
        self,
        family_id: str,
        from_generation: int,
        new_generation: int,
        new_refresh_id: str,
    ) -> bool: ...

    def revoke_family(self, family_id: str, reason: str) -> bool: ...

    def list_families(
        self, principal_id: str, *, active_only: bool = True
    ) -> List[RefreshFamily]: ...

    def append_audit_entry(self, entry: AuditEntry) -> None: ...

    def query_audit_entries(
        self,
        filters: AuditFilter,
        page: int,
        page_size: int,
        *,
        security_only: bool = False,
    ) -> Tuple[List[AuditEntry], int]: ...

    def count_audit_by_severity(self, filters: AuditFilter) -> Dict[str, int]: ...

    def summarize_audit_actions(self, filters: AuditFilter) -> List[ActionSummary]: ...

    def create_account(self, account: Account) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(
        self, email: str, *, tenant_id: Optional[str] = None
    ) -> Optional[Account]: ...

    def close(self) -> None: ...


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def page_offset(page: int, page_size: int) -> int:
    return max(page - 1, 0) * max(page_size, 0)


def sort_summaries(summaries: List[ActionSummary]) -> List[ActionSummary]:
    """Order action summaries by volume, busiest first, ties by action name."""
    return sorted(summaries, key=lambda s: (-s.count, s.action.value))


# ---------------------------------------------------------------------------
# Serialization helpers shared by the JSON snapshot and the SQL row mappers
# ---------------------------------------------------------------------------


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


def deserialize_datetime(raw: Any) -> Optional[datetime]:
    if raw is None or isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw))


def family_to_dict(family: RefreshFamily) -> dict:
    return {
        "id": family.id,
        "principal_id": family.principal_id,
        "role": family.role.value,
        "tenant_id": family.tenant_id,
        "generation": family.generation,
        "current_refresh_id": family.current_refresh_id,
        "created_at": serialize_datetime(family.created_at),
        "last_rotated_at": serialize_datetime(family.last_rotated_at),
        "revoked": family.revoked,
        "revoked_at": serialize_datetime(family.revoked_at),
        "revoked_reason": family.revoked_reason,
        "meta": family.meta,
    }


def family_from_dict(data: dict) -> RefreshFamily:
    return RefreshFamily(
        id=str(data["id"]),
        principal_id=str(data["principal_id"]),
        role=Role.parse(data["role"]),
        tenant_id=data["tenant_id"],
        generation=int(data.get("generation", 0)),
        current_refresh_id=str(data["current_refresh_id"]),
        created_at=deserialize_datetime(data["created_at"]),
        last_rotated_at=deserialize_datetime(data.get("last_rotated_at")),
        revoked=bool(data.get("revoked", False)),
        revoked_at=deserialize_datetime(data.get("revoked_at")),
        revoked_reason=data.get("revoked_reason"),
        meta=data.get("meta"),
    )


def audit_to_dict(entry: AuditEntry) -> dict:
    return {
        "id": entry.id,
        "tenant_id": entry.tenant_id,
        "actor_id": entry.actor_id,
        "action": entry.action.value,
        "severity": entry.severity.value,
        "resource": entry.resource,
        "resource_id": entry.resource_id,
        "description": entry.description,
        "status": entry.status,
        "metadata": entry.metadata,
        "correlation_id": entry.correlation_id,
        "timestamp": serialize_datetime(entry.timestamp),
    }


def audit_from_dict(data: dict) -> AuditEntry:
    return AuditEntry(
        id=str(data["id"]),
        tenant_id=data["tenant_id"],
        actor_id=str(data["actor_id"]) if data.get("actor_id") is not None else None,
        action=AuditAction(data["action"]),
        severity=Severity(data["severity"]),
        resource=data.get("resource"),
        resource_id=data.get("resource_id"),
        description=data.get("description"),
        status=data.get("status") or "success",
        metadata=data.get("metadata"),
        correlation_id=data.get("correlation_id"),
        timestamp=deserialize_datetime(data["timestamp"]),
    )


def account_to_dict(account: Account) -> dict:
    return {
        "id": account.id,
        "email": account.email,
        "password_hash": account.password_hash,
        "password_algo": account.password_algo,
        "role": account.role.value,
        "tenant_id": account.tenant_id,
        "display_name": account.display_name,
        "is_active": account.is_active,
        "created_at": serialize_datetime(account.created_at),
    }


def account_from_dict(data: dict) -> Account:
    return Account(
        id=str(data["id"]),
        email=data["email"],
        password_hash=data["password_hash"],
        password_algo=data.get("password_algo") or "argon2id",
        role=Role.parse(data["role"]),
        tenant_id=data["tenant_id"],
        display_name=data.get("display_name"),
        is_active=bool(data.get("is_active", True)),
        created_at=deserialize_datetime(data["created_at"]),
    )


async def call_store(
    func: Callable[..., T],
    *args: Any,
    timeout: float,
    operation: str,
    **kwargs: Any,
) -> T:
    """Run a blocking store call off the event loop, bounded by ``timeout``.

    Constraint violations pass through; timeouts and I/O failures surface as
    ``StoreUnavailable`` so callers never mistake them for auth outcomes.
    """
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, **kwargs), timeout
        )
    except ConstraintViolation:
        raise
    except asyncio.TimeoutError as exc:
        logger.error("store_call_timeout", operation=operation, timeout=timeout)
        raise StoreUnavailable("credential store timed out", operation=operation) from exc
    except Exception as exc:
        logger.error(
            "store_call_failed",
            operation=operation,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise StoreUnavailable(operation=operation) from exc
