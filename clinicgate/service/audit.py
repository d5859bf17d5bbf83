from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import Callable, List, Optional

from clinicgate.config import Settings
from clinicgate.logging import get_correlation_id, get_logger
from clinicgate.storage.common import CredentialStore, call_store
from clinicgate.storage.models import (
    AUDIT_STATUSES,
    ActionSummary,
    AuditAction,
    AuditEntry,
    AuditFilter,
    AuditPage,
    Severity,
    SeverityStats,
    classify_severity,
)

logger = get_logger(__name__)


class AuditTrail:
    """Append-only security audit log with tenant-scoped admin queries.

    ``record`` is best effort: a slow or failing store never turns into a
    failed login or a failed API call, the entry is dropped and logged.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or datetime.utcnow

    async def record(
        self,
        action: AuditAction | str,
        *,
        tenant_id: str,
        actor_id: Optional[str] = None,
        severity: Severity | str | None = None,
        resource: Optional[str] = None,
        resource_id: Optional[str] = None,
        description: Optional[str] = None,
        status: str = "success",
        metadata: Optional[dict] = None,
    ) -> Optional[AuditEntry]:
        try:
            action = AuditAction(action)
            entry = AuditEntry(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                actor_id=actor_id,
                action=action,
                severity=Severity(severity) if severity is not None else classify_severity(action),
                resource=resource,
                resource_id=resource_id,
                description=description,
                status=status if status in AUDIT_STATUSES else "warning",
                metadata=metadata,
                correlation_id=get_correlation_id(),
                timestamp=self._clock(),
            )
            await asyncio.wait_for(
                asyncio.to_thread(self.store.append_audit_entry, entry),
                self.settings.audit_timeout_seconds,
            )
        except Exception as exc:
            logger.error(
                "audit_record_failed",
                action=str(getattr(action, "value", action)),
                tenant_id=tenant_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        log_fn = logger.warning if entry.severity >= Severity.HIGH else logger.info
        log_fn(
            "audit_recorded",
            action=entry.action.value,
            severity=entry.severity.value,
            tenant_id=tenant_id,
            actor_id=actor_id,
            audit_id=entry.id,
        )
        return entry

    def _clamp(self, page: int, page_size: Optional[int]) -> tuple[int, int]:
        size = page_size or self.settings.default_page_size
        size = max(1, min(int(size), self.settings.max_page_size))
        return max(1, int(page)), size

    async def _page(
        self,
        filters: AuditFilter,
        page: int,
        page_size: Optional[int],
        *,
        security_only: bool = False,
    ) -> AuditPage:
        page, size = self._clamp(page, page_size)
        entries, total = await call_store(
            self.store.query_audit_entries,
            filters,
            page,
            size,
            security_only=security_only,
            timeout=self.settings.store_timeout_seconds,
            operation="query_audit_entries",
        )
        return AuditPage(entries=list(entries), total=total, page=page, page_size=size)

    async def query(
        self, filters: AuditFilter, page: int = 1, page_size: Optional[int] = None
    ) -> AuditPage:
        """Entries matching ``filters``, newest first."""
        return await self._page(filters, page, page_size)

    async def security_query(
        self, filters: AuditFilter, page: int = 1, page_size: Optional[int] = None
    ) -> AuditPage:
        """Like ``query`` but limited to high/critical entries and login, reuse or denial events."""
        return await self._page(filters, page, page_size, security_only=True)

    async def resource_history(
        self,
        tenant_id: str,
        resource_id: str,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> AuditPage:
        filters = AuditFilter(tenant_id=tenant_id, resource_id=resource_id)
        return await self._page(filters, page, page_size)

    async def stats(
        self,
        tenant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> SeverityStats:
        filters = AuditFilter(tenant_id=tenant_id, start=start, end=end)
        counts = await call_store(
            self.store.count_audit_by_severity,
            filters,
            timeout=self.settings.store_timeout_seconds,
            operation="count_audit_by_severity",
        )
        return SeverityStats.from_counts(counts)

    async def activity_summary(
        self,
        tenant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[ActionSummary]:
        filters = AuditFilter(tenant_id=tenant_id, start=start, end=end)
        return await call_store(
            self.store.summarize_audit_actions,
            filters,
            timeout=self.settings.store_timeout_seconds,
            operation="summarize_audit_actions",
        )
