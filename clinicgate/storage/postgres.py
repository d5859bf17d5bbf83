from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from clinicgate.logging import get_logger
from clinicgate.storage.common import (
    account_from_dict,
    audit_from_dict,
    family_from_dict,
    normalize_email,
    page_offset,
    sort_summaries,
)
from clinicgate.storage.errors import ConstraintViolation
from clinicgate.storage.models import (
    SECURITY_ACTIONS,
    SECURITY_SEVERITIES,
    Account,
    ActionSummary,
    AuditAction,
    AuditEntry,
    AuditFilter,
    RefreshFamily,
)


_REQUIRED_TABLES = ("refresh_family", "clinic_account", "audit_entry")


class PostgresStore:
    """Postgres-backed credential store.

    Rotation never reads then writes: ``cas_advance_generation`` is one
    conditional UPDATE and the row count decides the winner.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Fail fast when the credential tables have not been provisioned."""

        with self._connect() as conn:
            rows = conn.execute(
                "SELECT table_name FROM information_schema.tables WHERE table_name = ANY(%s)",
                (list(_REQUIRED_TABLES),),
            ).fetchall()
        present = {row["table_name"] for row in rows}
        missing = [name for name in _REQUIRED_TABLES if name not in present]
        if missing:
            self.logger.error("postgres_schema_missing", missing=missing)
            raise RuntimeError(f"missing required tables: {', '.join(missing)}")

    # refresh families
    def create_family(self, family: RefreshFamily) -> RefreshFamily:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_family (id, principal_id, role, tenant_id, generation, current_refresh_id, created_at, last_rotated_at, revoked, revoked_at, revoked_reason, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        family.id,
                        family.principal_id,
                        family.role.value,
                        family.tenant_id,
                        family.generation,
                        family.current_refresh_id,
                        family.created_at,
                        family.last_rotated_at,
                        family.revoked,
                        family.revoked_at,
                        family.revoked_reason,
                        json.dumps(family.meta) if family.meta else None,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("family already exists", {"family_id": family.id})
        return family

    def get_family(self, family_id: str) -> Optional[RefreshFamily]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_family WHERE id = %s", (family_id,)
            ).fetchone()
        if not row:
            return None
        return family_from_dict(self._decode_json(row, "meta"))

    def cas_advance_generation(
        self,
        family_id: str,
        from_generation: int,
        new_generation: int,
        new_refresh_id: str,
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_family
                   SET generation = %s, current_refresh_id = %s, last_rotated_at = now()
                 WHERE id = %s AND generation = %s AND NOT revoked
                """,
                (new_generation, new_refresh_id, family_id, from_generation),
            )
            return cur.rowcount == 1

    def revoke_family(self, family_id: str, reason: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_family
                   SET revoked = TRUE, revoked_at = now(), revoked_reason = %s
                 WHERE id = %s AND NOT revoked
                """,
                (reason, family_id),
            )
            return cur.rowcount == 1

    def list_families(
        self, principal_id: str, *, active_only: bool = True
    ) -> List[RefreshFamily]:
        query = "SELECT * FROM refresh_family WHERE principal_id = %s"
        if active_only:
            query += " AND NOT revoked"
        query += " ORDER BY created_at"
        with self._connect() as conn:
            rows = conn.execute(query, (principal_id,)).fetchall()
        return [family_from_dict(self._decode_json(row, "meta")) for row in rows]

    # audit
    def append_audit_entry(self, entry: AuditEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_entry (id, tenant_id, actor_id, action, severity, resource, resource_id, description, status, metadata, correlation_id, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.tenant_id,
                    entry.actor_id,
                    entry.action.value,
                    entry.severity.value,
                    entry.resource,
                    entry.resource_id,
                    entry.description,
                    entry.status,
                    json.dumps(entry.metadata) if entry.metadata else None,
                    entry.correlation_id,
                    entry.timestamp,
                ),
            )

    @staticmethod
    def _audit_where(
        filters: AuditFilter, *, security_only: bool = False
    ) -> Tuple[str, List[Any]]:
        clauses = ["tenant_id = %s"]
        params: List[Any] = [filters.tenant_id]
        if filters.actor_id is not None:
            clauses.append("actor_id = %s")
            params.append(filters.actor_id)
        if filters.action is not None:
            clauses.append("action = %s")
            params.append(AuditAction(filters.action).value)
        if filters.severity is not None:
            clauses.append("severity = %s")
            params.append(filters.severity.value)
        if filters.resource is not None:
            clauses.append("resource = %s")
            params.append(filters.resource)
        if filters.resource_id is not None:
            clauses.append("resource_id = %s")
            params.append(filters.resource_id)
        if filters.start is not None:
            clauses.append("created_at >= %s")
            params.append(filters.start)
        if filters.end is not None:
            clauses.append("created_at <= %s")
            params.append(filters.end)
        if security_only:
            clauses.append("(severity = ANY(%s) OR action = ANY(%s))")
            params.append(sorted(sev.value for sev in SECURITY_SEVERITIES))
            params.append(sorted(act.value for act in SECURITY_ACTIONS))
        return " AND ".join(clauses), params

    def query_audit_entries(
        self,
        filters: AuditFilter,
        page: int,
        page_size: int,
        *,
        security_only: bool = False,
    ) -> Tuple[List[AuditEntry], int]:
        where, params = self._audit_where(filters, security_only=security_only)
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM audit_entry WHERE {where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM audit_entry WHERE {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                params + [page_size, page_offset(page, page_size)],
            ).fetchall()
        total = int(total_row["total"]) if total_row else 0
        return [self._row_to_audit(row) for row in rows], total

    def count_audit_by_severity(self, filters: AuditFilter) -> Dict[str, int]:
        where, params = self._audit_where(filters)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT severity, COUNT(*) AS count FROM audit_entry WHERE {where} GROUP BY severity",
                params,
            ).fetchall()
        return {row["severity"]: int(row["count"]) for row in rows}

    def summarize_audit_actions(self, filters: AuditFilter) -> List[ActionSummary]:
        where, params = self._audit_where(filters)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT action,
                       COUNT(*) AS count,
                       COUNT(*) FILTER (WHERE status = 'success') AS success_count,
                       COUNT(*) FILTER (WHERE status = 'failure') AS failure_count
                  FROM audit_entry
                 WHERE {where}
                 GROUP BY action
                """,
                params,
            ).fetchall()
        return sort_summaries(
            [
                ActionSummary(
                    action=AuditAction(row["action"]),
                    count=int(row["count"]),
                    success_count=int(row["success_count"]),
                    failure_count=int(row["failure_count"]),
                )
                for row in rows
            ]
        )

    def _row_to_audit(self, row: dict) -> AuditEntry:
        data = self._decode_json(row, "metadata")
        data["timestamp"] = data.pop("created_at")
        return audit_from_dict(data)

    # accounts
    def create_account(self, account: Account) -> Account:
        account.email = normalize_email(account.email)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO clinic_account (id, email, password_hash, password_algo, role, tenant_id, display_name, is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.email,
                        account.password_hash,
                        account.password_algo,
                        account.role.value,
                        account.tenant_id,
                        account.display_name,
                        account.is_active,
                        account.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"tenant_id": account.tenant_id}
            )
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM clinic_account WHERE id = %s", (account_id,)
            ).fetchone()
        return account_from_dict(dict(row)) if row else None

    def get_account_by_email(
        self, email: str, *, tenant_id: Optional[str] = None
    ) -> Optional[Account]:
        query = "SELECT * FROM clinic_account WHERE email = %s"
        params: List[Any] = [normalize_email(email)]
        if tenant_id is not None:
            query += " AND tenant_id = %s"
            params.append(tenant_id)
        query += " ORDER BY created_at LIMIT 1"
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return account_from_dict(dict(row)) if row else None

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _decode_json(row: dict, key: str) -> dict:
        data = dict(row)
        raw = data.get(key)
        if isinstance(raw, str):
            try:
                data[key] = json.loads(raw)
            except json.JSONDecodeError:
                data[key] = None
        return data
