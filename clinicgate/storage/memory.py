from __future__ import annotations

import json
import threading
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from clinicgate.logging import get_logger
from clinicgate.storage.common import (
    account_from_dict,
    account_to_dict,
    audit_from_dict,
    audit_to_dict,
    family_from_dict,
    family_to_dict,
    normalize_email,
    page_offset,
    sort_summaries,
)
from clinicgate.storage.errors import ConstraintViolation
from clinicgate.storage.models import (
    Account,
    ActionSummary,
    AuditEntry,
    AuditFilter,
    RefreshFamily,
)


class MemoryStore:
    """In-process credential store persisted as a JSON snapshot under ``fs_root``.

    Every read and write holds ``_data_lock``; generation advancement is a
    compare-and-swap performed entirely under that lock so two rotations of the
    same family can never both succeed.
    """

    def __init__(self, fs_root: str = "/tmp/clinicgate", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.families: Dict[str, RefreshFamily] = {}
        self.accounts: Dict[str, Account] = {}
        self.audit_entries: List[AuditEntry] = []
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            if not self._load_state():
                self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    # refresh families
    def create_family(self, family: RefreshFamily) -> RefreshFamily:
        with self._data_lock:
            if family.id in self.families:
                raise ConstraintViolation("family already exists", {"family_id": family.id})
            self.families[family.id] = family
            self._persist_state()
            return family

    def get_family(self, family_id: str) -> Optional[RefreshFamily]:
        with self._data_lock:
            family = self.families.get(family_id)
            if family is None:
                return None
            # Hand out a copy so callers never observe a half-applied rotation
            return family_from_dict(family_to_dict(family))

    def cas_advance_generation(
        self,
        family_id: str,
        from_generation: int,
        new_generation: int,
        new_refresh_id: str,
    ) -> bool:
        with self._data_lock:
            family = self.families.get(family_id)
            if family is None or family.revoked:
                return False
            if family.generation != from_generation:
                return False
            family.generation = new_generation
            family.current_refresh_id = new_refresh_id
            family.last_rotated_at = datetime.utcnow()
            self._persist_state()
            return True

    def revoke_family(self, family_id: str, reason: str) -> bool:
        with self._data_lock:
            family = self.families.get(family_id)
            if family is None or family.revoked:
                return False
            family.revoked = True
            family.revoked_at = datetime.utcnow()
            family.revoked_reason = reason
            self._persist_state()
            return True

    def list_families(
        self, principal_id: str, *, active_only: bool = True
    ) -> List[RefreshFamily]:
        with self._data_lock:
            return [
                family_from_dict(family_to_dict(fam))
                for fam in self.families.values()
                if fam.principal_id == principal_id and not (active_only and fam.revoked)
            ]

    # audit
    def append_audit_entry(self, entry: AuditEntry) -> None:
        with self._data_lock:
            self.audit_entries.append(entry)
            self._persist_state()

    def _filtered(self, filters: AuditFilter, *, security_only: bool = False) -> List[AuditEntry]:
        return [e for e in self.audit_entries if filters.matches(e, security_only=security_only)]

    def query_audit_entries(
        self,
        filters: AuditFilter,
        page: int,
        page_size: int,
        *,
        security_only: bool = False,
    ) -> Tuple[List[AuditEntry], int]:
        with self._data_lock:
            matched = self._filtered(filters, security_only=security_only)
        matched.sort(key=lambda e: e.timestamp, reverse=True)
        offset = page_offset(page, page_size)
        return matched[offset : offset + page_size], len(matched)

    def count_audit_by_severity(self, filters: AuditFilter) -> Dict[str, int]:
        with self._data_lock:
            matched = self._filtered(filters)
        return dict(Counter(e.severity.value for e in matched))

    def summarize_audit_actions(self, filters: AuditFilter) -> List[ActionSummary]:
        with self._data_lock:
            matched = self._filtered(filters)
        summaries: Dict[str, ActionSummary] = {}
        for entry in matched:
            summary = summaries.setdefault(entry.action.value, ActionSummary(action=entry.action))
            summary.count += 1
            if entry.status == "success":
                summary.success_count += 1
            elif entry.status == "failure":
                summary.failure_count += 1
        return sort_summaries(list(summaries.values()))

    # accounts
    def create_account(self, account: Account) -> Account:
        with self._data_lock:
            email = normalize_email(account.email)
            for existing in self.accounts.values():
                if existing.tenant_id == account.tenant_id and existing.email == email:
                    raise ConstraintViolation(
                        "email already exists", {"tenant_id": account.tenant_id}
                    )
            account.email = email
            self.accounts[account.id] = account
            self._persist_state()
            return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_email(
        self, email: str, *, tenant_id: Optional[str] = None
    ) -> Optional[Account]:
        needle = normalize_email(email)
        with self._data_lock:
            for account in self.accounts.values():
                if account.email != needle:
                    continue
                if tenant_id is not None and account.tenant_id != tenant_id:
                    continue
                return account
        return None

    def close(self) -> None:
        return None

    # persistence
    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "families": [family_to_dict(f) for f in self.families.values()],
            "accounts": [account_to_dict(a) for a in self.accounts.values()],
            "audit_entries": [audit_to_dict(e) for e in self.audit_entries],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        self.families = {f["id"]: family_from_dict(f) for f in data.get("families", [])}
        self.accounts = {a["id"]: account_from_dict(a) for a in data.get("accounts", [])}
        self.audit_entries = [audit_from_dict(e) for e in data.get("audit_entries", [])]
        return True
