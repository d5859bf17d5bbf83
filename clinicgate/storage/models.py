from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional


class Role(str, Enum):
    ADMIN = "admin"
    DOCTOR = "doctor"
    STAFF = "staff"
    PATIENT = "patient"

    @classmethod
    def parse(cls, value: "Role | str") -> "Role":
        """Resolve a role name, accepting the legacy aliases used by older clinics."""
        if isinstance(value, Role):
            return value
        raw = str(value or "").strip().lower()
        raw = _ROLE_ALIASES.get(raw, raw)
        try:
            return cls(raw)
        except ValueError:
            raise ValueError(f"unknown role: {value!r}") from None


_ROLE_ALIASES = {"dentist": "doctor", "receptionist": "staff"}


class Severity(str, Enum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def __lt__(self, other):  # type: ignore[override]
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):  # type: ignore[override]
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):  # type: ignore[override]
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):  # type: ignore[override]
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank >= other.rank


_SEVERITY_ORDER = [
    Severity.INFO,
    Severity.LOW,
    Severity.MEDIUM,
    Severity.HIGH,
    Severity.CRITICAL,
]


class AuditAction(str, Enum):
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    ACCOUNT_LOCKED = "account_locked"
    TOKEN_REFRESHED = "token_refreshed"
    TOKEN_REUSE_DETECTED = "token_reuse_detected"
    SESSION_EXPIRED = "session_expired"
    ACCESS_DENIED = "access_denied"
    TENANT_ACCESS_DENIED = "tenant_access_denied"
    LOGOUT = "logout"
    SESSIONS_REVOKED = "sessions_revoked"
    MFA_ENABLED = "mfa_enabled"
    MFA_DISABLED = "mfa_disabled"
    MFA_FAILED = "mfa_failed"


_DEFAULT_SEVERITY: Dict[AuditAction, Severity] = {
    AuditAction.TOKEN_REUSE_DETECTED: Severity.CRITICAL,
    AuditAction.ACCOUNT_LOCKED: Severity.HIGH,
    AuditAction.TENANT_ACCESS_DENIED: Severity.HIGH,
    AuditAction.ACCESS_DENIED: Severity.MEDIUM,
    AuditAction.MFA_FAILED: Severity.MEDIUM,
    AuditAction.LOGIN_FAILED: Severity.LOW,
    AuditAction.SESSION_EXPIRED: Severity.LOW,
    AuditAction.SESSIONS_REVOKED: Severity.LOW,
    AuditAction.MFA_DISABLED: Severity.LOW,
}


def classify_severity(action: AuditAction) -> Severity:
    return _DEFAULT_SEVERITY.get(AuditAction(action), Severity.INFO)


# Actions that land in the security view regardless of their severity
SECURITY_ACTIONS = frozenset(
    {
        AuditAction.LOGIN_FAILED,
        AuditAction.TOKEN_REUSE_DETECTED,
        AuditAction.ACCESS_DENIED,
    }
)
SECURITY_SEVERITIES = frozenset({Severity.HIGH, Severity.CRITICAL})

AUDIT_STATUSES = ("success", "failure", "warning")


@dataclass(frozen=True)
class Principal:
    id: str
    role: Role
    tenant_id: str


@dataclass
class RefreshFamily:
    id: str
    principal_id: str
    role: Role
    tenant_id: str
    current_refresh_id: str
    generation: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)
    last_rotated_at: Optional[datetime] = None
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        principal: Principal,
        *,
        meta: Dict | None = None,
        now: datetime | None = None,
    ) -> "RefreshFamily":
        return cls(
            id=str(uuid.uuid4()),
            principal_id=principal.id,
            role=principal.role,
            tenant_id=principal.tenant_id,
            current_refresh_id=str(uuid.uuid4()),
            generation=0,
            created_at=now or datetime.utcnow(),
            meta=meta,
        )

    def principal(self) -> Principal:
        return Principal(id=self.principal_id, role=self.role, tenant_id=self.tenant_id)


@dataclass(frozen=True)
class AuditEntry:
    id: str
    tenant_id: str
    action: AuditAction
    severity: Severity
    timestamp: datetime
    actor_id: Optional[str] = None
    resource: Optional[str] = None
    resource_id: Optional[str] = None
    description: Optional[str] = None
    status: str = "success"
    metadata: Dict | None = None
    correlation_id: Optional[str] = None


@dataclass
class Account:
    id: str
    email: str
    password_hash: str
    password_algo: str
    role: Role
    tenant_id: str
    display_name: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=datetime.utcnow)

    def principal(self) -> Principal:
        return Principal(id=self.id, role=self.role, tenant_id=self.tenant_id)


@dataclass
class AuditFilter:
    tenant_id: str
    actor_id: Optional[str] = None
    action: Optional[AuditAction] = None
    severity: Optional[Severity] = None
    resource: Optional[str] = None
    resource_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def matches(self, entry: AuditEntry, *, security_only: bool = False) -> bool:
        if entry.tenant_id != self.tenant_id:
            return False
        if self.actor_id is not None and entry.actor_id != self.actor_id:
            return False
        if self.action is not None and entry.action != self.action:
            return False
        if self.severity is not None and entry.severity != self.severity:
            return False
        if self.resource is not None and entry.resource != self.resource:
            return False
        if self.resource_id is not None and entry.resource_id != self.resource_id:
            return False
        if self.start is not None and entry.timestamp < self.start:
            return False
        if self.end is not None and entry.timestamp > self.end:
            return False
        if security_only and not is_security_entry(entry):
            return False
        return True


def is_security_entry(entry: AuditEntry) -> bool:
    return entry.severity in SECURITY_SEVERITIES or entry.action in SECURITY_ACTIONS


@dataclass
class AuditPage:
    entries: List[AuditEntry]
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return math.ceil(self.total / self.page_size)


@dataclass
class SeverityStats:
    total: int = 0
    info: int = 0
    low: int = 0
    medium: int = 0
    high: int = 0
    critical: int = 0

    @classmethod
    def from_counts(cls, counts: Dict[str, int]) -> "SeverityStats":
        values = {sev.value: int(counts.get(sev.value, 0) or 0) for sev in Severity}
        return cls(total=sum(values.values()), **values)

    def as_dict(self) -> Dict[str, int]:
        return {
            "info": self.info,
            "low": self.low,
            "medium": self.medium,
            "high": self.high,
            "critical": self.critical,
        }


@dataclass
class ActionSummary:
    action: AuditAction
    count: int = 0
    success_count: int = 0
    failure_count: int = 0
