from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from clinicgate.service.tokens import TokenPair
from clinicgate.storage.models import (
    ActionSummary,
    AuditEntry,
    AuditPage,
    Principal,
    Role,
    SeverityStats,
)

_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "token_expired",
        "invalid_credential",
        "credential_reused",
        "session_expired",
        "forbidden",
        "account_locked",
        "not_found",
        "rate_limited",
        "validation_error",
        "conflict",
        "server_error",
        "service_unavailable",
    }
)


class ErrorBody(BaseModel):
    """``error`` member of an error envelope."""

    code: str = Field(..., description="Stable error code clients can branch on")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _known_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


class Envelope(BaseModel):
    """Every response body: ``status`` plus either ``data`` or ``error``."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# Zero-width characters and bidi overrides/isolates
_INVISIBLE = frozenset("\u200b\u200c\u200d\ufeff") | frozenset(
    chr(c) for c in (*range(0x202A, 0x202F), *range(0x2066, 0x206A))
)
_EMAIL = re.compile(
    r"^(?P<local>[a-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64})"
    r"@(?P<domain>(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?)$"
)


def _validate_email(value: str) -> str:
    """Lower-case, NFKC-normalize and syntax-check a login email."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    visible = "".join(ch for ch in value.strip().lower() if ch not in _INVISIBLE)
    normalized = unicodedata.normalize("NFKC", visible)
    if len(normalized) > 254 or not _EMAIL.match(normalized):
        raise ValueError("invalid email address")
    return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)
    tenant_id: Optional[str] = Field(default=None, max_length=128)
    device_type: str = Field(default="web", max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("device_type")
    @classmethod
    def _normalize_device_type(cls, value: str) -> str:
        normalized = (value or "web").lower()
        if normalized not in {"web", "mobile"}:
            raise ValueError("device_type must be 'web' or 'mobile'")
        return normalized


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class AccountCreateRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=8, max_length=128)
    role: str
    display_name: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_account_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("role")
    @classmethod
    def _validate_role(cls, value: str) -> str:
        return Role.parse(value).value


class PrincipalResponse(BaseModel):
    id: str
    role: str
    tenant_id: str

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalResponse":
        return cls(id=principal.id, role=principal.role.value, tenant_id=principal.tenant_id)


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    refresh_expires_at: datetime
    session_id: str
    principal: PrincipalResponse

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "AuthResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_at=pair.expires_at,
            refresh_expires_at=pair.refresh_expires_at,
            session_id=pair.family_id,
            principal=PrincipalResponse.from_principal(pair.principal),
        )


class AccountResponse(BaseModel):
    id: str
    email: str
    role: str
    tenant_id: str
    display_name: Optional[str] = None
    is_active: bool = True
    created_at: datetime


class AuditEntryResponse(BaseModel):
    id: str
    tenant_id: str
    actor_id: Optional[str] = None
    action: str
    severity: str
    resource: Optional[str] = None
    resource_id: Optional[str] = None
    description: Optional[str] = None
    status: str
    metadata: Optional[Dict[str, Any]] = None
    correlation_id: Optional[str] = None
    timestamp: datetime

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> "AuditEntryResponse":
        return cls(
            id=entry.id,
            tenant_id=entry.tenant_id,
            actor_id=entry.actor_id,
            action=entry.action.value,
            severity=entry.severity.value,
            resource=entry.resource,
            resource_id=entry.resource_id,
            description=entry.description,
            status=entry.status,
            metadata=entry.metadata,
            correlation_id=entry.correlation_id,
            timestamp=entry.timestamp,
        )


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class AuditListResponse(BaseModel):
    items: List[AuditEntryResponse]
    pagination: Pagination

    @classmethod
    def from_page(cls, page: AuditPage) -> "AuditListResponse":
        return cls(
            items=[AuditEntryResponse.from_entry(e) for e in page.entries],
            pagination=Pagination(
                page=page.page, limit=page.page_size, total=page.total, pages=page.pages
            ),
        )


class AuditStatsResponse(BaseModel):
    total: int
    by_severity: Dict[str, int]

    @classmethod
    def from_stats(cls, stats: SeverityStats) -> "AuditStatsResponse":
        return cls(total=stats.total, by_severity=stats.as_dict())


class ActionSummaryResponse(BaseModel):
    action: str
    count: int
    success_count: int
    failure_count: int


class ActivitySummaryResponse(BaseModel):
    items: List[ActionSummaryResponse]

    @classmethod
    def from_summaries(cls, summaries: List[ActionSummary]) -> "ActivitySummaryResponse":
        return cls(
            items=[
                ActionSummaryResponse(
                    action=s.action.value,
                    count=s.count,
                    success_count=s.success_count,
                    failure_count=s.failure_count,
                )
                for s in summaries
            ]
        )


class RevokeSessionsResponse(BaseModel):
    account_id: str
    revoked: int
