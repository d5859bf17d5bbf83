from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request

from clinicgate.api.schemas import (
    AccountCreateRequest,
    AccountResponse,
    ActivitySummaryResponse,
    AuditListResponse,
    AuditStatsResponse,
    AuthResponse,
    Envelope,
    LoginRequest,
    PrincipalResponse,
    RevokeSessionsResponse,
    TokenRefreshRequest,
)
from clinicgate.logging import get_logger
from clinicgate.service.errors import NotFoundError, RateLimitedError
from clinicgate.service.guard import _extract_bearer, request_meta
from clinicgate.service.runtime import check_rate_limit, get_runtime
from clinicgate.storage.common import call_store
from clinicgate.storage.models import AuditAction, AuditFilter, Principal, Role, Severity

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> None:
    allowed = await check_rate_limit(runtime, key, limit, window_seconds)
    if not allowed:
        raise RateLimitedError("rate limit exceeded", detail={"window_seconds": window_seconds})


def require_roles(*roles: Role):
    """Dependency factory resolving the guard from the live runtime per request."""

    async def dependency(request: Request) -> Principal:
        guard = get_runtime().guard
        return await guard.authorize(*roles)(request)

    return dependency


get_principal = require_roles()
get_admin = require_roles(Role.ADMIN)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _audit_filter(
    principal: Principal,
    *,
    actor_id: Optional[str] = None,
    action: Optional[str] = None,
    severity: Optional[str] = None,
    resource: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> AuditFilter:
    try:
        parsed_action = AuditAction(action) if action else None
        parsed_severity = Severity(severity) if severity else None
    except ValueError as exc:
        raise _http_error("validation_error", str(exc), status_code=400)
    start, end = _naive_utc(start), _naive_utc(end)
    if start and end and start > end:
        raise _http_error("validation_error", "start must not be after end", status_code=400)
    # Admins only ever see their own tenant
    return AuditFilter(
        tenant_id=principal.tenant_id,
        actor_id=actor_id,
        action=parsed_action,
        severity=parsed_severity,
        resource=resource,
        start=start,
        end=end,
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password and open a new session.

    Raises:
        401: If credentials are invalid
        403: If the account is locked after repeated failures
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    meta = {**request_meta(request), "device": body.device_type}
    principal = await runtime.accounts.authenticate(
        body.email, body.password, tenant_id=body.tenant_id, meta=meta
    )
    pair = await runtime.issuer.issue(principal, meta=meta)
    return Envelope(status="ok", data=AuthResponse.from_pair(pair))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest, request: Request):
    """Exchange the current refresh credential for a new pair.

    A refresh credential works once. Presenting a used one revokes the whole
    session and answers 401 ``credential_reused``.
    """
    runtime = get_runtime()
    client_host = request.client.host if request.client else "unknown"
    await _enforce_rate_limit(
        runtime,
        f"refresh:{client_host}",
        runtime.settings.refresh_rate_limit_per_minute,
        60,
    )
    pair = await runtime.issuer.rotate(body.refresh_token, meta=request_meta(request))
    return Envelope(status="ok", data=AuthResponse.from_pair(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    token = _extract_bearer(request.headers.get("authorization"))
    family_id = runtime.issuer.family_id_of(token) if token else None
    revoked = False
    if family_id:
        revoked = await runtime.issuer.revoke(family_id, reason="logout", actor=principal.id)
    return Envelope(status="ok", data={"revoked": revoked})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: Principal = Depends(get_principal)):
    return Envelope(status="ok", data=PrincipalResponse.from_principal(principal))


@router.post("/admin/accounts", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_account(
    body: AccountCreateRequest, principal: Principal = Depends(get_admin)
):
    """Create a login account in the admin's tenant."""
    runtime = get_runtime()
    account = await runtime.accounts.create_account(
        body.email,
        body.password,
        role=body.role,
        tenant_id=principal.tenant_id,
        display_name=body.display_name,
    )
    return Envelope(
        status="ok",
        data=AccountResponse(
            id=account.id,
            email=account.email,
            role=account.role.value,
            tenant_id=account.tenant_id,
            display_name=account.display_name,
            is_active=account.is_active,
            created_at=account.created_at,
        ),
    )


@router.post(
    "/admin/accounts/{account_id}/revoke-sessions",
    response_model=Envelope,
    tags=["admin"],
)
async def admin_revoke_sessions(
    account_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_admin),
):
    """Revoke every active session of an account in the admin's tenant."""
    runtime = get_runtime()
    account = await call_store(
        runtime.store.get_account,
        account_id,
        timeout=runtime.settings.store_timeout_seconds,
        operation="get_account",
    )
    if not account or account.tenant_id != principal.tenant_id:
        raise NotFoundError("account not found")
    revoked = await runtime.issuer.revoke_all(
        account_id, reason="admin_revoke", actor=principal.id
    )
    return Envelope(
        status="ok", data=RevokeSessionsResponse(account_id=account_id, revoked=revoked)
    )


@router.get("/admin/audit", response_model=Envelope, tags=["admin"])
async def admin_audit(
    actor_id: Optional[str] = None,
    action: Optional[str] = None,
    severity: Optional[str] = None,
    resource: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    principal: Principal = Depends(get_admin),
):
    """Audit entries of the admin's tenant, newest first."""
    runtime = get_runtime()
    filters = _audit_filter(
        principal,
        actor_id=actor_id,
        action=action,
        severity=severity,
        resource=resource,
        start=start,
        end=end,
    )
    result = await runtime.audit.query(filters, page, limit)
    return Envelope(status="ok", data=AuditListResponse.from_page(result))


@router.get("/admin/audit/security", response_model=Envelope, tags=["admin"])
async def admin_security_audit(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    principal: Principal = Depends(get_admin),
):
    """High and critical entries plus failed logins, reuse and access denials."""
    runtime = get_runtime()
    filters = _audit_filter(principal, start=start, end=end)
    result = await runtime.audit.security_query(filters, page, limit)
    return Envelope(status="ok", data=AuditListResponse.from_page(result))


@router.get("/admin/audit/stats", response_model=Envelope, tags=["admin"])
async def admin_audit_stats(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    principal: Principal = Depends(get_admin),
):
    runtime = get_runtime()
    filters = _audit_filter(principal, start=start, end=end)
    stats = await runtime.audit.stats(filters.tenant_id, filters.start, filters.end)
    return Envelope(status="ok", data=AuditStatsResponse.from_stats(stats))


@router.get("/admin/audit/summary", response_model=Envelope, tags=["admin"])
async def admin_activity_summary(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    principal: Principal = Depends(get_admin),
):
    runtime = get_runtime()
    filters = _audit_filter(principal, start=start, end=end)
    summaries = await runtime.audit.activity_summary(
        filters.tenant_id, filters.start, filters.end
    )
    return Envelope(status="ok", data=ActivitySummaryResponse.from_summaries(summaries))


@router.get("/admin/audit/resources/{resource_id}", response_model=Envelope, tags=["admin"])
async def admin_resource_history(
    resource_id: str = Path(..., max_length=256),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    principal: Principal = Depends(get_admin),
):
    runtime = get_runtime()
    result = await runtime.audit.resource_history(
        principal.tenant_id, resource_id, page, limit
    )
    return Envelope(status="ok", data=AuditListResponse.from_page(result))
