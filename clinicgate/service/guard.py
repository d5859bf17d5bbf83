from __future__ import annotations

from typing import Iterable, Optional

from fastapi import Request

from clinicgate.logging import get_logger
from clinicgate.service.audit import AuditTrail
from clinicgate.service.errors import InvalidCredential, RoleDenied
from clinicgate.service.tokens import TokenIssuer
from clinicgate.storage.models import AuditAction, Principal, Role

logger = get_logger(__name__)


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def request_meta(request: Request) -> dict:
    """Client details copied into audit entries."""
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
        "device": request.headers.get("x-device-type"),
    }


class AuthorizationGuard:
    """Authenticates access credentials and enforces role and tenant scope."""

    def __init__(self, issuer: TokenIssuer, audit: AuditTrail) -> None:
        self.issuer = issuer
        self.audit = audit

    async def check(
        self,
        authorization_header: Optional[str],
        required_roles: Iterable[Role | str] = (),
        *,
        resource: str,
        tenant_hint: Optional[str] = None,
        request_meta: Optional[dict] = None,
    ) -> Principal:
        token = _extract_bearer(authorization_header)
        if token is None:
            raise InvalidCredential("missing bearer credential")
        # CredentialExpired and InvalidCredential propagate unchanged
        principal = self.issuer.verify(token)

        allowed = {Role.parse(role) for role in required_roles}
        if allowed and principal.role not in allowed:
            logger.warning(
                "access_denied",
                principal_id=principal.id,
                role=principal.role.value,
                resource=resource,
            )
            await self.audit.record(
                AuditAction.ACCESS_DENIED,
                tenant_id=principal.tenant_id,
                actor_id=principal.id,
                resource=resource,
                description=f"Role {principal.role.value} may not access {resource}",
                status="failure",
                metadata={
                    **(request_meta or {}),
                    "required_roles": sorted(role.value for role in allowed),
                },
            )
            raise RoleDenied("insufficient role for this resource")

        if tenant_hint and tenant_hint != principal.tenant_id:
            logger.warning(
                "tenant_access_denied",
                principal_id=principal.id,
                tenant_id=principal.tenant_id,
                requested_tenant=tenant_hint,
            )
            await self.audit.record(
                AuditAction.TENANT_ACCESS_DENIED,
                tenant_id=principal.tenant_id,
                actor_id=principal.id,
                resource=resource,
                description="Attempted access to another tenant",
                status="failure",
                metadata={**(request_meta or {}), "requested_tenant": tenant_hint},
            )
            raise RoleDenied("access to this tenant is not allowed")
        return principal

    def authorize(self, *required_roles: Role | str):
        """Build a FastAPI dependency that admits only ``required_roles``.

        With no roles any authenticated principal is admitted.
        """

        async def dependency(request: Request) -> Principal:
            principal = await self.check(
                request.headers.get("authorization"),
                required_roles,
                resource=request.url.path,
                tenant_hint=request.headers.get("x-tenant-id"),
                request_meta=request_meta(request),
            )
            request.state.principal = principal
            return principal

        return dependency
