from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from clinicgate.config import Settings
from clinicgate.logging import get_logger
from clinicgate.service.audit import AuditTrail
from clinicgate.service.errors import (
    CredentialExpired,
    CredentialReused,
    InvalidCredential,
)
from clinicgate.storage.common import CredentialStore, call_store
from clinicgate.storage.models import AuditAction, Principal, RefreshFamily, Role

logger = get_logger(__name__)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_at: datetime
    refresh_expires_at: datetime
    principal: Principal
    family_id: str
    token_type: str = "bearer"


def _utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_timestamp(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


_JWT_HEADER = {"alg": "HS256", "typ": "JWT"}


def _compact_json(data: dict[str, Any]) -> bytes:
    return json.dumps(data, separators=(",", ":")).encode()


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


class TokenIssuer:
    """Mints, verifies, rotates and revokes credential pairs.

    Each login opens a refresh family. Every refresh credential is bound to the
    family generation it was minted at, and rotation advances the generation
    with a single compare-and-swap on the store. Presenting a credential from
    an older generation is treated as theft: the whole family is revoked.
    """

    def __init__(
        self,
        store: CredentialStore,
        audit: AuditTrail,
        settings: Settings,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.settings = settings
        self._clock = clock or time.time

    async def _store(self, func, *args, operation: str, **kwargs):
        return await call_store(
            func,
            *args,
            timeout=self.settings.store_timeout_seconds,
            operation=operation,
            **kwargs,
        )

    # compact HS256 codec
    def _signature(self, signed_part: str) -> str:
        digest = hmac.new(self.settings.jwt_secret.encode(), signed_part.encode(), hashlib.sha256)
        return _b64url(digest.digest())

    def _encode_jwt(self, claims: dict[str, Any]) -> str:
        signed_part = ".".join(_b64url(_compact_json(part)) for part in (_JWT_HEADER, claims))
        return f"{signed_part}.{self._signature(signed_part)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        """Return the claims of a well-signed credential for this issuer and audience.

        Expiry is not checked here.
        """
        segments = token.split(".") if isinstance(token, str) else []
        if len(segments) != 3:
            return None
        head, body, signature = segments
        try:
            alg = json.loads(_b64url_decode(head)).get("alg")
        except (ValueError, TypeError, AttributeError):
            logger.warning("credential_header_unreadable")
            return None
        if alg != "HS256":
            logger.warning("credential_algorithm_rejected", alg=alg)
            return None
        if not hmac.compare_digest(self._signature(f"{head}.{body}"), signature):
            return None
        try:
            claims = json.loads(_b64url_decode(body))
        except (ValueError, TypeError) as exc:
            logger.warning("credential_claims_unreadable", error=str(exc))
            return None
        if not isinstance(claims, dict) or claims.get("iss") != self.settings.jwt_issuer:
            return None
        audience = claims.get("aud")
        audiences = audience if isinstance(audience, list) else [audience]
        if self.settings.jwt_audience not in audiences:
            return None
        return claims

    @staticmethod
    def _exp(payload: dict[str, Any]) -> Optional[float]:
        try:
            return float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None

    def _mint(
        self, family: RefreshFamily, generation: int, refresh_id: str, now: float
    ) -> TokenPair:
        access_exp = int(now + self.settings.access_token_ttl_minutes * 60)
        refresh_exp = int(now + self.settings.refresh_token_ttl_minutes * 60)
        base = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": family.principal_id,
            "sid": family.id,
            "iat": int(now),
        }
        access_claims = dict(
            base,
            role=family.role.value,
            tenant_id=family.tenant_id,
            token_type="access",
            jti=str(uuid.uuid4()),
            exp=access_exp,
        )
        refresh_claims = dict(
            base, gen=generation, jti=refresh_id, token_type="refresh", exp=refresh_exp
        )
        return TokenPair(
            access_token=self._encode_jwt(access_claims),
            refresh_token=self._encode_jwt(refresh_claims),
            expires_at=_from_timestamp(access_exp),
            refresh_expires_at=_from_timestamp(refresh_exp),
            principal=family.principal(),
            family_id=family.id,
        )

    async def issue(self, principal: Principal, *, meta: Optional[dict] = None) -> TokenPair:
        """Open a new refresh family at generation 0 and mint its first pair."""
        now = self._clock()
        family = RefreshFamily.new(principal, meta=meta, now=_from_timestamp(now))
        await self._store(self.store.create_family, family, operation="create_family")
        pair = self._mint(family, family.generation, family.current_refresh_id, now)
        logger.info(
            "credential_issued",
            principal_id=principal.id,
            tenant_id=principal.tenant_id,
            family_id=family.id,
        )
        await self.audit.record(
            AuditAction.LOGIN_SUCCESS,
            tenant_id=principal.tenant_id,
            actor_id=principal.id,
            resource="session",
            resource_id=family.id,
            metadata=meta,
        )
        return pair

    def verify(self, access_token: str) -> Principal:
        """Offline check of an access credential; no store round trip."""
        payload = self._decode_jwt(access_token)
        if not payload or payload.get("token_type") != "access":
            raise InvalidCredential("invalid access credential")
        exp = self._exp(payload)
        if exp is None:
            raise InvalidCredential("invalid access credential")
        if exp <= self._clock() - self.settings.jwt_leeway_seconds:
            raise CredentialExpired("access credential expired")
        sub = payload.get("sub")
        tenant_id = payload.get("tenant_id")
        if not sub or not tenant_id:
            raise InvalidCredential("invalid access credential")
        try:
            role = Role.parse(payload.get("role"))
        except ValueError:
            raise InvalidCredential("invalid access credential") from None
        return Principal(id=str(sub), role=role, tenant_id=str(tenant_id))

    def family_id_of(self, access_token: str) -> Optional[str]:
        payload = self._decode_jwt(access_token)
        if not payload:
            return None
        return payload.get("sid")

    async def rotate(self, refresh_token: str, *, meta: Optional[dict] = None) -> TokenPair:
        """Exchange the current refresh credential of a family for a new pair."""
        now = self._clock()
        payload = self._decode_jwt(refresh_token)
        if not payload or payload.get("token_type") != "refresh":
            raise InvalidCredential("invalid refresh credential")
        exp = self._exp(payload)
        if exp is None or exp <= now:
            raise InvalidCredential("refresh credential expired")
        family_id = payload.get("sid")
        refresh_id = payload.get("jti")
        try:
            generation = int(payload.get("gen"))
        except (TypeError, ValueError):
            raise InvalidCredential("invalid refresh credential") from None
        if not family_id or not refresh_id:
            raise InvalidCredential("invalid refresh credential")

        family = await self._store(self.store.get_family, family_id, operation="get_family")
        if family is None or family.revoked:
            raise InvalidCredential("refresh credential revoked")

        max_age = timedelta(hours=self.settings.session_max_lifetime_hours)
        if _from_timestamp(now) - _utc_naive(family.created_at) > max_age:
            await self._expire_family(family)
            raise InvalidCredential("session lifetime exceeded")

        if generation < family.generation:
            await self._handle_reuse(family, generation, meta)
        if generation != family.generation or refresh_id != family.current_refresh_id:
            logger.warning(
                "refresh_credential_mismatch",
                family_id=family.id,
                presented_generation=generation,
                current_generation=family.generation,
            )
            raise InvalidCredential("invalid refresh credential")

        new_refresh_id = str(uuid.uuid4())
        advanced = await self._store(
            self.store.cas_advance_generation,
            family.id,
            generation,
            generation + 1,
            new_refresh_id,
            operation="cas_advance_generation",
        )
        if not advanced:
            current = await self._store(
                self.store.get_family, family.id, operation="get_family"
            )
            if current is None or current.revoked:
                # Revoked concurrently by logout or lifetime expiry
                raise InvalidCredential("refresh credential revoked")
            # Lost the race: a concurrent rotation already retired this credential
            await self._handle_reuse(current, generation, meta)

        family.generation = generation + 1
        family.current_refresh_id = new_refresh_id
        pair = self._mint(family, family.generation, new_refresh_id, now)
        logger.info(
            "credential_rotated",
            family_id=family.id,
            generation=family.generation,
        )
        await self.audit.record(
            AuditAction.TOKEN_REFRESHED,
            tenant_id=family.tenant_id,
            actor_id=family.principal_id,
            resource="session",
            resource_id=family.id,
            metadata=meta,
        )
        return pair

    async def _handle_reuse(
        self, family: RefreshFamily, generation: int, meta: Optional[dict]
    ) -> None:
        await self._store(
            self.store.revoke_family, family.id, "reuse", operation="revoke_family"
        )
        logger.warning(
            "token_reuse_detected",
            family_id=family.id,
            principal_id=family.principal_id,
            presented_generation=generation,
            current_generation=family.generation,
        )
        await self.audit.record(
            AuditAction.TOKEN_REUSE_DETECTED,
            tenant_id=family.tenant_id,
            actor_id=family.principal_id,
            resource="session",
            resource_id=family.id,
            description="Retired refresh credential presented; session family revoked",
            status="failure",
            metadata={**(meta or {}), "presented_generation": generation},
        )
        raise CredentialReused("refresh credential already used")

    async def _expire_family(self, family: RefreshFamily) -> None:
        revoked = await self._store(
            self.store.revoke_family, family.id, "expired", operation="revoke_family"
        )
        if not revoked:
            return
        logger.info("session_lifetime_exceeded", family_id=family.id)
        await self.audit.record(
            AuditAction.SESSION_EXPIRED,
            tenant_id=family.tenant_id,
            actor_id=family.principal_id,
            resource="session",
            resource_id=family.id,
            status="warning",
        )

    async def revoke(
        self,
        family_id: str,
        *,
        reason: str = "logout",
        actor: Optional[str] = None,
    ) -> bool:
        """Revoke one family. Idempotent; only the first call records ``logout``."""
        family = await self._store(self.store.get_family, family_id, operation="get_family")
        if family is None:
            return False
        revoked = await self._store(
            self.store.revoke_family, family_id, reason, operation="revoke_family"
        )
        if not revoked:
            return False
        logger.info("family_revoked", family_id=family_id, reason=reason)
        await self.audit.record(
            AuditAction.LOGOUT,
            tenant_id=family.tenant_id,
            actor_id=actor or family.principal_id,
            resource="session",
            resource_id=family_id,
            metadata={"reason": reason},
        )
        return True

    async def revoke_all(
        self,
        principal_id: str,
        *,
        reason: str = "revoke_all",
        actor: Optional[str] = None,
    ) -> int:
        """Revoke every active family of a principal, e.g. after a password reset."""
        families = await self._store(
            self.store.list_families, principal_id, operation="list_families"
        )
        count = 0
        for family in families:
            if await self._store(
                self.store.revoke_family, family.id, reason, operation="revoke_family"
            ):
                count += 1
        if not families:
            return 0
        logger.info("sessions_revoked", principal_id=principal_id, count=count, reason=reason)
        await self.audit.record(
            AuditAction.SESSIONS_REVOKED,
            tenant_id=families[0].tenant_id,
            actor_id=actor or principal_id,
            resource="account",
            resource_id=principal_id,
            description=f"Revoked {count} active sessions",
            metadata={"count": count, "reason": reason},
        )
        return count
