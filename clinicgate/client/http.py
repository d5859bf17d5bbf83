from __future__ import annotations

from typing import Any, Callable, Optional, Tuple

import httpx

from clinicgate.client.coordinator import CredentialState, RefreshCoordinator
from clinicgate.logging import get_logger
from clinicgate.service.errors import (
    AuthenticationError,
    CredentialReused,
    ForbiddenError,
    InvalidCredential,
    ServiceError,
    SessionExpiredError,
)
from clinicgate.storage.models import Principal, Role

logger = get_logger(__name__)

PERMISSION_DENIED_MESSAGE = "You do not have permission to perform this action."

_REFRESH_ERRORS = {
    "credential_reused": CredentialReused,
    "invalid_credential": InvalidCredential,
}


def _error_of(response: httpx.Response) -> Tuple[Optional[str], str]:
    try:
        body = response.json()
    except ValueError:
        return None, response.text or "request failed"
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        return None, "request failed"
    return error.get("code"), error.get("message") or "request failed"


def _data_of(response: httpx.Response) -> Any:
    body = response.json()
    if isinstance(body, dict) and "data" in body:
        return body["data"]
    return body


class ClinicApiClient:
    """Async API client that carries credentials and renews them transparently.

    A 401 on any call triggers one shared refresh through the coordinator and a
    single replay; 403s are surfaced as ``ForbiddenError`` with a fixed message.
    """

    def __init__(
        self,
        base_url: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
        refresh_timeout: float = 10.0,
        tenant_id: Optional[str] = None,
        on_session_expired: Optional[Callable[[], Any]] = None,
    ) -> None:
        headers = {"X-Tenant-ID": tenant_id} if tenant_id else None
        self._http = httpx.AsyncClient(
            base_url=base_url, transport=transport, timeout=timeout, headers=headers
        )
        self.state = CredentialState()
        self.coordinator = RefreshCoordinator(
            self.state,
            self._rotate,
            refresh_timeout=refresh_timeout,
            on_session_expired=on_session_expired,
        )

    async def __aenter__(self) -> "ClinicApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def _apply_pair(self, data: dict) -> None:
        principal = None
        raw = data.get("principal")
        if isinstance(raw, dict):
            principal = Principal(
                id=raw["id"], role=Role.parse(raw["role"]), tenant_id=raw["tenant_id"]
            )
        self.state.update(data["access_token"], data["refresh_token"], principal)

    async def login(
        self, email: str, password: str, *, tenant_id: Optional[str] = None
    ) -> Principal:
        payload = {"email": email, "password": password}
        if tenant_id:
            payload["tenant_id"] = tenant_id
        response = await self._http.post("/v1/auth/login", json=payload)
        if response.status_code != 200:
            code, message = _error_of(response)
            raise ServiceError(
                message, status_code=response.status_code, error_code=code
            )
        self._apply_pair(_data_of(response))
        logger.info("client_login_succeeded")
        return self.state.principal

    async def _rotate(self, refresh_token: str) -> Tuple[str, str]:
        response = await self._http.post(
            "/v1/auth/refresh", json={"refresh_token": refresh_token}
        )
        if response.status_code != 200:
            code, message = _error_of(response)
            error_cls = _REFRESH_ERRORS.get(code or "", AuthenticationError)
            raise error_cls(message, status_code=response.status_code)
        data = _data_of(response)
        return data["access_token"], data["refresh_token"]

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        async def send(token: str) -> httpx.Response:
            headers = dict(kwargs.get("headers") or {})
            headers["Authorization"] = f"Bearer {token}"
            return await self._http.request(
                method, url, **{**kwargs, "headers": headers}
            )

        response = await self.coordinator.execute(send)
        if response.status_code == 403:
            code, _ = _error_of(response)
            raise ForbiddenError(PERMISSION_DENIED_MESSAGE, error_code=code or "forbidden")
        return response

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    async def logout(self) -> None:
        """Revoke the server-side session if possible and always drop local credentials.

        An expired access credential is renewed first so the family can still be
        revoked on the server.
        """

        async def send(token: str) -> httpx.Response:
            return await self._http.post(
                "/v1/auth/logout", headers={"Authorization": f"Bearer {token}"}
            )

        try:
            if self.state.active:
                response = await self.coordinator.execute(send)
                if response.status_code != 200:
                    code, _ = _error_of(response)
                    logger.warning(
                        "client_logout_rejected", status_code=response.status_code, error_code=code
                    )
        except SessionExpiredError:
            logger.info("client_logout_session_already_expired")
        except httpx.HTTPError as exc:
            logger.warning("client_logout_failed", error=str(exc))
        finally:
            self.state.clear()
