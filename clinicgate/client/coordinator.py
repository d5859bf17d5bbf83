from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Set, Tuple

from clinicgate.logging import get_logger
from clinicgate.service.errors import SessionExpiredError
from clinicgate.storage.models import Principal

logger = get_logger(__name__)

SESSION_EXPIRED_MESSAGE = "Your session has expired. Please log in again."


@dataclass
class CredentialState:
    """Credentials held by one client session."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    principal: Optional[Principal] = None

    @property
    def active(self) -> bool:
        return bool(self.access_token and self.refresh_token)

    def update(
        self,
        access_token: str,
        refresh_token: str,
        principal: Optional[Principal] = None,
    ) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token
        if principal is not None:
            self.principal = principal

    def clear(self) -> None:
        self.access_token = None
        self.refresh_token = None
        self.principal = None


RotateFn = Callable[[str], Awaitable[Tuple[str, str]]]
SendFn = Callable[[str], Awaitable[Any]]


def _default_is_expired(response: Any) -> bool:
    return getattr(response, "status_code", None) == 401


class RefreshCoordinator:
    """Single-flight renewal of an expired access credential, then replay.

    Every request that fails authentication while a renewal is in flight waits
    on the same task, so N concurrent failures cost exactly one rotation. A
    failed rotation ends the session for all of them at once.
    """

    def __init__(
        self,
        state: CredentialState,
        rotate_fn: RotateFn,
        *,
        refresh_timeout: float = 10.0,
        on_session_expired: Optional[Callable[[], Any]] = None,
        is_expired: Callable[[Any], bool] = _default_is_expired,
    ) -> None:
        self.state = state
        self._rotate_fn = rotate_fn
        self.refresh_timeout = refresh_timeout
        self._on_session_expired = on_session_expired
        self._is_expired = is_expired
        self._pending: Optional[asyncio.Task] = None
        self._callback_tasks: Set[asyncio.Task] = set()
        self.rotations = 0

    async def execute(self, send: SendFn) -> Any:
        """Send once; on an auth failure renew and replay exactly once."""
        token = self.state.access_token
        if not self.state.active or token is None:
            raise SessionExpiredError(SESSION_EXPIRED_MESSAGE)
        response = await send(token)
        if not self._is_expired(response):
            return response
        fresh = await self._renew(token)
        # The replay result is final, even if it is another 401
        return await send(fresh)

    async def _renew(self, stale_token: str) -> str:
        current = self.state.access_token
        if current is not None and current != stale_token:
            # Someone already renewed since this request was sent
            return current
        if self._pending is None:
            if not self.state.active:
                raise SessionExpiredError(SESSION_EXPIRED_MESSAGE)
            self._pending = asyncio.ensure_future(self._rotate())
        return await asyncio.shield(self._pending)

    async def _rotate(self) -> str:
        refresh_token = self.state.refresh_token
        try:
            self.rotations += 1
            try:
                access, refresh = await asyncio.wait_for(
                    self._rotate_fn(refresh_token), self.refresh_timeout
                )
            except Exception as exc:
                logger.warning(
                    "client_refresh_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                self._expire_session()
                raise SessionExpiredError(SESSION_EXPIRED_MESSAGE) from exc
            self.state.update(access, refresh)
            logger.info("client_refresh_succeeded", rotations=self.rotations)
            return access
        finally:
            self._pending = None

    def _expire_session(self) -> None:
        self.state.clear()
        if self._on_session_expired is None:
            return
        try:
            result = self._on_session_expired()
        except Exception as exc:
            logger.error("session_expired_callback_failed", error=str(exc))
            return
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._callback_tasks.add(task)
            task.add_done_callback(self._callback_done)

    def _callback_done(self, task: asyncio.Task) -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("session_expired_callback_failed", error=str(exc))
