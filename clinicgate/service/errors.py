from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Failure raised by the service layer and rendered as an error envelope.

    Subclasses fix the HTTP ``status_code`` and the stable ``error_code``
    clients branch on. Storage failures carry their own codes (``conflict``,
    ``service_unavailable``) and anything unexpected becomes ``server_error``.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        self.status_code = status_code or self.status_code
        self.error_code = error_code or self.error_code


class ValidationError(ServiceError):
    pass


class AuthenticationError(ServiceError):
    """No usable credential (401)."""

    status_code = 401
    error_code = "unauthorized"


class CredentialExpired(AuthenticationError):
    """Access credential is past its expiry; the client should renew it."""

    error_code = "token_expired"


class InvalidCredential(AuthenticationError):
    """Credential is missing, malformed, unsigned, revoked or unknown."""

    error_code = "invalid_credential"


class CredentialReused(AuthenticationError):
    """A retired refresh credential was presented; its family is now revoked."""

    error_code = "credential_reused"


class SessionExpiredError(AuthenticationError):
    """The client session can no longer be renewed and must log in again."""

    error_code = "session_expired"


class ForbiddenError(ServiceError):
    """Authenticated, but not allowed (403)."""

    status_code = 403
    error_code = "forbidden"


class RoleDenied(ForbiddenError):
    pass


class AccountLockedError(ForbiddenError):
    """Too many failed logins; the account is temporarily locked."""

    error_code = "account_locked"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "CredentialExpired",
    "InvalidCredential",
    "CredentialReused",
    "SessionExpiredError",
    "ForbiddenError",
    "RoleDenied",
    "AccountLockedError",
    "NotFoundError",
    "RateLimitedError",
]
