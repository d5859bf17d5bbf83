from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from clinicgate.api.schemas import Envelope, ErrorBody
from clinicgate.logging import get_correlation_id, get_logger, sanitize_error_message
from clinicgate.service.errors import ServiceError
from clinicgate.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
    503: "service_unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _render(status_code: int, message: str, *, code: str | None = None, details: Any = None) -> JSONResponse:
    envelope = Envelope(
        status="error",
        error=ErrorBody(
            code=code or _error_code_for_status(status_code),
            message=message,
            details=details or None,
        ),
    )
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return JSONResponse(status_code=status_code, content=jsonable_encoder(envelope.model_dump()))


def _log(event: str, request: Request, status_code: int, **fields: Any) -> None:
    emit = logger.error if status_code >= 500 else logger.warning
    emit(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def register_exception_handlers(app: FastAPI) -> None:
    """Route every failure through the error envelope."""

    @app.exception_handler(ServiceError)
    async def on_service_error(request: Request, exc: ServiceError):
        _log("service_error", request, exc.status_code, error_code=exc.error_code, message=exc.message)
        return _render(exc.status_code, exc.message, code=exc.error_code, details=exc.detail)

    @app.exception_handler(ConstraintViolation)
    async def on_constraint_violation(request: Request, exc: ConstraintViolation):
        _log("constraint_violation", request, 409, message=exc.message, detail=exc.detail)
        return _render(409, exc.message, code="conflict", details=exc.detail)

    @app.exception_handler(StoreUnavailable)
    async def on_store_unavailable(request: Request, exc: StoreUnavailable):
        _log("store_unavailable", request, 503, operation=exc.operation)
        # Connection details stay in the logs
        return _render(503, "service temporarily unavailable", code="service_unavailable")

    @app.exception_handler(RequestValidationError)
    async def on_invalid_request(request: Request, exc: RequestValidationError):
        problems = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
        _log("request_validation_error", request, 400, errors=problems)
        return _render(400, "invalid request", code="validation_error", details=problems)

    @app.exception_handler(HTTPException)
    async def on_http_exception(request: Request, exc: HTTPException):
        # Routes raise HTTPException with a prebuilt {"error": {...}} detail
        body = exc.detail.get("error") if isinstance(exc.detail, dict) else None
        if isinstance(body, dict):
            code = body.get("code")
            message = body.get("message", "http error")
            _log("http_error", request, exc.status_code, error_code=code, message=message)
            return _render(exc.status_code, message, code=code, details=body.get("details"))
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        _log("http_error", request, exc.status_code, message=message)
        return _render(exc.status_code, sanitize_error_message(message))

    @app.exception_handler(Exception)
    async def on_unexpected(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return _render(500, "internal server error", code="server_error")
