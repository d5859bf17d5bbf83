from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

_request_id: ContextVar[Optional[str]] = ContextVar("clinicgate_request_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Request id of the request being served, if any."""
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a new UUID) to the current context and return it."""
    value = correlation_id or str(uuid.uuid4())
    _request_id.set(value)
    return value


def _bind_request_id(_logger: Any, _method: str, event: Dict[str, Any]) -> Dict[str, Any]:
    request_id = _request_id.get()
    if request_id:
        event.setdefault("correlation_id", request_id)
    return event


# Substrings of event keys whose values are masked before rendering
_MASKED_KEY_PARTS = (
    "password",
    "secret",
    "token",
    "authorization",
    "credential",
    "email",
    "ip_address",
)


def _mask(value: str) -> str:
    return value[:2] + "***" + value[-2:]


def _redact_pii(_logger: Any, _method: str, event: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credential material and patient-identifying values."""
    for key, value in event.items():
        if not isinstance(value, str) or len(value) <= 4:
            continue
        if any(part in key.lower() for part in _MASKED_KEY_PARTS):
            event[key] = _mask(value)
    return event


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _configure_structlog(level: str, *, json_output: bool) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _bind_request_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# LOG_DEV_MODE switches to the console renderer regardless of LOG_JSON
_configure_structlog(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true") and not _env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_UNSAFE_FRAGMENTS = [
    re.compile(p)
    for p in (
        r"(?i)\b(select|insert|update|delete)\b.{0,80}",
        r"(?i)(?:/[\w.-]+){2,}",
        r"(?i)(password|secret|token|key|credential)\s*[:=]\s*\S+",
        r"eyJ[\w-]+\.[\w-]+\.[\w-]*",
        r"(?i)postgres(?:ql)?://\S+",
        r"(?i)redis://\S+",
    )
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip SQL, file paths, connection URLs, secrets and raw JWTs from a message.

    The result is safe to place in an API error envelope.
    """
    if not isinstance(error, str) or not error:
        return "An error occurred"
    for pattern in _UNSAFE_FRAGMENTS:
        error = pattern.sub(replacement, error)
    return error if len(error) <= 500 else error[:497] + "..."
