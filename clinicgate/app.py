from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from clinicgate.api.error_handling import register_exception_handlers
from clinicgate.api.routes import router
from clinicgate.config import Settings
from clinicgate.logging import get_logger, set_correlation_id
from clinicgate.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0

_DEV_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
    "API-Version": __version__,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        get_runtime()
    except Exception as exc:
        logger.error("startup_runtime_failed", error_type=type(exc).__name__, error=str(exc))
        raise
    yield
    try:
        await get_runtime().close()
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


async def _probe(component: str, check: Callable[[], Any]) -> bool:
    try:
        await asyncio.wait_for(asyncio.to_thread(check), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_probe_timeout", component=component)
        return False
    except Exception as exc:
        logger.error("health_probe_failed", component=component, error=str(exc))
        return False
    return True


async def health() -> Dict[str, Any]:
    """Store and Redis reachability plus build info."""
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    if hasattr(runtime.store, "pool"):

        def ping_database() -> None:
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1")

        db_ok = await _probe("database", ping_database)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy", "type": "postgres"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    if runtime.cache is None:
        redis_ok = True
        checks["redis"] = {"status": "not_configured"}
    else:
        redis_ok = await _probe("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}

    return {
        "status": "healthy" if db_ok and redis_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": runtime.settings.build_sha,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app(settings: Settings | None = None) -> FastAPI:
    """Assemble the API: middleware, error envelope, routes and health check."""
    settings = settings or Settings.from_env()
    application = FastAPI(title="Clinicgate", version=__version__, lifespan=lifespan)

    application.add_middleware(
        CORSMiddleware,
        # No wildcard: credentials are allowed
        allow_origins=settings.cors_allow_origins or _DEV_ORIGINS,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Tenant-ID", "X-Device-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "API-Version"],
        max_age=3600,
    )

    @application.middleware("http")
    async def bind_request_id(request: Request, call_next):
        """Carry ``X-Request-ID`` (or a fresh id) through logs, audit rows and the response."""
        request_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @application.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in _SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        path = request.url.path
        if path.startswith("/v1/") or path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store, private")
        if settings.enable_hsts and request.url.scheme == "https":
            response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains")
        return response

    register_exception_handlers(application)
    application.include_router(router)
    application.add_api_route("/healthz", health, methods=["GET"], tags=["ops"])
    return application


app = create_app()
