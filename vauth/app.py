from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from vauth.api.error_handling import register_exception_handlers
from vauth.api.routes import router
from vauth.config import Settings
from vauth.logging import get_logger, set_correlation_id
from vauth.storage.models import utcnow

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the maintenance scheduler on startup and stop it on shutdown."""
    from vauth.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        await runtime.maintenance.start()
    except Exception as exc:
        logger.error("startup_maintenance_failed", error=str(exc))

    yield

    try:
        await runtime.maintenance.stop()
        await runtime.notifier.drain()
        if runtime.cache is not None:
            await runtime.cache.close()
        close_store = getattr(runtime.store, "close", None)
        if callable(close_store):
            await asyncio.to_thread(close_store)
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="vauth", version=__version__, lifespan=lifespan)


# Local console origins; never a wildcard since the session cookie is a credential
_DEV_ORIGINS = ["http://localhost", "http://localhost:3000", "http://127.0.0.1:3000"]

_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
}

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins or _DEV_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "session_id", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Bind X-Request-ID for logging and stamp security headers on every response."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    # Token, session and health payloads must never be cached
    response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https":
        response.headers.setdefault("Strict-Transport-Security", "max-age=31536000")
    return response


register_exception_handlers(app)
app.include_router(router)


PROBE_TIMEOUT_SECONDS = 3


async def _probe(component: str, check: Callable[[], None]) -> str:
    """Run a blocking connectivity check off the loop and report healthy/unhealthy."""
    try:
        await asyncio.wait_for(asyncio.to_thread(check), PROBE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_probe_timeout", component=component, timeout=PROBE_TIMEOUT_SECONDS)
        return "unhealthy"
    except Exception as exc:
        logger.error("health_probe_failed", component=component, error=str(exc))
        return "unhealthy"
    return "healthy"


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store, Redis and maintenance state plus the version."""
    from vauth.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {
        "store": {
            "status": await _probe("store", runtime.store.verify_connection),
            "type": "memory" if runtime.settings.use_memory_store else "postgres",
        },
        "redis": {
            "status": await _probe("redis", runtime.cache.verify_connection)
            if runtime.cache is not None
            else "not_configured"
        },
        "maintenance": {"status": "running" if runtime.maintenance.running else "stopped"},
    }
    degraded = any(check["status"] == "unhealthy" for check in checks.values())
    return {
        "status": "unhealthy" if degraded else "healthy",
        "checks": checks,
        "version": __version__,
        "timestamp": utcnow().isoformat(),
    }


def create_app() -> FastAPI:
    return app
