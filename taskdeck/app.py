from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from taskdeck.api.error_handling import register_exception_handlers
from taskdeck.api.routes import router
from taskdeck.config import Settings
from taskdeck.logging import get_logger, set_correlation_id
from taskdeck.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

PROBE_TIMEOUT_SECONDS = 3

# Used when CORS_ALLOW_ORIGINS is empty
_DEV_ORIGINS = [
    f"http://{host}{port}"
    for host in ("localhost", "127.0.0.1")
    for port in ("", ":3000", ":5173")
]

_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}
_NO_STORE = "no-store, no-cache, must-revalidate, private"

_RATE_LIMIT_HEADERS = ["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        get_runtime()
    except Exception as exc:
        logger.error("runtime_start_failed", error=str(exc))
        raise
    yield
    try:
        await get_runtime().close()
    except Exception as exc:
        logger.error("runtime_close_failed", error=str(exc))
    else:
        logger.info("runtime_closed")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Assemble the HTTP application: middleware, error envelope, routes, health."""
    settings = settings or Settings.from_env()
    application = FastAPI(title="Taskdeck API", version=__version__, lifespan=lifespan)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins or _DEV_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", *_RATE_LIMIT_HEADERS],
        max_age=3600,
    )
    application.middleware("http")(request_context)
    register_exception_handlers(application)
    application.include_router(router)
    application.get("/healthz")(health)
    return application


async def request_context(request: Request, call_next):
    """Bind the request id for logging and stamp the response headers."""
    request_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    path = request.url.path
    if path == "/healthz" or path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", _NO_STORE)
    return response


async def _probe(component: str, check: Callable[[], Any]) -> bool:
    """Run a blocking connectivity check off the loop, bounded in time."""
    try:
        await asyncio.wait_for(asyncio.to_thread(check), PROBE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_probe_timeout", component=component, timeout=PROBE_TIMEOUT_SECONDS)
        return False
    except Exception as exc:
        logger.error("health_probe_failed", component=component, error=str(exc))
        return False
    return True


async def health():
    """Report credential store and counter store reachability."""
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    store_up = await _probe("database", runtime.store.verify_connection)
    checks["database"] = {
        "status": "healthy" if store_up else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }

    counters_up = True
    if runtime.cache is None:
        checks["redis"] = {"status": "not_configured"}
    else:
        counters_up = await _probe("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if counters_up else "unhealthy"}

    overall = "healthy" if store_up and counters_up else "unhealthy"
    return JSONResponse(
        status_code=200 if overall == "healthy" else 503,
        content={
            "status": overall,
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


app = create_app()
