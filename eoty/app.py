from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from eoty.api.error_handling import register_exception_handlers
from eoty.api.routes import router
from eoty.config import get_settings
from eoty.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = get_settings()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on start-up and release the store pool on shutdown."""
    from eoty.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", store_type=runtime.store.store_kind())

    yield

    try:
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="EOTY Identity Service", version=__version__, lifespan=lifespan)


app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with ``X-Request-ID`` and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/auth/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.is_production:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store reachability and which optional schema features are present."""
    from eoty.service.runtime import get_runtime

    runtime = get_runtime()
    store_ok = True
    try:
        if hasattr(runtime.store, "_connect"):

            def _db_probe() -> None:
                with runtime.store._connect() as conn:
                    conn.execute("SELECT 1").fetchone()

            await asyncio.wait_for(asyncio.to_thread(_db_probe), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="database")
        store_ok = False
    except Exception as exc:
        logger.error("health_check_database_failed", error=str(exc))
        store_ok = False

    return {
        "status": "healthy" if store_ok else "unhealthy",
        "store": runtime.store.store_kind(),
        "capabilities": runtime.probe.snapshot(),
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
