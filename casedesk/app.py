from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from casedesk.api.error_handling import register_exception_handlers
from casedesk.api.routes import RENEWED_TOKEN_HEADER, router
from casedesk.config import get_settings
from casedesk.logging import get_logger, set_correlation_id
from casedesk.service.runtime import get_runtime, sweep_expired_codes
from casedesk.storage.models import utcnow

logger = get_logger(__name__)

__version__ = "0.1.0"

_sweep_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the store and run the expired-code sweep for the app's lifetime."""
    global _sweep_task
    runtime = get_runtime()
    await runtime.startup()
    interval = runtime.settings.otp_sweep_interval_seconds
    if interval > 0:
        _sweep_task = asyncio.create_task(sweep_expired_codes(runtime, interval))
        logger.info("otp_sweep_started", interval_seconds=interval)

    yield

    try:
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
            _sweep_task = None
        await runtime.shutdown()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Case Desk Identity", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key", "X-Request-ID"],
    # Clients must be able to read the renewed token
    expose_headers=["X-Request-ID", RENEWED_TOKEN_HEADER],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag each request with a correlation id for log tracing.

    The id comes from the client's X-Request-ID header when present and is
    echoed back on the response.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health():
    """Report store and rate-limit cache reachability."""
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _probe(label: str, func) -> bool:
        try:
            return bool(await asyncio.wait_for(func(), HEALTH_CHECK_TIMEOUT_SECONDS))
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    db_ok = await _probe("database", runtime.store.ping)
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": type(runtime.store).__name__,
    }
    healthy = db_ok

    if runtime.cache is not None:
        redis_ok = await _probe("redis", runtime.cache.ping)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        healthy = healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    body = {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": utcnow().isoformat(),
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)
