from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from hydration_tracker.api.error_handling import register_exception_handlers
from hydration_tracker.api.routes import router
from hydration_tracker.config import Settings
from hydration_tracker.logging import get_logger, set_correlation_id
from hydration_tracker.service.sessions import SessionLifecycleManager

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 5.0

_sweep_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the expired-session sweep on startup; stop it and release clients on shutdown."""
    global _sweep_task
    from hydration_tracker.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.session_cleanup_interval_seconds
    if interval > 0:
        _sweep_task = asyncio.create_task(_run_session_sweep(runtime.sessions, interval))
    else:
        logger.info("session_sweep_disabled")

    yield

    try:
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
            _sweep_task = None
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Hydration Tracker Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:8081",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with ``X-Request-ID`` (client supplied or generated) for log tracing."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    # Token responses must never be cached by proxies
    if request.url.path.startswith("/auth/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and cache reachability; 503 when a dependency is down."""
    from hydration_tracker.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    verify_store = getattr(runtime.store, "verify_connection", None)
    if verify_store is None:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}
    else:
        db_ok = await _run_bounded("database", verify_store)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}

    redis_ok = True
    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        checks["redis"] = {"status": "not_configured"}

    healthy = db_ok and redis_ok
    body = {
        "success": healthy,
        "data": {"status": "healthy" if healthy else "unhealthy", "version": __version__, "checks": checks},
    }
    if not healthy:
        return JSONResponse(status_code=503, content=body)
    return body


async def _run_session_sweep(sessions: SessionLifecycleManager, interval_seconds: int) -> None:
    """Background loop revoking sessions that expired without being touched."""
    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await sessions.cleanup_expired_sessions()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("session_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("session_sweep_task_cancelled")
        raise


def create_app() -> FastAPI:
    return app
