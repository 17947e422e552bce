from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from happyjourney.api.error_handling import error_response, register_exception_handlers
from happyjourney.api.routes import router
from happyjourney.config import Settings
from happyjourney.logging import get_logger, set_correlation_id
from happyjourney.service.rate_limit import client_identifier, route_limit
from happyjourney.service.runtime import get_runtime
from happyjourney.service.security_headers import apply_security_headers

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Happiness Journey API", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return ["http://localhost:3000", "http://127.0.0.1:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    # Cookies carry the auth token and session id
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def edge_guard(request: Request, call_next):
    """Rate-limit guarded routes and stamp security headers on every response.

    Runs for rejected, unmatched and failed requests too, so 429, 404 and 500
    responses carry the same header set as successful ones.
    """
    runtime = get_runtime()
    limited = route_limit(request.url.path) if request.method != "OPTIONS" else None
    if limited:
        pattern, limit = limited
        decision = await runtime.rate_limiter.check(
            client_identifier(request.headers), pattern, limit
        )
        if not decision.allowed:
            response = JSONResponse(
                status_code=429,
                content={"error": "Too many requests", "retryAfter": decision.retry_after},
                headers={"Retry-After": str(decision.retry_after)},
            )
            return apply_security_headers(response, runtime.security_headers)
    try:
        response = await call_next(request)
    except Exception as exc:
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        response = error_response(500, "Internal server error", code="server_error")
    return apply_security_headers(response, runtime.security_headers)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Honour or mint ``X-Request-ID`` and bind it to this request's log lines."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> JSONResponse:
    """Probe the record store and, when configured, Redis."""
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, probe) -> bool:
        try:
            await asyncio.wait_for(probe(), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    db_ok = await _run_bounded(
        "database", lambda: asyncio.to_thread(runtime.store.verify_connection)
    )
    checks["database"] = {"status": "ok" if db_ok else "error"}
    healthy = db_ok
    if runtime.redis is not None:
        redis_ok = await _run_bounded("redis", runtime.redis.ping)
        checks["redis"] = {"status": "ok" if redis_ok else "error"}
        healthy = healthy and redis_ok

    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "version": __version__,
            "checks": checks,
        },
    )
