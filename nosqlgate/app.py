from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from nosqlgate.api.error_handling import register_exception_handlers
from nosqlgate.api.routes import router
from nosqlgate.config import Settings
from nosqlgate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the runtime on startup and close its backend clients on shutdown."""
    from nosqlgate.service.runtime import close_runtime, get_runtime

    try:
        runtime = get_runtime()
        logger.info("startup_complete", backend=runtime.adapter.capabilities.name)
    except Exception as exc:
        logger.error("startup_failed", error_type=type(exc).__name__, error=str(exc))
        raise

    yield

    try:
        close_runtime()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="nosqlgate", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-User-Id", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id.

    The id comes from the client's ``X-Request-ID`` header when present and is
    generated otherwise. It is bound for structured logging and echoed back in
    the ``X-Request-ID`` response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Any:
    """Report whether the configured backend answers a table listing."""
    from nosqlgate.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.adapter.list_tables), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        checks["backend"] = {"status": "ok", "name": runtime.adapter.capabilities.name}
        healthy = True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="backend", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        checks["backend"] = {"status": "error", "error": "timeout"}
        healthy = False
    except Exception as exc:
        logger.error("health_check_backend_failed", error_type=type(exc).__name__, error=str(exc))
        checks["backend"] = {"status": "error", "error": type(exc).__name__}
        healthy = False

    body = {"status": "healthy" if healthy else "unhealthy", "version": __version__, "checks": checks}
    return JSONResponse(status_code=200 if healthy else 503, content=body)
