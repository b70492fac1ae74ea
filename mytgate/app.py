from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from mytgate.api.error_handling import register_exception_handlers
from mytgate.api.routes import router
from mytgate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime before serving; a ConfigError aborts startup."""
    from mytgate.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("gateway_started", version=__version__)

    yield

    await runtime.store.close()
    logger.info("gateway_stopped", metrics=runtime.metrics.snapshot())


app = FastAPI(title="MyT Gateway", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line and response with the request's correlation id."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)
