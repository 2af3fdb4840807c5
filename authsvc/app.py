from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from authsvc.api.error_handling import register_exception_handlers
from authsvc.api.routes import router
from authsvc.api.schemas import Envelope
from authsvc.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the OAuth state sweep on startup and cancel it on shutdown."""
    from authsvc.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.start()
    logger.info("authsvc_started", version=__version__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Auth Service", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation id for the request and echo it as ``X-Request-ID``.

    A client-supplied ``X-Request-ID`` is reused; otherwise a uuid4 is generated.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    if request.url.path.startswith("/api/auth"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/health", response_model=Envelope, tags=["health"])
async def health() -> Envelope:
    return Envelope(status="ok", data={"status": "healthy", "version": __version__})
