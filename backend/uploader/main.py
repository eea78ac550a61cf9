"""Uploader Backend Application.

Ephemeral file hosting: clients upload a file, receive a stable URL, and the
file is reclaimed automatically once its retention window has passed.

Modules:
    - files: upload, delete and blob retrieval (policy, storage, DuckDB index)
    - access: per-client rate admission and shared-secret authorization
    - scheduler: background sweep of expired files
    - context: the service context built at startup
"""
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from uploader.access import client_identity, rate_limit_middleware
from uploader.config import AppConfig, get_config
from uploader.context import ServiceContext
from uploader.errors import register_exception_handlers
from uploader.files.router import retrieval_router, router as files_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence per-request noise from the server and multipart parser.
for _noisy in (
    "uvicorn.access",
    "multipart",
    "python_multipart",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)
request_logger = logging.getLogger("uploader.requests")

# Sent on every response.
SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "X-Permitted-Cross-Domain-Policies": "none",
    "Cross-Origin-Opener-Policy": "same-origin",
}


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Configuration to use; loaded from YAML when omitted.
    """
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the service context, start the sweeper, tear down on exit."""
        configured_level = getattr(logging, config.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", config.logging.level.upper())

        context = ServiceContext.build(config)
        app.state.context = context
        await context.scheduler.start()
        logger.info("Uploader API ready. Base URL: %s", config.server.base_url)

        yield  # Application runs here

        await context.scheduler.stop()
        context.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Uploader API",
        description="Ephemeral file hosting with automatic expiry",
        version="0.1.0",
        lifespan=lifespan,
    )

    register_exception_handlers(app)

    # Rate admission runs inside request logging so rejected requests are logged too.
    app.middleware("http")(rate_limit_middleware)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        request_logger.info(
            '%s "%s %s" %d %.1fms',
            client_identity(request),
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - started) * 1000,
        )
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict:
        """Liveness check."""
        return {"ok": True}

    app.include_router(files_router)
    # Catch-all blob route goes last.
    app.include_router(retrieval_router)

    return app


app = create_app()
