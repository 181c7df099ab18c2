"""DropDeck Backend - Main FastAPI Application

Ephemeral group messaging: lifecycle engine API

This module creates and configures the FastAPI application, including:
- Lifecycle (admin/audit) and observability routers
- Request ID middleware
- Exception handlers
- Startup of the lifecycle engine (fails fast without an encryption key)
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from config import Settings, settings as default_settings
from domain.lifecycle.errors import ArchiveError, CryptoError
from lifecycle.router import router as lifecycle_router
from lifecycle.scheduler import ExpirySweepScheduler
from lifecycle.service import build_scheduler
from observability.logging_config import configure_logging
from observability.middleware import RequestIDMiddleware
from observability.router import router as observability_router

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    scheduler: Optional[ExpirySweepScheduler] = None,
) -> FastAPI:
    """Build the application.

    Args:
        settings: Settings to use (defaults to the environment)
        scheduler: Pre-built scheduler (tests inject one with fakes);
            otherwise one is built from settings at startup

    Raises:
        ConfigError: At startup, if the content encryption key is missing or short
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info("DropDeck API starting up...")
        logger.info(f"Environment: {settings.ENVIRONMENT}")

        app.state.lifecycle_scheduler = scheduler or build_scheduler(settings)
        if settings.SWEEP_RUN_IN_PROCESS:
            app.state.lifecycle_scheduler.start()

        yield

        # Shutdown
        logger.info("DropDeck API shutting down...")
        # Also waits for sweeps started through the API
        app.state.lifecycle_scheduler.stop()

    app = FastAPI(
        title="DropDeck API",
        description="Ephemeral group messaging - data lifecycle engine",
        version="0.1.0",
        docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
        redoc_url=None,
        lifespan=lifespan,
    )

    app.add_middleware(RequestIDMiddleware)

    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ArchiveError, archive_exception_handler)
    app.add_exception_handler(CryptoError, crypto_exception_handler)
    app.add_exception_handler(SQLAlchemyError, database_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.include_router(observability_router)
    app.include_router(lifecycle_router)

    @app.get("/", include_in_schema=False)
    def root():
        return {"name": "DropDeck API", "version": "0.1.0", "docs": "/docs"}

    return app


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle Pydantic validation errors with field-level details."""
    logger.warning(
        f"Validation error on {request.method} {request.url.path}",
        extra={"error": str(exc.errors())}
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "validation_error",
            "message": "Request validation failed",
            "details": exc.errors(),
        },
    )


async def archive_exception_handler(request: Request, exc: ArchiveError) -> JSONResponse:
    logger.error(f"Archive error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": "archive_error", "message": str(exc)},
    )


async def crypto_exception_handler(request: Request, exc: CryptoError) -> JSONResponse:
    """Never echo decryption details to the client."""
    logger.error(f"Crypto error on {request.method} {request.url.path}", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "crypto_error", "message": "Stored content could not be decrypted."},
    )


async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Logs the full error but returns a generic message."""
    logger.error(f"Database error on {request.method} {request.url.path}", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "database_error",
            "message": "A database error occurred. Please try again later.",
        },
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled exception on {request.method} {request.url.path}", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_error",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )


configure_logging(level=default_settings.LOG_LEVEL, json_format=default_settings.LOG_JSON)

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=default_settings.DEBUG,
        log_level=default_settings.LOG_LEVEL.lower(),
    )
