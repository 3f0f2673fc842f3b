"""FastAPI application entry-point for the platform fee ledger API."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from ledger_core.errors import (
    ConcurrencyConflictError,
    FeeValidationError,
    LedgerTransitionError,
    NotFoundError,
    ProviderError,
    SignatureVerificationError,
)
from sqlalchemy.exc import SQLAlchemyError

from ledger_api import __version__
from ledger_api.config import APISettings, PlatformEnv, load_api_settings
from ledger_api.dependencies import (
    dispose_engine,
    dispose_http_client,
    get_session_factory,
    init_engine,
    init_http_client,
)
from ledger_api.middleware.auth import AuthenticationMiddleware
from ledger_api.middleware.logging import RequestLoggingMiddleware
from ledger_api.middleware.prometheus import PrometheusMiddleware
from ledger_api.middleware.trace_context import TraceContextMiddleware, TraceLoggingFilter
from ledger_api.routers import (
    alerts,
    audit,
    billing,
    disputes,
    fees,
    health,
    ledger,
    payments,
    providers,
    reconciliation,
    webhooks,
)
from ledger_api.routers import metrics as metrics_router
from ledger_api.services.scheduler import JobScheduler

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def _configure_structured_logging() -> None:
    from ledger_api.middleware.json_formatter import JSONFormatter

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    handler.addFilter(TraceLoggingFilter())
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)
    logger.info("Structured JSON logging enabled")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create tables for local SQLite databases (production uses Alembic).
    - Initialise the shared outbound HTTP client.
    - Start the job scheduler when enabled.

    On shutdown the scheduler, HTTP client and engine are disposed in
    reverse order.
    """
    settings: APISettings = load_api_settings()

    # Fail fast: refuse to start in production/staging without JWT_SECRET.
    if settings.platform_env in (PlatformEnv.STAGING, PlatformEnv.PRODUCTION) and not os.environ.get("JWT_SECRET"):
        raise RuntimeError(
            f"JWT_SECRET environment variable is required in {settings.platform_env.value} mode. Refusing to start."
        )

    if settings.structured_logging:
        _configure_structured_logging()

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local SQLite" if is_local else "postgres")

    if is_local:
        from ledger_core.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured (local SQLite)")

    http = init_http_client(settings)
    logger.info("Outbound HTTP client initialised (timeout=%ss)", settings.provider_timeout_seconds)

    scheduler: JobScheduler | None = None
    if settings.scheduler_enabled:
        scheduler = JobScheduler(get_session_factory(), http, settings)
        await scheduler.start()

    yield

    # Shutdown.
    if scheduler is not None:
        await scheduler.stop()
    await dispose_http_client()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(LedgerTransitionError)
    async def ledger_transition_handler(request: Request, exc: LedgerTransitionError) -> JSONResponse:
        logger.info("Ledger precondition failed on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=409, content={"detail": str(exc), "invalid_ids": exc.invalid_ids})

    @app.exception_handler(ConcurrencyConflictError)
    async def conflict_handler(request: Request, exc: ConcurrencyConflictError) -> JSONResponse:
        logger.warning("Concurrency conflict on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(SignatureVerificationError)
    async def signature_handler(request: Request, exc: SignatureVerificationError) -> JSONResponse:
        return JSONResponse(status_code=401, content={"detail": "Invalid webhook signature"})

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ProviderError)
    async def provider_error_handler(request: Request, exc: ProviderError) -> JSONResponse:
        logger.error("Payment provider error on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=502,
            content={"detail": "Payment provider request failed", "provider": exc.provider},
        )

    @app.exception_handler(FeeValidationError)
    async def fee_validation_handler(request: Request, exc: FeeValidationError) -> JSONResponse:
        logger.info("Validation failed on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        # Log the full error for debugging; return a safe message to the client.
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(PermissionError)
    async def permission_error_handler(request: Request, exc: PermissionError) -> JSONResponse:
        logger.warning("PermissionError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=403, content={"detail": "Permission denied"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Platform Fee Ledger API",
        description="Platform fee ledger, payment settlement and transaction reconciliation.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", "Accept"],
    )
    app.add_middleware(AuthenticationMiddleware)
    app.add_middleware(TraceContextMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    for module in (
        health,
        fees,
        ledger,
        payments,
        webhooks,
        disputes,
        reconciliation,
        alerts,
        audit,
        billing,
        providers,
    ):
        app.include_router(module.router, prefix="/api/v1")

    # Metrics and readiness live outside /api/v1 versioning.
    app.include_router(metrics_router.router)
    app.include_router(health.readiness_router)

    _register_exception_handlers(app)
    return app


# Module-level application instance used by ``uvicorn ledger_api.main:app``.
app = create_app()
