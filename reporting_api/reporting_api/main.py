"""FastAPI application entry-point for the tenant reporting API."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from reporting_api import __version__
from reporting_api.config import APISettings, PlatformEnv, load_api_settings
from reporting_api.dependencies import (
    build_credential_resolver,
    build_session_store,
    build_token_manager,
    dispose_engine,
    init_engine,
)
from reporting_api.errors import error_response, is_timeout_error
from reporting_api.middleware import (
    AuthenticationMiddleware,
    RateLimitConfig,
    RateLimitMiddleware,
    RequestLoggingMiddleware,
    SlidingWindowCounter,
)
from reporting_api.middleware.json_formatter import configure_json_logging
from reporting_api.routers import admin, auth, bundles, endpoints, export, filters, health, pricing, usage
from reporting_core.state.rls import RlsPolicyManager
from reporting_core.state.tables import Base, aggregate_metadata
from reporting_core.tenancy.scoping import ScopingError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Refuse to run outside development with the built-in signing secret.
    - Initialise the async database engine; create tables in dev or local
      SQLite mode, install RLS policies on PostgreSQL.
    - Build the session store, token manager and credential resolver.

    On shutdown:
    - Stop the rate-limit counter's cleanup task.
    - Close the session store and dispose the engine pool.
    """
    settings: APISettings = load_api_settings()

    if settings.platform_env in (PlatformEnv.STAGING, PlatformEnv.PRODUCTION) and settings.uses_default_secret:
        raise RuntimeError(
            f"REPORTING_JWT_SECRET must be set in {settings.platform_env.value} mode. Refusing to start."
        )

    if settings.structured_logging:
        configure_json_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local" if is_local else "postgres")

    if settings.platform_env == PlatformEnv.DEV or is_local:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            await conn.run_sync(aggregate_metadata.create_all)
        logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "dev auto-migration")

    policy_tables = await RlsPolicyManager(engine).apply()
    if policy_tables:
        logger.info("Row-level security policies installed on %d tables", len(policy_tables))

    store = build_session_store(settings)
    token_manager = build_token_manager(settings)
    app.state.session_store = store
    app.state.token_manager = token_manager
    app.state.credential_resolver = build_credential_resolver(settings, store, token_manager)
    logger.info("Credential resolver initialised (store=%s)", settings.session_store_backend.value)

    yield

    counter: SlidingWindowCounter | None = getattr(app.state, "rate_limit_counter", None)
    if counter is not None:
        await counter.stop()
    await store.close()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: APISettings | None = None) -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = settings or load_api_settings()

    app = FastAPI(
        title="Tenant Reporting API",
        description="Tenant-scoped usage, bundle and endpoint reporting.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (last added runs first) ----------------------------------

    app.state.rate_limit_counter = SlidingWindowCounter()
    app.add_middleware(
        RateLimitMiddleware,
        counter=app.state.rate_limit_counter,
        config=RateLimitConfig(
            enabled=settings.rate_limit_enabled,
            requests_per_minute=settings.rate_limit_per_minute,
            weighted_endpoints={"POST /api/v1/export": settings.export_request_weight},
        ),
    )
    app.add_middleware(AuthenticationMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "X-Correlation-ID",
            "CF-Access-Client-Id",
            "Accept",
        ],
    )

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router)
    app.include_router(usage.router, prefix="/api/v1")
    app.include_router(bundles.router, prefix="/api/v1")
    app.include_router(endpoints.router, prefix="/api/v1")
    app.include_router(filters.router, prefix="/api/v1")
    app.include_router(export.router, prefix="/api/v1")
    app.include_router(auth.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")
    app.include_router(pricing.router, prefix="/api/v1")

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        detail = exc.detail if isinstance(exc.detail, str) else None
        return error_response(exc.status_code, detail=detail, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("query", "body", "path"))
        message = first.get("msg", "Invalid request")
        return error_response(400, detail=f"{field}: {message}" if field else message)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return error_response(400, detail="Invalid request")

    @app.exception_handler(PermissionError)
    async def permission_error_handler(request: Request, exc: PermissionError) -> JSONResponse:
        logger.warning("PermissionError on %s: %s", request.url.path, exc)
        return error_response(403, detail="Permission denied")

    @app.exception_handler(ScopingError)
    async def scoping_error_handler(request: Request, exc: ScopingError) -> JSONResponse:
        logger.error("Tenant scoping failed on %s: %s", request.url.path, exc)
        return error_response(500)

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        if is_timeout_error(exc):
            logger.error("Database timeout on %s", request.url.path)
            return error_response(504, detail="Database request timed out")
        logger.error("Database error: %s", exc, exc_info=True)
        return error_response(500)

    return app


# Module-level application instance used by ``uvicorn reporting_api.main:app``.
app = create_app()
