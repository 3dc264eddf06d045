import asyncio
import logging
import traceback
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from skillsync.core.config import settings
from skillsync.core.errors import (
    AuthError,
    ConnectionNotFoundError,
    DuplicateConnectionError,
    IntegrationError,
    SyncInProgressError,
    ValidationError,
)
from skillsync.api.v1 import api_router
from skillsync.connectors import AdapterRegistry
from skillsync.db.session import check_db_connection, engine, init_models
from skillsync.core.logging_config import setup_logging, RequestLoggingMiddleware

# Configure structured logging (JSON in production, colored in development)
setup_logging()
logger = logging.getLogger("skillsync")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    error: str
    detail: str | None = None
    timestamp: str
    path: str | None = None


class HealthResponse(BaseModel):
    """Health check response format."""
    status: str
    service: str
    version: str
    environment: str
    checks: dict[str, bool]
    providers: list[str]


async def _retry_sweep_loop(app: FastAPI, interval: float) -> None:
    """Periodically re-dispatch webhook events whose dispatch failed."""
    while True:
        await asyncio.sleep(interval)
        container = getattr(app.state, "container", None)
        if container is None:
            continue
        try:
            await container.gateway.retry_failed()
        except Exception as e:
            logger.error(f"Webhook retry sweep failed: {type(e).__name__}: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Build the service container on startup and tear it down on shutdown.

    A container already placed on ``app.state`` (tests, embedding) is used
    as-is and left for its owner to close.
    """
    from skillsync.services.container import build_sql_container

    owned = getattr(app.state, "container", None) is None
    if owned:
        await init_models()
        app.state.container = build_sql_container()
        logger.info("Service container built with SQL stores")

    sweeper = None
    if settings.WEBHOOK_RETRY_INTERVAL_SECONDS > 0:
        sweeper = asyncio.create_task(_retry_sweep_loop(app, settings.WEBHOOK_RETRY_INTERVAL_SECONDS))

    logger.info(f"Application startup complete; providers enabled: {[p.value for p in app.state.container.adapters]}")
    try:
        yield
    finally:
        logger.info("Application shutting down...")
        if sweeper is not None:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)
        if owned:
            await app.state.container.close()
            app.state.container = None
            await engine.dispose()
            logger.info("Database connections closed")


app = FastAPI(
    title="SkillSync Integration API",
    description="Provider integrations, webhook ingestion and skill inference",
    version="1.0.0",
    docs_url="/docs" if settings.DEBUG else None,  # Disable docs in production
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)


def _status_for(exc: IntegrationError) -> int:
    if isinstance(exc, ConnectionNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, (DuplicateConnectionError, SyncInProgressError)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, AuthError):
        return status.HTTP_401_UNAUTHORIZED
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.exception_handler(IntegrationError)
async def integration_exception_handler(request: Request, exc: IntegrationError) -> JSONResponse:
    """Map pipeline errors to HTTP status codes. Unmapped ones fall through to the 500 handler."""
    status_code = _status_for(exc)
    if status_code == status.HTTP_500_INTERNAL_SERVER_ERROR:
        return await global_exception_handler(request, exc)

    logger.info(f"{request.method} {request.url.path} -> {status_code} {type(exc).__name__}: {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=type(exc).__name__,
            detail=exc.message,
            timestamp=datetime.utcnow().isoformat(),
            path=request.url.path,
        ).model_dump(),
    )


# Global exception handler - catches all unhandled exceptions
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler that returns consistent error responses.
    In production, sensitive details are hidden to prevent information leakage.
    """
    error_id = datetime.utcnow().strftime("%Y%m%d%H%M%S%f")

    logger.error(
        f"Unhandled exception [{error_id}]: {exc}\n"
        f"Path: {request.url.path}\n"
        f"Method: {request.method}\n"
        f"Traceback: {traceback.format_exc()}"
    )

    # In production, don't expose internal error details
    if settings.IS_PRODUCTION:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal server error",
                detail=f"An unexpected error occurred. Reference ID: {error_id}",
                timestamp=datetime.utcnow().isoformat(),
                path=request.url.path,
            ).model_dump(),
        )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error=exc.__class__.__name__,
            detail=str(exc),
            timestamp=datetime.utcnow().isoformat(),
            path=request.url.path,
        ).model_dump(),
    )


# Request logging middleware with timing and request IDs
app.add_middleware(RequestLoggingMiddleware)

# Include API router
app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Health check endpoint.
    Returns 503 if the database is unreachable or no provider adapter is registered.
    """
    db_healthy = await check_db_connection()
    providers = sorted(p.value for p in AdapterRegistry.list_all())

    checks = {
        "database": db_healthy,
        "providers": bool(providers),
    }
    all_healthy = all(checks.values())

    response = HealthResponse(
        status="healthy" if all_healthy else "degraded",
        service="skillsync-backend",
        version="1.0.0",
        environment=settings.ENVIRONMENT,
        checks=checks,
        providers=providers,
    )

    if not all_healthy:
        logger.warning(f"Health check failed: {checks}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(),
        )

    return response


@app.get("/")
async def root():
    return {"message": "Welcome to the SkillSync Integration API"}
