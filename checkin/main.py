"""Main FastAPI application."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from checkin.api.v1 import api_router
from checkin.core.config import settings
from checkin.core.errors import (
    APIException,
    api_exception_handler,
    checkin_exception_handler,
    generic_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from checkin.core.logging_config import configure_logging
from checkin.core.metrics import MetricsMiddleware, get_metrics
from checkin.core.middleware import RequestIDMiddleware, SecurityHeadersMiddleware
from checkin.core.rate_limit import limiter
from checkin.db.session import AsyncSessionLocal, Base, engine
from checkin.schemas.common import HealthResponse
from checkin.services.errors import CheckinError

# Import all models so they're registered with Base.metadata
from checkin.models import attendance, audit, qr_token  # noqa: F401

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Configure structured logging for SIEM integration
    configure_logging()
    logger.info(
        f"Starting {settings.APP_NAME} v{settings.APP_VERSION}",
        extra={"event_type": "system.startup", "environment": settings.ENVIRONMENT},
    )

    # IMPORTANT: Only auto-create tables in development/local environments
    # In production, use Alembic migrations: alembic upgrade head
    if settings.ENVIRONMENT in ("local", "development", "dev"):
        logger.warning(
            "Auto-creating database tables (development mode)",
            extra={"event_type": "system.startup.create_all"},
        )
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    else:
        logger.info(
            "Production mode: skipping auto-create, use Alembic migrations",
            extra={"event_type": "system.startup.migrations_required"},
        )

    yield

    logger.info("Shutting down", extra={"event_type": "system.shutdown"})
    await engine.dispose()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Signed, single-use QR tokens for attendance check-in",
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json" if settings.EXPOSE_DOCS else None,
    docs_url=f"{settings.API_V1_PREFIX}/docs" if settings.EXPOSE_DOCS else None,
    redoc_url=f"{settings.API_V1_PREFIX}/redoc" if settings.EXPOSE_DOCS else None,
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Standardized error envelope
app.add_exception_handler(CheckinError, checkin_exception_handler)
app.add_exception_handler(APIException, api_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# CORS middleware - restricted methods for security
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
)

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestIDMiddleware)


# Health check endpoint
@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """
    Health check endpoint with real connectivity verification.

    Returns 503 Service Unavailable if the database is unreachable.

    SECURITY: In production, error details are hidden to prevent
    information disclosure that could aid reconnaissance attacks.
    """
    is_production = settings.ENVIRONMENT == "production"
    db_status = "disconnected"
    overall_status = "healthy"

    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
            db_status = "connected"
    except Exception as e:
        db_status = "error" if is_production else f"error: {str(e)[:50]}"
        overall_status = "unhealthy"

    response = HealthResponse(
        status=overall_status,
        version=settings.APP_VERSION,
        database=db_status,
        timestamp=datetime.now(timezone.utc),
    )

    # Return 503 if unhealthy so load balancers can detect
    if overall_status == "unhealthy":
        return JSONResponse(
            status_code=503,
            content=response.model_dump(mode="json"),
        )

    return response


if settings.EXPOSE_METRICS:
    app.add_api_route("/metrics", get_metrics, methods=["GET"], tags=["Monitoring"], include_in_schema=False)


# Include API router
app.include_router(api_router, prefix=settings.API_V1_PREFIX)


# Root endpoint
@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "docs": f"{settings.API_V1_PREFIX}/docs" if settings.EXPOSE_DOCS else None,
    }
