"""FastAPI application entry point"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from paysync.core.config import settings
from paysync.core.exceptions import ConflictError, ProviderAPIError
from paysync.core.logging import setup_logging
from paysync.core.middleware import access_log_middleware, setup_cors_middleware
from paysync.core.otel import (
    initialize_otel, setup_otel_logging, instrument_fastapi,
    instrument_httpx, instrument_sqlalchemy
)
from paysync.db import redis as redis_module
from paysync.db.session import engine, init_db
from paysync.utils.tasks import drain_background_tasks

# Import routers
from paysync.api import mercadopago, monitoring, orders, webhooks

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    otel_initialized = initialize_otel()

    if otel_initialized:
        if setup_otel_logging():
            logger.info(f"OpenTelemetry fully initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        else:
            logger.warning("OpenTelemetry metrics/traces initialized but logging setup failed")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    logger.info("Testing Redis connection...")
    if redis_module.ping():
        logger.info("Redis connection successful")
    else:
        # Alerts are still persisted; only realtime fan-out is lost
        logger.warning("Redis unavailable - realtime alerts disabled until it recovers")

    instrument_sqlalchemy(engine)

    yield

    # Shutdown
    logger.info("Shutting down, waiting for background tasks...")
    await drain_background_tasks()


# Create FastAPI app
app = FastAPI(
    title="PaySync Backend",
    description="Mercado Pago payment synchronization and webhook reconciliation",
    version="1.0.0",
    lifespan=lifespan
)

# Instrument FastAPI with OpenTelemetry
instrument_fastapi(app)

# Instrument HTTPX (all Mercado Pago calls)
instrument_httpx()

setup_cors_middleware(app)
app.middleware("http")(access_log_middleware)

# Include routers
app.include_router(mercadopago.router)
app.include_router(mercadopago.alerts_router)  # Separate router for /api/alerts
app.include_router(webhooks.router)
app.include_router(orders.router)
app.include_router(monitoring.router)


@app.exception_handler(ConflictError)
async def conflict_exception_handler(request: Request, exc: ConflictError):
    """Precondition failures carry a stable code for the client to branch on"""
    logger.info(f"Conflict on {request.method} {request.url.path}: {exc.code} - {exc.message}")
    return JSONResponse(
        status_code=exc.http_status,
        content={"detail": {"code": exc.code, "message": exc.message, **exc.details}}
    )


@app.exception_handler(ProviderAPIError)
async def provider_exception_handler(request: Request, exc: ProviderAPIError):
    """Mercado Pago rejected or failed a call made on the tenant's behalf"""
    logger.warning(f"Mercado Pago error on {request.method} {request.url.path}: {exc.status_code} {exc.message}")
    return JSONResponse(
        status_code=502,
        content={"detail": {"code": "provider_error", "message": exc.message, "provider_status": exc.status_code}}
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )
