"""Middleware configuration for FastAPI application"""
import logging
import time

from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware

from paysync.core.config import settings
from paysync.core.security import get_client_ip

logger = logging.getLogger(__name__)
api_access_logger = logging.getLogger("api_access")

# Polled constantly by Prometheus and the orchestrator
QUIET_PATHS = {"/metrics", "/health"}


def get_allowed_origins():
    """Get list of allowed CORS origins"""
    allowed_origins = [settings.FRONTEND_URL]
    if settings.ENVIRONMENT == "development":
        allowed_origins.extend([
            "http://localhost:3000",
            "http://localhost:8000",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:8000"
        ])
    return allowed_origins


def setup_cors_middleware(app):
    """Setup CORS middleware for FastAPI app"""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


async def access_log_middleware(request: Request, call_next):
    """Log one line per API request with tenant, status and duration"""
    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        path = request.url.path
        if path not in QUIET_PATHS:
            elapsed_ms = (time.perf_counter() - start) * 1000
            tenant_id = request.headers.get("X-Tenant-Id", "-")
            message = (
                f"{request.method} {path} - status={status_code} tenant={tenant_id} "
                f"ip={get_client_ip(request)} duration_ms={elapsed_ms:.1f}"
            )
            if status_code >= 500:
                api_access_logger.error(message)
            elif status_code >= 400:
                api_access_logger.warning(message)
            else:
                api_access_logger.info(message)
