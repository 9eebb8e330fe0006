"""Monitoring API routes for health checks and metrics"""
from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from paysync.core.metrics import update_active_attempts_gauge, update_stale_events_gauge
from paysync.db import redis as redis_module
from paysync.db.session import get_db

router = APIRouter(tags=["monitoring"])


@router.get("/metrics")
def metrics_endpoint(db: Session = Depends(get_db)):
    """Prometheus metrics endpoint - updates gauges before export"""
    update_stale_events_gauge(db)
    update_active_attempts_gauge(db)
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/health")
def health_check(db: Session = Depends(get_db)):
    """Health check endpoint. Redis is reported but only the database is required."""
    try:
        db.execute(text("SELECT 1"))
        database_ok = True
    except SQLAlchemyError:
        database_ok = False

    payload = {
        "status": "healthy" if database_ok else "unhealthy",
        "database": database_ok,
        "redis": redis_module.ping(),
    }
    return JSONResponse(status_code=200 if database_ok else 503, content=payload)
