# backend/app/router/health.py
from __future__ import annotations
import logging
from fastapi import APIRouter, Depends, HTTPException, Request

from app.db.session import DatabasePool, ping_db
from app.db.deps import get_container
from app.models.schemas import HealthResponse

logger = logging.getLogger("geo.health")

router = APIRouter()


@router.get("/health")
def health_check(request: Request):
    """Basic health check - service is running"""
    started = getattr(request.app.state, "container", None) is not None
    return {"status": "ok" if started else "starting"}


@router.get("/health/ready", response_model=HealthResponse)
def readiness_check(container=Depends(get_container)):
    """Readiness check - the backing store answers queries"""
    try:
        records = container.store.count()
    except Exception as e:
        logger.warning(f"⚠️ Readiness check failed: {e}")
        raise HTTPException(status_code=503, detail=f"Store unavailable: {e}")
    return HealthResponse(status="ready", store_backend=container.settings.store_backend, records=records)


@router.get("/db-ping")
def db_ping():
    """Simple DB connectivity test."""
    ok, message = ping_db()
    return {"ok": ok, "message": message}


@router.get("/debug/pool-status")
def pool_status():
    """Show connection pool diagnostics."""
    pool = DatabasePool.pool
    return {
        "initialized": pool is not None,
        "pool_class": str(type(pool)) if pool else None,
        "stats": pool.get_stats() if pool else None,
    }
