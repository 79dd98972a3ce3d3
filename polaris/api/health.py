"""
Health and diagnostics API for the Polaris billing service.

Provides lightweight endpoints for operational monitoring without exposing secrets.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from pydantic import BaseModel
import time

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from polaris.core.database import check_connection, get_engine
from polaris.core.logging import latency_bucket_ms, get_request_id

logger = logging.getLogger("polaris")

router = APIRouter(prefix="/api/health", tags=["health"])
root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "subscriptions",
    "payments",
    "webhook_events",
    "user_profiles",
]


class DBHealth(BaseModel):
    """Database health status."""
    connected: bool
    latency_ms: Optional[float] = None  # Can be None for determinism in tests
    tables_present: list[str] = []


class HealthResponse(BaseModel):
    """Health check response."""
    ok: bool
    db: DBHealth
    computed_at: str  # UTC ISO format


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + billing tables."""
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")

        inspector = inspect(engine)
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
        if missing:
            detail = f"missing tables: {', '.join(missing)}"
            logger.warning("readyz.missing_tables", extra={"status": 503})
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

        return {"status": "ok"}
    except Exception as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})


@router.get("/db", response_model=HealthResponse)
def health_db(now: Optional[str] = Query(None)):
    """
    Check database health and connectivity.

    Safe to expose: returns no secrets, credentials, or stack traces.

    Args:
        now: Optional ISO timestamp for deterministic testing (overrides system time)
    """
    start = time.perf_counter()
    is_connected = check_connection()
    latency_ms = (time.perf_counter() - start) * 1000

    db_health = DBHealth(
        connected=is_connected,
        latency_ms=None if now else latency_ms,
    )

    if is_connected:
        try:
            db_health.tables_present = sorted(inspect(get_engine()).get_table_names())
        except Exception as e:
            logger.warning(f"[health] Failed to list tables: {e}")

    logger.info(
        "health.db",
        extra={
            "request_id": get_request_id(),
            "status": "ok" if is_connected else "down",
            "latency_bucket": latency_bucket_ms(latency_ms if now is None else None),
        },
    )

    return HealthResponse(
        ok=is_connected,
        db=db_health,
        computed_at=now or datetime.now(timezone.utc).isoformat(),
    )
