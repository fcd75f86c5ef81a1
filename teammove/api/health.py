"""
Health endpoints for the billing service.

Liveness never touches dependencies; readiness checks the database and
the billing tables without exposing connection details.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from teammove.core.database import get_engine
from teammove.features.billing.service import billing_enabled

logger = logging.getLogger("teammove")

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "tenants",
    "tenant_subscriptions",
    "quota_counters",
    "quota_periods",
    "processed_webhook_events",
]


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
    except Exception as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    return {"status": "ok", "billing_enabled": billing_enabled()}
