"""
Liveness and readiness endpoints.

Readiness covers database connectivity and the billing tables; worker state
is reported by the admin workers endpoint instead.
"""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from pg_billing.core.database import get_engine

logger = logging.getLogger("pg_billing")

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "plans",
    "cards",
    "subscriptions",
    "billing_attempts",
    "transactions",
]


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz(request: Request):
    """Readiness check: DB connectivity + required tables."""
    engine = getattr(request.app.state, "engine", None)
    try:
        engine = engine or get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")

        inspector = inspect(engine)
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
        if missing:
            detail = f"missing tables: {', '.join(missing)}"
            logger.warning(f"[readyz] {detail}")
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

        return {"status": "ok"}
    except Exception as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
