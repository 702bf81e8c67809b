"""
Health endpoints for the StoryTime backend.

Lightweight probes for the hosting platform; no secrets are exposed.
"""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from storytime.core.database import check_connection

logger = logging.getLogger("storytime")

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz(request: Request):
    """Readiness check: DB connectivity + users table."""
    required_tables = ["users"]
    engine = request.app.state.engine

    if not check_connection(engine):
        logger.error("[readyz] database unreachable")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    inspector = inspect(engine)
    missing = [t for t in required_tables if not inspector.has_table(t)]
    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    return {"status": "ok", "billing_enabled": request.app.state.billing.enabled}
