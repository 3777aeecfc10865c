"""
Health endpoints for the RuleFlow backend.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from sqlalchemy import text

from ...core.clock import utcnow
from ...core.db import engine


router = APIRouter(prefix="/api/v1/health", tags=["health"])


@router.get("")
def health() -> dict:
    db_ok = True
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as exc:
        logging.getLogger("health").warning("Database health check failed: %s", exc)
        db_ok = False
    return {"status": "ok" if db_ok else "degraded", "database": db_ok, "timestamp_utc": utcnow().isoformat()}


@router.get("/scheduler")
def scheduler_health(request: Request) -> dict:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        return {"enabled": False, "running": False, "last_tick": None}
    return {"enabled": True, **scheduler.status()}
