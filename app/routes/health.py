"""
Health endpoint.
"""

from __future__ import annotations

import os

from fastapi import APIRouter, HTTPException
from sqlalchemy import text

import refinery.config as config
from refinery.db import DB, _get_schema_revisions


router = APIRouter()


def _check_db_health(check_schema: bool = True) -> dict:
    if DB.engine is None:
        return {"ok": False, "error": "db_not_initialized"}

    try:
        with DB.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as exc:
        return {"ok": False, "error": str(exc)}

    if not check_schema:
        return {"ok": True, "backend": config.DB_BACKEND_EFFECTIVE}

    current_rev, head_rev = _get_schema_revisions(DB.engine)
    schema_ok = head_rev is None or current_rev == head_rev
    return {
        "ok": schema_ok,
        "backend": config.DB_BACKEND_EFFECTIVE,
        "schema_revision": current_rev,
        "schema_expected": head_rev,
        "schema_up_to_date": schema_ok,
    }


@router.get("/health")
async def health():
    """Health check endpoint."""
    db_health = _check_db_health(check_schema=config.HEALTH_CHECK_SCHEMA)
    if not db_health.get("ok"):
        raise HTTPException(status_code=503, detail={"database": db_health})

    return {
        "status": "healthy",
        "service": "memory-refinery",
        "version": "0.1.0",
        "instance_id": os.environ.get("REFINERY_INSTANCE_ID", "refinery-1"),
        "database": db_health,
    }
