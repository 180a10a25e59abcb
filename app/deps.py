"""
Dependency helpers for the FastAPI app.
"""

from __future__ import annotations

from typing import Generator

from refinery.db import DB


def get_db_session() -> Generator:
    if DB.SessionLocal is None:
        raise RuntimeError("Database not initialized - SessionLocal is None")
    db = DB.SessionLocal()
    try:
        yield db
    finally:
        db.close()
