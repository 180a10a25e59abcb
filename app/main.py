"""
FastAPI app wiring for the memory refinery.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from refinery.db import DB, init_db
from app.middleware import configure_middleware
from app.routes.health import router as health_router
from app.routes.refinement import router as refinement_router
from app.routes.root import router as root_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize on startup, cleanup on shutdown."""
    init_db()
    try:
        yield
    finally:
        if DB.engine:
            DB.engine.dispose()


app = FastAPI(title="Memory Refinery", redirect_slashes=False, lifespan=lifespan)
configure_middleware(app)

# Health and root endpoints
app.include_router(health_router)
app.include_router(root_router)

# Agent refinement endpoints
app.include_router(refinement_router)
