"""
Root endpoint with service metadata.
"""

from __future__ import annotations

from fastapi import APIRouter

import refinery.config as config


router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint with service info."""
    return {
        "service": "memory-refinery",
        "version": "0.1.0",
        "description": "Self-directed core memory refinement for AI agents",
        "default_refinement_threshold": config.DEFAULT_REFINEMENT_THRESHOLD,
        "max_mutations_per_session": config.REFINEMENT_MAX_MUTATIONS,
        "endpoints": {
            "health": "/health",
            "open_session": "/agents/{agent_id}/refinement-sessions",
            "actions": "/agents/{agent_id}/refinement-sessions/{session_id}/actions",
            "audit": "/agents/{agent_id}/refinement-sessions/{session_id}/audit",
            "ledger": "/agents/{agent_id}/ledger",
            "threshold": "/agents/{agent_id}/refinement-threshold",
            "operator": "/agents/{agent_id}/memories/{memory_id}/{protect|unprotect|discard|restore}",
        },
    }
