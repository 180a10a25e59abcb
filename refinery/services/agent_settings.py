"""
Agent-authored refinement settings.

The retention threshold is the one setting an agent may change about its own
refinement. Results use the same ``type``-tagged dict shape as refinement
actions so they can be returned to the agent unchanged.
"""

from __future__ import annotations

from typing import Optional

import refinery.config as config
from refinery.db import DB
from refinery.services.memory_shared import logger, service_tool
from refinery.services.sessions import load_agent
from refinery.validators import parse_threshold

THRESHOLD_FIELD = "refinement_threshold"


def _config_result(value: float, is_default: bool) -> dict:
    return {
        "type": "config",
        "field": THRESHOLD_FIELD,
        "value": value,
        "is_default": is_default,
    }


@service_tool
def view_refinement_threshold(agent_id: int) -> dict:
    db = DB.SessionLocal()
    try:
        agent = load_agent(db, agent_id)
        return _config_result(
            agent.effective_refinement_threshold,
            agent.refinement_threshold is None,
        )
    finally:
        db.close()


@service_tool
def update_refinement_threshold(agent_id: int, value: Optional[object]) -> dict:
    """
    Set the agent's retention threshold.

    ``None`` or a blank string clears the override so the agent falls back to
    ``DEFAULT_REFINEMENT_THRESHOLD``.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        threshold = None
    else:
        threshold = parse_threshold(value)

    db = DB.SessionLocal()
    try:
        agent = load_agent(db, agent_id, for_update=True)
        agent.refinement_threshold = threshold
        db.commit()
        logger.info(
            "refinement_threshold_updated",
            extra={"agent_id": agent_id, "threshold": threshold},
        )
        if threshold is None:
            return _config_result(config.DEFAULT_REFINEMENT_THRESHOLD, True)
        return _config_result(threshold, False)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
