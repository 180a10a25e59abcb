"""
Refinement session lifecycle: open, resume, and the per-agent lease.

At most one refinement session may be open per agent. The lease lives on the
agent row (session id, baseline mass, expiry) so that a session can be
resumed across requests and a second session cannot start from a stale
baseline. A session that is never completed keeps its mutations; its lease
simply expires.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Optional

import refinery.config as config
from refinery.audit import entries_for_session
from refinery.audit_constants import CAPPED_ACTIONS
from refinery.context import RefinementSession, RefinementStats, SessionState
from refinery.db import get_session
from refinery.errors import AgentNotFound, SessionConflictError, ValidationIssue
from refinery.models import Agent, AuditAction, as_naive_utc
from refinery.services import memory_store
from refinery.services.memory_shared import logger


def load_agent(db, agent_id: int, *, for_update: bool = False) -> Agent:
    query = db.query(Agent).filter(Agent.id == agent_id)
    if for_update:
        query = query.with_for_update()
    agent = query.first()
    if agent is None:
        raise AgentNotFound(agent_id)
    return agent


def _lease_expiry() -> datetime:
    return datetime.utcnow() + timedelta(seconds=config.REFINEMENT_LEASE_SECONDS)


def _lease_live(agent: Agent) -> bool:
    if not agent.refinement_session_id:
        return False
    expires_at = as_naive_utc(agent.refinement_lease_expires_at)
    return expires_at is not None and expires_at > datetime.utcnow()


def lease_conflict(agent: Agent, session_id: str) -> Optional[str]:
    """Return the id of another session holding a live lease, if any."""
    if _lease_live(agent) and agent.refinement_session_id != session_id:
        return agent.refinement_session_id
    return None


def renew_lease(agent: Agent, session_id: str) -> None:
    if agent.refinement_session_id == session_id:
        agent.refinement_lease_expires_at = _lease_expiry()


def release_lease(agent: Agent, session_id: str) -> None:
    if agent.refinement_session_id != session_id:
        return
    agent.refinement_session_id = None
    agent.refinement_pre_session_mass = None
    agent.refinement_lease_expires_at = None


def open_session(
    agent_id: int,
    pre_session_mass: Optional[int] = None,
    session_id: Optional[str] = None,
) -> RefinementSession:
    """
    Open a refinement session and take the agent's lease.

    When ``pre_session_mass`` is omitted the agent's current core mass is
    measured and used as the baseline.
    """
    if pre_session_mass is not None and (isinstance(pre_session_mass, bool) or not isinstance(pre_session_mass, int)):
        raise ValidationIssue(
            "pre_session_mass must be an integer",
            field="pre_session_mass",
            error_type="invalid_type",
        )
    if session_id is not None:
        session_id = session_id.strip()
        if not session_id or len(session_id) > config.MAX_SESSION_ID_LENGTH:
            raise ValidationIssue(
                f"session_id must be 1-{config.MAX_SESSION_ID_LENGTH} characters",
                field="session_id",
                error_type="invalid",
            )
    session_id = session_id or str(uuid.uuid4())

    db = get_session()
    try:
        agent = load_agent(db, agent_id, for_update=True)
        holder = agent.refinement_session_id if _lease_live(agent) else None
        if holder:
            raise SessionConflictError(
                f"Agent #{agent_id} already has an open refinement session ({holder})",
                holder_session_id=holder,
            )
        # Session ids are single-use and unique across agents.
        if entries_for_session(db, session_id):
            raise SessionConflictError(
                f"Refinement session id {session_id} has already been used",
                holder_session_id=session_id,
            )
        other = (
            db.query(Agent.id)
            .filter(Agent.refinement_session_id == session_id, Agent.id != agent.id)
            .first()
        )
        if other is not None:
            raise SessionConflictError(
                f"Refinement session id {session_id} is held by another agent",
                holder_session_id=session_id,
            )

        if pre_session_mass is None:
            pre_session_mass = memory_store.core_mass(db, agent.id)

        agent.refinement_session_id = session_id
        agent.refinement_pre_session_mass = pre_session_mass
        agent.refinement_lease_expires_at = _lease_expiry()
        db.commit()

        logger.info(
            "refinement_session_opened",
            extra={"agent_id": agent_id, "session_id": session_id, "pre_session_mass": pre_session_mass},
        )
        return RefinementSession(
            session_id=session_id,
            agent_id=agent_id,
            pre_session_mass=pre_session_mass,
        )
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _replay_state(db, session: RefinementSession) -> RefinementSession:
    stats = RefinementStats()
    mutations = 0
    state = SessionState.open
    for entry in entries_for_session(db, session.session_id, agent_id=session.agent_id):
        action = AuditAction(entry.action)
        if action in CAPPED_ACTIONS:
            mutations += 1
        if action == AuditAction.consolidate:
            stats.consolidated += len((entry.payload or {}).get("merged") or [])
        elif action == AuditAction.update:
            stats.updated += 1
        elif action == AuditAction.delete:
            stats.deleted += 1
        elif action == AuditAction.protect:
            stats.protected += 1
        elif action == AuditAction.complete:
            state = SessionState.committed
        elif action == AuditAction.rollback:
            state = SessionState.rolled_back
    session.stats = stats
    session.mutations = mutations
    session.state = state
    return session


def resume_session(agent_id: int, session_id: str) -> RefinementSession:
    """Rebuild a session from the agent's lease and the session's audit trail."""
    db = get_session()
    try:
        agent = load_agent(db, agent_id)
        pre_session_mass = None
        if agent.refinement_session_id == session_id:
            pre_session_mass = agent.refinement_pre_session_mass
        session = _replay_state(
            db,
            RefinementSession(
                session_id=session_id,
                agent_id=agent_id,
                pre_session_mass=pre_session_mass,
            ),
        )
        if session.is_open and agent.refinement_session_id != session_id:
            raise SessionConflictError(
                f"Refinement session {session_id} is not open for agent #{agent_id}",
                holder_session_id=agent.refinement_session_id,
            )
        return session
    finally:
        db.close()


__all__ = [
    "load_agent",
    "lease_conflict",
    "renew_lease",
    "release_lease",
    "open_session",
    "resume_session",
]
