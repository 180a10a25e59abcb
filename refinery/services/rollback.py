"""
Rollback engine: reverse a refinement session from its own audit trail.

Entries are undone newest first, so a memory that was consolidated and then
deleted has its deletion undone before its consolidation. Everything runs in
the caller's unit of work; any failure aborts the whole reversal.
"""

from __future__ import annotations

from datetime import datetime

from refinery.audit import entries_for_session, log_entry
from refinery.audit_constants import REPLAYABLE_ACTIONS
from refinery.context import RefinementSession, RefinementStats
from refinery.errors import MemoryNotFound, RollbackIntegrityError
from refinery.models import (
    Agent,
    AuditAction,
    AuditEntry,
    AuditSubject,
    MemoryEntry,
    MemoryKind,
    SubjectKind,
)
from refinery.services import memory_store
from refinery.services.circuit_breaker import BreakerReading
from refinery.services.memory_shared import logger


def _plural(count: int, singular: str, plural: str) -> str:
    return f"{count} {singular if count == 1 else plural}"


def describe_operations(stats: RefinementStats) -> str:
    parts = []
    if stats.consolidated:
        parts.append(_plural(stats.consolidated, "consolidated memory", "consolidated memories"))
    if stats.updated:
        parts.append(_plural(stats.updated, "update", "updates"))
    if stats.deleted:
        parts.append(_plural(stats.deleted, "deletion", "deletions"))
    if stats.protected:
        parts.append(_plural(stats.protected, "protection", "protections"))
    if not parts:
        return "no recorded operations"
    return ", ".join(parts)


def _memory_for(db, agent_id: int, entry: AuditEntry, memory_id) -> MemoryEntry:
    try:
        return memory_store.find(
            db,
            agent_id,
            int(memory_id),
            kind=None,
            include_discarded=True,
        )
    except (MemoryNotFound, TypeError, ValueError) as exc:
        raise RollbackIntegrityError(
            f"Cannot reverse {AuditAction(entry.action).value} entry #{entry.id}: "
            f"memory #{memory_id} no longer exists"
        ) from exc


def _reverse_entry(db, agent_id: int, entry: AuditEntry) -> None:
    action = AuditAction(entry.action)
    payload = entry.payload or {}

    if SubjectKind(entry.subject_type) != SubjectKind.memory:
        raise RollbackIntegrityError(
            f"Cannot reverse {action.value} entry #{entry.id}: subject is not a memory"
        )

    if action == AuditAction.delete:
        memory_store.undelete(_memory_for(db, agent_id, entry, entry.subject_id))
    elif action == AuditAction.update:
        before = payload.get("before")
        if before is not None:
            memory_store.update_content(_memory_for(db, agent_id, entry, entry.subject_id), before)
    elif action == AuditAction.consolidate:
        result_id = (payload.get("result") or {}).get("id", entry.subject_id)
        merged_memory = _memory_for(db, agent_id, entry, result_id)
        if merged_memory.constitutional:
            raise RollbackIntegrityError(
                f"Cannot reverse consolidate entry #{entry.id}: "
                f"memory #{result_id} was protected outside this session"
            )
        if not merged_memory.discarded:
            memory_store.soft_delete(merged_memory)
        for original in payload.get("merged") or []:
            memory_store.undelete(_memory_for(db, agent_id, entry, original.get("id")))
    elif action == AuditAction.protect:
        # Session-scoped and unconditional: every protect issued in the
        # session is cleared, whether or not the flag was already set.
        memory_store.set_constitutional(_memory_for(db, agent_id, entry, entry.subject_id), False)


def rollback_session(
    db,
    agent: Agent,
    session: RefinementSession,
    reading: BreakerReading,
) -> str:
    """
    Reverse every mutation of ``session`` and record the rollback.

    ``reading.post_session_mass`` must be measured before this call. Returns
    the human-readable reason the session was rolled back.
    """
    entries = entries_for_session(
        db,
        session.session_id,
        agent_id=agent.id,
        descending=True,
        actions=REPLAYABLE_ACTIONS,
    )
    for entry in entries:
        _reverse_entry(db, agent.id, entry)

    reason = reading.reason()
    stats = session.stats.as_dict()
    log_entry(
        db,
        action=AuditAction.rollback,
        subject=AuditSubject.agent(agent.id),
        agent_id=agent.id,
        account_id=agent.account_id,
        session_id=session.session_id,
        payload={
            "session_id": session.session_id,
            "pre_session_mass": reading.pre_session_mass,
            "post_session_mass": reading.post_session_mass,
            "threshold": reading.threshold,
            "stats": stats,
        },
    )

    memory_store.create(
        db,
        agent.id,
        (
            f"Refinement session {session.session_id} was rolled back. "
            f"It attempted a {reading.reduction_percent:.1f}% reduction of core memory "
            f"(from {reading.pre_session_mass} to {reading.post_session_mass} tokens), "
            f"which fell below my retention threshold of {reading.threshold:.1%}. "
            f"Reversed: {describe_operations(session.stats)}."
        ),
        MemoryKind.journal,
    )

    agent.last_refinement_at = datetime.utcnow()

    logger.warning(
        "refinement_rolled_back",
        extra={
            "agent_id": agent.id,
            "session_id": session.session_id,
            "reversed_entries": len(entries),
            "pre_session_mass": reading.pre_session_mass,
            "post_session_mass": reading.post_session_mass,
            "threshold": reading.threshold,
        },
    )
    return reason
