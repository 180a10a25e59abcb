"""
Operator memory actions and audit trail reads.

Operators (humans, not the agent) can protect, unprotect, discard and
restore memories outside any refinement session. These entries carry no
session id, so rollback never replays them.
"""

from __future__ import annotations

from typing import Callable, Optional

import refinery.config as config
from refinery.audit import entries_for_session, list_audit_entries, log_entry, serialize_entry
from refinery.db import DB
from refinery.errors import ConstitutionalMemoryError, SessionConflictError, ValidationIssue
from refinery.models import AuditAction, AuditSubject, MemoryEntry
from refinery.services import memory_store
from refinery.services.memory_shared import (
    AUDIT_LIST_LIMIT_DEFAULT,
    AUDIT_LIST_LIMIT_MAX,
    logger,
    service_tool,
)
from refinery.services.sessions import lease_conflict, load_agent
from refinery.validators import parse_memory_id, validate_limit, validate_optional_text


def _operator_action(
    agent_id: int,
    memory_id,
    action: AuditAction,
    apply: Callable[[MemoryEntry], Optional[dict]],
    *,
    include_discarded: bool = False,
) -> dict:
    memory_id = parse_memory_id(memory_id)
    db = DB.SessionLocal()
    try:
        agent = load_agent(db, agent_id, for_update=True)
        holder = lease_conflict(agent, None)
        if holder:
            raise SessionConflictError(
                f"Agent #{agent_id} is in refinement session {holder}; operator changes must wait",
                holder_session_id=holder,
            )
        memory = memory_store.find(
            db,
            agent.id,
            memory_id,
            kind=None,
            include_discarded=include_discarded,
        )
        payload = apply(memory) or {}
        log_entry(
            db,
            action=action,
            subject=AuditSubject.memory(memory.id),
            agent_id=agent.id,
            account_id=agent.account_id,
            payload=payload,
        )
        db.commit()
        logger.info(
            "operator_memory_action",
            extra={"agent_id": agent_id, "memory_id": memory_id, "action": action.value},
        )
        return {
            "type": action.value,
            "id": memory.id,
            "constitutional": bool(memory.constitutional),
            "discarded": memory.discarded,
        }
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@service_tool
def protect_memory(agent_id: int, memory_id) -> dict:
    return _operator_action(
        agent_id,
        memory_id,
        AuditAction.protect,
        lambda memory: memory_store.set_constitutional(memory, True),
    )


@service_tool
def unprotect_memory(agent_id: int, memory_id) -> dict:
    return _operator_action(
        agent_id,
        memory_id,
        AuditAction.unprotect,
        lambda memory: memory_store.set_constitutional(memory, False),
    )


def _discard(memory: MemoryEntry) -> dict:
    if memory.constitutional:
        raise ConstitutionalMemoryError(
            f"Cannot discard constitutional memory #{memory.id}; unprotect it first",
            memory_ids=[memory.id],
        )
    memory_store.soft_delete(memory)
    return {"before": memory.content}


@service_tool
def discard_memory(agent_id: int, memory_id) -> dict:
    return _operator_action(agent_id, memory_id, AuditAction.discard, _discard)


@service_tool
def restore_memory(agent_id: int, memory_id) -> dict:
    return _operator_action(
        agent_id,
        memory_id,
        AuditAction.restore,
        memory_store.undelete,
        include_discarded=True,
    )


@service_tool
def session_audit_trail(agent_id: int, session_id: str) -> dict:
    """Return one session's entries in mutation order."""
    validate_optional_text(session_id, "session_id", config.MAX_SESSION_ID_LENGTH)
    db = DB.SessionLocal()
    try:
        agent = load_agent(db, agent_id)
        rows = entries_for_session(db, session_id, agent_id=agent.id)
        return {
            "type": "audit_trail",
            "session_id": session_id,
            "count": len(rows),
            "entries": [serialize_entry(row) for row in rows],
        }
    finally:
        db.close()


@service_tool
def audit_entries(
    account_id: Optional[int] = None,
    session_id: Optional[str] = None,
    action: Optional[str] = None,
    memory_id=None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    limit: int = AUDIT_LIST_LIMIT_DEFAULT,
    cursor: Optional[int] = None,
) -> dict:
    validate_limit(limit, "limit", AUDIT_LIST_LIMIT_MAX)
    subject = AuditSubject.memory(parse_memory_id(memory_id, field="memory_id")) if memory_id is not None else None
    db = DB.SessionLocal()
    try:
        return list_audit_entries(
            db,
            account_id=account_id,
            session_id=session_id,
            action=action,
            subject=subject,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            cursor=cursor,
        )
    except ValueError as exc:
        if isinstance(exc, ValidationIssue):
            raise
        raise ValidationIssue(str(exc), field="filters", error_type="invalid") from exc
    finally:
        db.close()
