"""
Audit trail helpers (append-only, DB-only).

Refinement entries carry before/after content so that a session can be
reversed from its own trail; nothing here ever updates or deletes a row.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import and_, or_

import refinery.config as config
from refinery.audit_constants import OPERATOR_ACTIONS, SESSION_ACTIONS
from refinery.models import AuditAction, AuditEntry, AuditSubject, SubjectKind, as_naive_utc

MAX_SESSION_ID_LENGTH = config.MAX_SESSION_ID_LENGTH


def _coerce_action(action: Any) -> AuditAction:
    try:
        return AuditAction(action)
    except ValueError as exc:
        allowed = "|".join(member.value for member in AuditAction)
        raise ValueError(f"action must be one of: {allowed}") from exc


def _validate_payload(payload: Any) -> dict:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValueError("payload must be a dict")
    try:
        json.dumps(payload)
    except (TypeError, ValueError) as exc:
        raise ValueError("payload must be JSON-serializable") from exc
    return payload


def _next_created_at(db, session_id: Optional[str]) -> datetime:
    now = datetime.utcnow()
    if not session_id:
        return now
    last = (
        db.query(AuditEntry.created_at)
        .filter(AuditEntry.session_id == session_id)
        .order_by(AuditEntry.created_at.desc(), AuditEntry.id.desc())
        .first()
    )
    if last is None:
        return now
    last_at = as_naive_utc(last[0])
    # Replay order depends on timestamps never going backwards within a session.
    return last_at if last_at > now else now


def log_entry(
    db,
    *,
    action: AuditAction | str,
    subject: AuditSubject,
    agent_id: Optional[int] = None,
    account_id: Optional[int] = None,
    session_id: Optional[str] = None,
    payload: Optional[dict] = None,
) -> AuditEntry:
    """
    Append an audit entry to the current unit of work.

    The caller owns the transaction: the entry is flushed so it gets its id,
    and it commits or rolls back together with the mutation it describes.
    """
    action = _coerce_action(action)
    if not isinstance(subject, AuditSubject):
        raise ValueError("subject must be an AuditSubject")

    if session_id is not None:
        if not isinstance(session_id, str) or not session_id.strip():
            raise ValueError("session_id must be a non-empty string")
        if len(session_id) > MAX_SESSION_ID_LENGTH:
            raise ValueError("session_id value too long")
        if action not in SESSION_ACTIONS:
            raise ValueError(f"{action.value} entries cannot carry a session_id")
    elif action not in OPERATOR_ACTIONS:
        raise ValueError(f"{action.value} entries require a session_id")

    entry = AuditEntry(
        created_at=_next_created_at(db, session_id),
        action=action,
        subject_type=subject.kind,
        subject_id=subject.id,
        agent_id=agent_id,
        account_id=account_id,
        session_id=session_id,
        payload=_validate_payload(payload),
    )
    db.add(entry)
    db.flush()
    return entry


def entries_for_session(
    db,
    session_id: str,
    *,
    agent_id: Optional[int] = None,
    descending: bool = False,
    actions: Optional[Iterable[AuditAction]] = None,
) -> list[AuditEntry]:
    """Return a session's entries in mutation order (or exact reverse)."""
    query = db.query(AuditEntry).filter(AuditEntry.session_id == session_id)
    if agent_id is not None:
        query = query.filter(AuditEntry.agent_id == agent_id)
    if actions is not None:
        query = query.filter(AuditEntry.action.in_(list(actions)))
    if descending:
        query = query.order_by(AuditEntry.created_at.desc(), AuditEntry.id.desc())
    else:
        query = query.order_by(AuditEntry.created_at.asc(), AuditEntry.id.asc())
    return query.all()


def serialize_entry(row: AuditEntry) -> dict:
    return {
        "id": row.id,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "action": AuditAction(row.action).value,
        "subject_type": SubjectKind(row.subject_type).value,
        "subject_id": row.subject_id,
        "agent_id": row.agent_id,
        "account_id": row.account_id,
        "session_id": row.session_id,
        "payload": row.payload,
    }


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return as_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def list_audit_entries(
    db,
    *,
    account_id: Optional[int] = None,
    session_id: Optional[str] = None,
    action: Optional[str] = None,
    subject: Optional[AuditSubject] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    limit: int = 100,
    cursor: Optional[int] = None,
) -> dict:
    """
    Query audit entries with optional filtering and cursor pagination.
    """
    if limit <= 0:
        raise ValueError("limit must be positive")

    query = db.query(AuditEntry)
    if account_id is not None:
        query = query.filter(AuditEntry.account_id == account_id)
    if session_id:
        query = query.filter(AuditEntry.session_id == session_id)
    if action:
        query = query.filter(AuditEntry.action == _coerce_action(action))
    if subject is not None:
        query = query.filter(
            AuditEntry.subject_type == subject.kind,
            AuditEntry.subject_id == subject.id,
        )

    dt_from = _parse_dt(date_from)
    dt_to = _parse_dt(date_to)
    if dt_from:
        query = query.filter(AuditEntry.created_at >= dt_from)
    if dt_to:
        query = query.filter(AuditEntry.created_at <= dt_to)

    if cursor:
        cursor_entry = db.get(AuditEntry, cursor)
        if cursor_entry:
            query = query.filter(
                or_(
                    AuditEntry.created_at < cursor_entry.created_at,
                    and_(
                        AuditEntry.created_at == cursor_entry.created_at,
                        AuditEntry.id < cursor_entry.id,
                    ),
                )
            )

    rows = (
        query.order_by(AuditEntry.created_at.desc(), AuditEntry.id.desc())
        .limit(limit)
        .all()
    )
    next_cursor = rows[-1].id if len(rows) == limit else None
    return {
        "status": "ok",
        "count": len(rows),
        "entries": [serialize_entry(row) for row in rows],
        "next_cursor": next_cursor,
    }


__all__ = [
    "AuditEntry",
    "log_entry",
    "entries_for_session",
    "serialize_entry",
    "list_audit_entries",
]
