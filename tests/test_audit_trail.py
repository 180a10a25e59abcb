import os
from datetime import datetime, timedelta

import pytest

os.environ.setdefault("DB_BACKEND", "sqlite")

from refinery.audit import entries_for_session, list_audit_entries, log_entry
from refinery.models import AuditAction, AuditEntry, AuditSubject, SubjectKind


def test_session_actions_require_session_id(db_session):
    before = db_session.query(AuditEntry).count()
    with pytest.raises(ValueError):
        log_entry(
            db_session,
            action=AuditAction.delete,
            subject=AuditSubject.memory(1),
            payload={"before": "x", "after": None},
        )
    db_session.rollback()
    assert db_session.query(AuditEntry).count() == before


def test_operator_actions_reject_session_id(db_session):
    with pytest.raises(ValueError):
        log_entry(
            db_session,
            action=AuditAction.discard,
            subject=AuditSubject.memory(1),
            session_id="s-1",
        )


def test_payload_must_be_json_serializable(db_session):
    with pytest.raises(ValueError):
        log_entry(
            db_session,
            action=AuditAction.update,
            subject=AuditSubject.memory(1),
            session_id="s-1",
            payload={"before": object()},
        )


def test_subject_is_tagged(db_session):
    entry = log_entry(
        db_session,
        action=AuditAction.complete,
        subject=AuditSubject.agent(7),
        session_id="s-1",
        payload={"summary": "done"},
    )
    db_session.commit()

    assert entry.subject == AuditSubject(kind=SubjectKind.agent, id=7)


def test_session_order_survives_clock_skew(db_session):
    first = log_entry(
        db_session,
        action=AuditAction.update,
        subject=AuditSubject.memory(1),
        session_id="s-1",
        payload={"before": "a", "after": "b"},
    )
    # A clock that jumps backwards must not reorder the session.
    first.created_at = datetime.utcnow() + timedelta(minutes=5)
    db_session.flush()
    second = log_entry(
        db_session,
        action=AuditAction.delete,
        subject=AuditSubject.memory(2),
        session_id="s-1",
        payload={"before": "c", "after": None},
    )
    db_session.commit()

    ordered = entries_for_session(db_session, "s-1")
    assert [entry.id for entry in ordered] == [first.id, second.id]
    reversed_entries = entries_for_session(db_session, "s-1", descending=True)
    assert [entry.id for entry in reversed_entries] == [second.id, first.id]


def test_list_audit_entries_paginates(db_session):
    for memory_id in range(1, 6):
        log_entry(
            db_session,
            action=AuditAction.protect,
            subject=AuditSubject.memory(memory_id),
            account_id=3,
        )
    db_session.commit()

    page = list_audit_entries(db_session, account_id=3, limit=3)
    assert page["count"] == 3
    assert page["next_cursor"] is not None

    rest = list_audit_entries(db_session, account_id=3, limit=3, cursor=page["next_cursor"])
    assert rest["count"] == 2
    assert rest["next_cursor"] is None

    seen = {entry["id"] for entry in page["entries"]} | {entry["id"] for entry in rest["entries"]}
    assert len(seen) == 5


def test_list_audit_entries_filters_by_subject(db_session):
    log_entry(db_session, action=AuditAction.protect, subject=AuditSubject.memory(1))
    log_entry(db_session, action=AuditAction.unprotect, subject=AuditSubject.memory(2))
    db_session.commit()

    result = list_audit_entries(db_session, subject=AuditSubject.memory(2))

    assert result["count"] == 1
    assert result["entries"][0]["action"] == "unprotect"
    assert result["entries"][0]["subject_type"] == "memory"
