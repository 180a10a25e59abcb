import os

import pytest

os.environ.setdefault("DB_BACKEND", "sqlite")

from refinery.context import RefinementSession, SessionState
from refinery.db import session_scope
from refinery.errors import RollbackIntegrityError
from refinery.models import Agent, AuditAction, AuditEntry, MemoryEntry, MemoryKind
from refinery.services import memory_store
from refinery.services.refinement import RefinementController
from refinery.services.sessions import open_session


def _mass(server_db, agent_id):
    db = server_db.SessionLocal()
    try:
        return memory_store.core_mass(db, agent_id)
    finally:
        db.close()


def _memory(server_db, memory_id):
    db = server_db.SessionLocal()
    try:
        return db.get(MemoryEntry, memory_id)
    finally:
        db.close()


def test_retaining_exactly_the_threshold_commits(server_db, make_agent, add_memory):
    agent_id = make_agent()
    add_memory(agent_id, "a" * 3600)
    small = add_memory(agent_id, "b" * 400)
    controller = RefinementController(open_session(agent_id))
    assert controller.session.pre_session_mass == 1000

    controller.execute("delete", {"id": small})
    result = controller.execute("complete", {"summary": "Dropped a small memory"})

    assert result["type"] == "refinement_complete"
    assert _mass(server_db, agent_id) == 900


def test_dropping_below_threshold_rolls_back(server_db, make_agent, add_memory, db_session):
    agent_id = make_agent()
    add_memory(agent_id, "a" * 3596)
    small = add_memory(agent_id, "b" * 404)
    controller = RefinementController(open_session(agent_id))
    assert controller.session.pre_session_mass == 1000

    controller.execute("delete", {"id": small})
    result = controller.execute("complete", {"summary": "Dropped a small memory"})

    assert result["type"] == "refinement_rolled_back"
    assert result["stats"]["deleted"] == 1
    assert "retention threshold" in result["reason"]
    assert controller.session.state == SessionState.rolled_back
    assert not _memory(server_db, small).discarded
    assert _mass(server_db, agent_id) == 1000

    journal = (
        db_session.query(MemoryEntry)
        .filter(MemoryEntry.agent_id == agent_id, MemoryEntry.kind == MemoryKind.journal)
        .one()
    )
    assert "was rolled back" in journal.content
    assert "1 deletion" in journal.content

    rollback_entry = (
        db_session.query(AuditEntry)
        .filter(
            AuditEntry.session_id == controller.session.session_id,
            AuditEntry.action == AuditAction.rollback,
        )
        .one()
    )
    assert rollback_entry.payload["pre_session_mass"] == 1000
    assert rollback_entry.payload["post_session_mass"] == 899
    agent = db_session.get(Agent, agent_id)
    assert agent.refinement_session_id is None
    assert agent.last_refinement_at is not None


def test_rollback_reverses_every_mutation_kind(server_db, make_agent, add_memory, db_session):
    agent_id = make_agent()
    edited = add_memory(agent_id, "Original wording of a memory", age_days=5)
    merge_a = add_memory(agent_id, "Likes cats", age_days=4)
    merge_b = add_memory(agent_id, "Has two cats", age_days=3)
    guarded = add_memory(agent_id, "Values kindness", age_days=2)
    already = add_memory(agent_id, "Never deceive", constitutional=True, age_days=2)
    bulky = add_memory(agent_id, "z" * 4000, age_days=1)
    pre_mass = _mass(server_db, agent_id)
    controller = RefinementController(open_session(agent_id))

    controller.execute("update", {"id": edited, "content": "Short"})
    merged = controller.execute("consolidate", {"ids": f"{merge_a},{merge_b}", "content": "Has two cats"})
    assert merged["type"] == "consolidated"
    controller.execute("protect", {"id": guarded})
    controller.execute("protect", {"id": already})
    controller.execute("delete", {"id": bulky})
    result = controller.execute("complete", {"summary": "Aggressive cleanup"})

    assert result["type"] == "refinement_rolled_back"
    assert _mass(server_db, agent_id) == pre_mass
    assert _memory(server_db, edited).content == "Original wording of a memory"
    assert not _memory(server_db, merge_a).discarded
    assert not _memory(server_db, merge_b).discarded
    assert not _memory(server_db, bulky).discarded
    assert not _memory(server_db, guarded).constitutional
    # Protect reversal clears the flag even when it was set before the session.
    assert not _memory(server_db, already).constitutional

    live_contents = sorted(memory.content for memory in memory_store.core_memories(db_session, agent_id))
    assert live_contents.count("Has two cats") == 1


def test_actions_after_rollback_are_terminated(server_db, make_agent, add_memory):
    agent_id = make_agent()
    memory_id = add_memory(agent_id, "q" * 1000)
    controller = RefinementController(open_session(agent_id))
    controller.execute("delete", {"id": memory_id})
    controller.execute("complete", {"summary": "Everything goes"})

    result = controller.execute("delete", {"id": memory_id})

    assert result["type"] == "error"
    assert "terminated" in result["error"]


def test_missing_memory_aborts_the_whole_rollback(server_db, make_agent, add_memory):
    agent_id = make_agent()
    first = add_memory(agent_id, "c" * 400)
    second = add_memory(agent_id, "d" * 400)
    controller = RefinementController(open_session(agent_id))
    controller.execute("delete", {"id": first})
    controller.execute("delete", {"id": second})

    with session_scope() as db:
        db.query(MemoryEntry).filter(MemoryEntry.id == first).delete()

    with pytest.raises(RollbackIntegrityError):
        controller.execute("complete", {"summary": "Removed both"})

    assert _memory(server_db, second).discarded
    assert controller.session.state == SessionState.open


def test_rollback_of_deleted_consolidation_restores_originals(server_db, make_agent, add_memory, db_session):
    agent_id = make_agent()
    first = add_memory(agent_id, "p" * 400, age_days=3)
    second = add_memory(agent_id, "q" * 400, age_days=2)
    add_memory(agent_id, "k" * 400, age_days=1)
    pre_mass = _mass(server_db, agent_id)
    controller = RefinementController(open_session(agent_id))

    merged = controller.execute("consolidate", {"ids": [first, second], "content": "Merged p and q"})
    assert merged["type"] == "consolidated"
    merged_id = (
        db_session.query(MemoryEntry.id)
        .filter(MemoryEntry.agent_id == agent_id, MemoryEntry.content == "Merged p and q")
        .scalar()
    )
    assert controller.execute("delete", {"id": merged_id})["type"] == "deleted"
    result = controller.execute("complete", {"summary": "Merged then dropped"})

    assert result["type"] == "refinement_rolled_back"
    assert not _memory(server_db, first).discarded
    assert not _memory(server_db, second).discarded
    assert _memory(server_db, merged_id).discarded
    assert _mass(server_db, agent_id) == pre_mass


def test_rollback_journal_keeps_fractional_threshold(server_db, make_agent, add_memory, db_session):
    agent_id = make_agent(refinement_threshold=0.905)
    add_memory(agent_id, "a" * 3600)
    small = add_memory(agent_id, "b" * 400)
    controller = RefinementController(open_session(agent_id))

    controller.execute("delete", {"id": small})
    result = controller.execute("complete", {"summary": "Dropped a tenth"})

    assert result["type"] == "refinement_rolled_back"
    journal = (
        db_session.query(MemoryEntry)
        .filter(MemoryEntry.agent_id == agent_id, MemoryEntry.kind == MemoryKind.journal)
        .one()
    )
    assert "retention threshold of 90.5%" in journal.content


def test_rollback_only_reverses_its_own_agents_entries(server_db, make_agent, add_memory):
    first = make_agent(name="First")
    second = make_agent(name="Second")
    first_memory = add_memory(first, "f" * 400)
    second_small = add_memory(second, "s" * 400)
    add_memory(second, "t" * 400)
    first_controller = RefinementController(
        RefinementSession(session_id="shared", agent_id=first, pre_session_mass=100)
    )
    second_controller = RefinementController(
        RefinementSession(session_id="shared", agent_id=second, pre_session_mass=_mass(server_db, second))
    )

    assert first_controller.execute("delete", {"id": first_memory})["type"] == "deleted"
    assert second_controller.execute("delete", {"id": second_small})["type"] == "deleted"
    result = second_controller.execute("complete", {"summary": "Dropped half"})

    assert result["type"] == "refinement_rolled_back"
    assert not _memory(server_db, second_small).discarded
    assert _memory(server_db, first_memory).discarded
