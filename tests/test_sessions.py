import os
from datetime import datetime, timedelta

import pytest

os.environ.setdefault("DB_BACKEND", "sqlite")

from refinery.context import SessionState
from refinery.db import session_scope
from refinery.errors import AgentNotFound, SessionConflictError, ValidationIssue
from refinery.models import Agent
from refinery.services.refinement import RefinementController
from refinery.services.sessions import open_session, resume_session


def test_open_session_measures_baseline_and_takes_lease(server_db, make_agent, add_memory, db_session):
    agent_id = make_agent()
    add_memory(agent_id, "m" * 80)

    session = open_session(agent_id)

    assert session.pre_session_mass == 20
    assert session.state == SessionState.open
    agent = db_session.get(Agent, agent_id)
    assert agent.refinement_session_id == session.session_id
    assert agent.refinement_pre_session_mass == 20
    assert agent.refinement_lease_expires_at is not None


def test_explicit_baseline_is_kept(server_db, make_agent, add_memory):
    agent_id = make_agent()
    add_memory(agent_id, "m" * 80)

    session = open_session(agent_id, pre_session_mass=500, session_id="caller-chosen")

    assert session.session_id == "caller-chosen"
    assert session.pre_session_mass == 500


def test_second_session_conflicts_while_lease_is_live(server_db, make_agent):
    agent_id = make_agent()
    first = open_session(agent_id)

    with pytest.raises(SessionConflictError) as excinfo:
        open_session(agent_id)
    assert excinfo.value.holder_session_id == first.session_id


def test_expired_lease_can_be_taken_over(server_db, make_agent):
    agent_id = make_agent()
    open_session(agent_id, session_id="abandoned")
    with session_scope() as db:
        agent = db.get(Agent, agent_id)
        agent.refinement_lease_expires_at = datetime.utcnow() - timedelta(seconds=1)

    session = open_session(agent_id, session_id="fresh")

    assert session.session_id == "fresh"


def test_ended_session_cannot_be_reopened(server_db, make_agent, add_memory):
    agent_id = make_agent()
    add_memory(agent_id, "Something to keep")
    controller = RefinementController(open_session(agent_id, session_id="once"))
    controller.execute("complete", {"summary": "Done"})

    with pytest.raises(SessionConflictError):
        open_session(agent_id, session_id="once")


def test_open_session_validates_inputs(server_db, make_agent):
    agent_id = make_agent()

    with pytest.raises(AgentNotFound):
        open_session(agent_id + 100)
    with pytest.raises(ValidationIssue):
        open_session(agent_id, pre_session_mass="lots")
    with pytest.raises(ValidationIssue):
        open_session(agent_id, session_id="s" * 65)


def test_resume_rebuilds_stats_from_audit_trail(server_db, make_agent, add_memory):
    agent_id = make_agent()
    a = add_memory(agent_id, "First memory")
    b = add_memory(agent_id, "Second memory")
    c = add_memory(agent_id, "Third memory")
    controller = RefinementController(open_session(agent_id, pre_session_mass=10_000, session_id="resumable"))
    controller.execute("consolidate", {"ids": f"{a},{b}", "content": "First and second memory"})
    controller.execute("protect", {"id": c})

    resumed = resume_session(agent_id, "resumable")

    assert resumed.pre_session_mass == 10_000
    assert resumed.stats.as_dict() == {"consolidated": 2, "updated": 0, "deleted": 0, "protected": 1}
    assert resumed.mutations == 1
    assert resumed.is_open


def test_resume_reports_terminal_state(server_db, make_agent, add_memory):
    agent_id = make_agent()
    add_memory(agent_id, "Stays")
    controller = RefinementController(open_session(agent_id, session_id="finished"))
    controller.execute("complete", {"summary": "Nothing changed"})

    resumed = resume_session(agent_id, "finished")

    assert resumed.state == SessionState.committed
    result = RefinementController(resumed).execute("search", {"query": "Stays"})
    assert "terminated" in result["error"]


def test_resume_without_lease_conflicts(server_db, make_agent):
    agent_id = make_agent()
    open_session(agent_id, session_id="owner")

    with pytest.raises(SessionConflictError):
        resume_session(agent_id, "stranger")


def test_abandoned_session_id_cannot_be_reopened(server_db, make_agent, add_memory):
    agent_id = make_agent()
    memory_id = add_memory(agent_id, "Edited then abandoned")
    controller = RefinementController(open_session(agent_id, session_id="abandoned"))
    controller.execute("update", {"id": memory_id, "content": "Edited"})
    with session_scope() as db:
        agent = db.get(Agent, agent_id)
        agent.refinement_lease_expires_at = datetime.utcnow() - timedelta(seconds=1)

    with pytest.raises(SessionConflictError) as excinfo:
        open_session(agent_id, session_id="abandoned")
    assert "already been used" in str(excinfo.value)


def test_session_id_is_unique_across_agents(server_db, make_agent, add_memory):
    first = make_agent(name="First")
    second = make_agent(name="Second")
    open_session(first, session_id="shared")

    with pytest.raises(SessionConflictError) as excinfo:
        open_session(second, session_id="shared")
    assert "another agent" in str(excinfo.value)

    memory_id = add_memory(first, "First agent memory")
    RefinementController(resume_session(first, "shared")).execute("delete", {"id": memory_id})
    with session_scope() as db:
        agent = db.get(Agent, first)
        agent.refinement_lease_expires_at = datetime.utcnow() - timedelta(seconds=1)

    with pytest.raises(SessionConflictError) as excinfo:
        open_session(second, session_id="shared")
    assert "already been used" in str(excinfo.value)
