"""
Refinement session endpoints.

Action results are returned exactly as the controller produced them,
including ``{"type": "error"}`` results, so the caller can hand them back to
the agent. Only failures to reach a session map to HTTP errors.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from app.deps import get_db_session
from refinery.errors import AgentNotFound, SessionConflictError, ValidationIssue
from refinery.services import agent_settings, memory_admin, memory_store
from refinery.services.refinement import RefinementController
from refinery.services.sessions import load_agent, open_session, resume_session


router = APIRouter(prefix="/agents/{agent_id}")


class OpenSessionRequest(BaseModel):
    pre_session_mass: Optional[int] = None
    session_id: Optional[str] = None


class ActionRequest(BaseModel):
    action: str
    params: dict[str, Any] = Field(default_factory=dict)


class ThresholdRequest(BaseModel):
    value: Optional[Any] = None


def _http_error(exc: ValidationIssue) -> HTTPException:
    if isinstance(exc, AgentNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, SessionConflictError):
        return HTTPException(
            status_code=409,
            detail={"error": str(exc), "holder_session_id": exc.holder_session_id},
        )
    return HTTPException(status_code=400, detail={"error": str(exc), "field": exc.field})


def _tool_response(result: dict) -> dict:
    if result.get("type") == "error" and "holder_session_id" in result:
        raise HTTPException(status_code=409, detail=result)
    if result.get("type") == "error":
        raise HTTPException(status_code=400, detail=result)
    return result


def require_agent(agent_id: int, db=Depends(get_db_session)) -> int:
    try:
        load_agent(db, agent_id)
    except AgentNotFound as exc:
        raise _http_error(exc) from exc
    return agent_id


@router.post("/refinement-sessions", status_code=201)
def start_refinement_session(agent_id: int, body: Optional[OpenSessionRequest] = None):
    body = body or OpenSessionRequest()
    try:
        session = open_session(
            agent_id,
            pre_session_mass=body.pre_session_mass,
            session_id=body.session_id,
        )
    except ValidationIssue as exc:
        raise _http_error(exc) from exc
    return session.as_dict()


@router.post("/refinement-sessions/{session_id}/actions")
def run_refinement_action(agent_id: int, session_id: str, body: ActionRequest):
    try:
        session = resume_session(agent_id, session_id)
    except ValidationIssue as exc:
        raise _http_error(exc) from exc
    return RefinementController(session).execute(body.action, body.params)


@router.get("/refinement-sessions/{session_id}/audit")
def get_session_audit(session_id: str, agent_id: int = Depends(require_agent)):
    return _tool_response(memory_admin.session_audit_trail(agent_id, session_id))


@router.get("/ledger")
def get_memory_ledger(agent_id: int = Depends(require_agent), db=Depends(get_db_session)):
    memories = memory_store.prompt_memories(db, agent_id)
    return {
        "agent_id": agent_id,
        "ledger": memory_store.format_memory_ledger(memories),
        "memories": [memory_store.ledger_entry(memory) for memory in memories],
        "status": memory_store.refinement_status(db, agent_id),
    }


@router.get("/refinement-threshold")
def get_refinement_threshold(agent_id: int = Depends(require_agent)):
    return _tool_response(agent_settings.view_refinement_threshold(agent_id))


@router.put("/refinement-threshold")
def put_refinement_threshold(body: ThresholdRequest, agent_id: int = Depends(require_agent)):
    return _tool_response(agent_settings.update_refinement_threshold(agent_id, body.value))


_OPERATOR_ACTIONS = {
    "protect": memory_admin.protect_memory,
    "unprotect": memory_admin.unprotect_memory,
    "discard": memory_admin.discard_memory,
    "restore": memory_admin.restore_memory,
}


@router.post("/memories/{memory_id}/{operation}")
def run_operator_action(memory_id: int, operation: str, agent_id: int = Depends(require_agent)):
    handler = _OPERATOR_ACTIONS.get(operation)
    if handler is None:
        raise HTTPException(status_code=404, detail=f"Unknown memory operation '{operation}'")
    return _tool_response(handler(agent_id, memory_id))
