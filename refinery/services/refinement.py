"""
Refinement session controller.

The agent curates its own core memories through a single ``execute`` entry
point. Every mutating action commits together with its audit entry; the
terminal ``complete`` action measures the session against the agent's
retention threshold and either commits it or rolls the whole session back.
"""

from __future__ import annotations

from datetime import datetime
from typing import Mapping, Optional

import refinery.config as config
from refinery.audit import log_entry
from refinery.context import RefinementSession, RefinementStats, SessionState
from refinery.db import session_scope
from refinery.errors import ConstitutionalMemoryError, SessionConflictError, ValidationIssue
from refinery.models import Agent, AuditAction, AuditSubject, MemoryKind
from refinery.services import memory_store
from refinery.services.circuit_breaker import evaluate_breaker
from refinery.services.memory_shared import (
    MAX_MEMORY_CONTENT_LENGTH,
    MAX_QUERY_LENGTH,
    MAX_SUMMARY_LENGTH,
    error_result,
    logger,
    service_tool,
)
from refinery.services.rollback import rollback_session
from refinery.services.sessions import lease_conflict, load_agent, release_lease, renew_lease
from refinery.validators import parse_memory_id, parse_memory_ids, validate_required_text

ACTIONS = ("search", "consolidate", "update", "delete", "protect", "complete")


def _require(params: Mapping, name: str, action: str) -> str:
    value = params.get(name)
    if isinstance(value, (list, tuple)):
        value = ",".join(str(item) for item in value)
    if value is None or not str(value).strip():
        raise ValidationIssue(f"{name} is required for {action}", field=name, error_type="required")
    return str(value)


class RefinementController:
    """Dispatches refinement actions for one open session."""

    def __init__(self, session: RefinementSession, max_mutations: Optional[int] = None):
        self.session = session
        self.max_mutations = config.REFINEMENT_MAX_MUTATIONS if max_mutations is None else max_mutations

    @property
    def stats(self) -> RefinementStats:
        return self.session.stats

    def execute(self, action: str, params: Optional[Mapping] = None) -> dict:
        params = dict(params or {})
        logger.info(
            "refinement_action",
            extra={
                "agent_id": self.session.agent_id,
                "session_id": self.session.session_id,
                "action": action,
            },
        )
        if action not in ACTIONS:
            return error_result(f"Invalid action '{action}'", allowed_actions=list(ACTIONS))
        if not self.session.is_open:
            return error_result(
                f"Refinement session {self.session.session_id} has been terminated "
                f"({self.session.state.value}); no further actions are accepted"
            )
        handler = getattr(self, f"_{action}_action")
        return handler(params)

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _mutation_agent(self, db) -> Agent:
        agent = load_agent(db, self.session.agent_id, for_update=True)
        holder = lease_conflict(agent, self.session.session_id)
        if holder:
            raise SessionConflictError(
                f"Another refinement session ({holder}) is open for this agent",
                holder_session_id=holder,
            )
        renew_lease(agent, self.session.session_id)
        return agent

    def _hard_cap_error(self) -> Optional[dict]:
        if self.session.mutations < self.max_mutations:
            return None
        return error_result(
            f"Hard cap of {self.max_mutations} mutations reached for this session. "
            "Call complete to finish."
        )

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    @service_tool
    def _search_action(self, params: Mapping) -> dict:
        query = _require(params, "query", "search").strip()
        validate_required_text(query, "query", MAX_QUERY_LENGTH)

        with session_scope() as db:
            results = [
                memory_store.ledger_entry(memory)
                for memory in memory_store.search(db, self.session.agent_id, query)
            ]
        return {"type": "search_results", "query": query, "count": len(results), "results": results}

    @service_tool
    def _consolidate_action(self, params: Mapping) -> dict:
        ids = _require(params, "ids", "consolidate")
        content = _require(params, "content", "consolidate")
        memory_ids = parse_memory_ids(ids)
        if len(memory_ids) < 2:
            return error_result("consolidate requires at least 2 memory IDs")
        validate_required_text(content, "content", MAX_MEMORY_CONTENT_LENGTH)
        capped = self._hard_cap_error()
        if capped:
            return capped

        with session_scope() as db:
            agent = self._mutation_agent(db)
            memories = memory_store.find_many(db, agent.id, memory_ids)
            constitutional = [memory.id for memory in memories if memory.constitutional]
            if constitutional:
                raise ConstitutionalMemoryError(
                    "Cannot consolidate constitutional memories: "
                    + ", ".join(str(memory_id) for memory_id in constitutional),
                    memory_ids=constitutional,
                )

            earliest = min(memory.created_at for memory in memories)
            new_memory = memory_store.create(
                db,
                agent.id,
                content,
                MemoryKind.core,
                created_at=earliest,
            )
            merged = [{"id": memory.id, "content": memory.content} for memory in memories]
            for memory in memories:
                memory_store.soft_delete(memory)

            log_entry(
                db,
                action=AuditAction.consolidate,
                subject=AuditSubject.memory(new_memory.id),
                agent_id=agent.id,
                account_id=agent.account_id,
                session_id=self.session.session_id,
                payload={
                    "merged": merged,
                    "result": {"id": new_memory.id, "content": new_memory.content},
                },
            )
            new_content = new_memory.content

        self.session.stats.consolidated += len(memories)
        self.session.mutations += 1
        return {"type": "consolidated", "merged_count": len(memories), "new_content": new_content}

    @service_tool
    def _update_action(self, params: Mapping) -> dict:
        memory_id = parse_memory_id(_require(params, "id", "update"))
        content = _require(params, "content", "update")
        validate_required_text(content, "content", MAX_MEMORY_CONTENT_LENGTH)
        capped = self._hard_cap_error()
        if capped:
            return capped

        with session_scope() as db:
            agent = self._mutation_agent(db)
            memory = memory_store.find(db, agent.id, memory_id)
            before = memory.content
            memory_store.update_content(memory, content)
            log_entry(
                db,
                action=AuditAction.update,
                subject=AuditSubject.memory(memory.id),
                agent_id=agent.id,
                account_id=agent.account_id,
                session_id=self.session.session_id,
                payload={"before": before, "after": memory.content},
            )
            result = {"type": "updated", "id": memory.id, "content": memory.content}

        self.session.stats.updated += 1
        self.session.mutations += 1
        return result

    @service_tool
    def _delete_action(self, params: Mapping) -> dict:
        memory_id = parse_memory_id(_require(params, "id", "delete"))
        capped = self._hard_cap_error()
        if capped:
            return capped

        with session_scope() as db:
            agent = self._mutation_agent(db)
            memory = memory_store.find(db, agent.id, memory_id)
            if memory.constitutional:
                raise ConstitutionalMemoryError(
                    f"Cannot delete constitutional memory #{memory.id}",
                    memory_ids=[memory.id],
                )
            log_entry(
                db,
                action=AuditAction.delete,
                subject=AuditSubject.memory(memory.id),
                agent_id=agent.id,
                account_id=agent.account_id,
                session_id=self.session.session_id,
                payload={"before": memory.content, "after": None},
            )
            memory_store.soft_delete(memory)

        self.session.stats.deleted += 1
        self.session.mutations += 1
        return {"type": "deleted", "id": memory_id}

    @service_tool
    def _protect_action(self, params: Mapping) -> dict:
        memory_id = parse_memory_id(_require(params, "id", "protect"))

        with session_scope() as db:
            agent = self._mutation_agent(db)
            memory = memory_store.find(db, agent.id, memory_id)
            memory_store.set_constitutional(memory, True)
            log_entry(
                db,
                action=AuditAction.protect,
                subject=AuditSubject.memory(memory.id),
                agent_id=agent.id,
                account_id=agent.account_id,
                session_id=self.session.session_id,
                payload={},
            )
            result = {"type": "protected", "id": memory.id, "content": memory.content}

        self.session.stats.protected += 1
        return result

    @service_tool
    def _complete_action(self, params: Mapping) -> dict:
        summary = _require(params, "summary", "complete").strip()
        validate_required_text(summary, "summary", MAX_SUMMARY_LENGTH)
        session = self.session

        with session_scope() as db:
            agent = self._mutation_agent(db)
            threshold = agent.effective_refinement_threshold
            reading = evaluate_breaker(
                session.pre_session_mass,
                memory_store.core_mass(db, agent.id),
                threshold,
            )
            stats = session.stats.as_dict()

            if reading.tripped:
                reason = rollback_session(db, agent, session, reading)
            else:
                reason = None
                log_entry(
                    db,
                    action=AuditAction.complete,
                    subject=AuditSubject.agent(agent.id),
                    account_id=agent.account_id,
                    session_id=session.session_id,
                    payload={"summary": summary, "stats": stats},
                )
                memory_store.create(db, agent.id, f"Refinement session: {summary}", MemoryKind.journal)
                agent.last_refinement_at = datetime.utcnow()
            release_lease(agent, session.session_id)

        if reading.tripped:
            session.state = SessionState.rolled_back
            return {"type": "refinement_rolled_back", "summary": summary, "stats": stats, "reason": reason}

        session.state = SessionState.committed
        logger.info(
            "refinement_complete",
            extra={
                "agent_id": session.agent_id,
                "session_id": session.session_id,
                "stats": stats,
                "ratio": reading.ratio,
            },
        )
        return {"type": "refinement_complete", "summary": summary, "stats": stats}


__all__ = [
    "ACTIONS",
    "RefinementController",
]
