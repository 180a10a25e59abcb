"""
Memory store: agent memory entries with soft-delete tombstones.

Every query excludes discarded memories unless ``include_discarded`` is
passed; only the rollback engine needs that path. Callers own both the
transaction and the audit trail.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import func, or_

import refinery.config as config
from refinery.errors import ConstitutionalMemoryError, MemoryNotFound
from refinery.models import MemoryEntry, MemoryKind, as_naive_utc
from refinery.validators import validate_required_text


def token_estimate(content: Optional[str]) -> int:
    """Roughly four characters per token, rounded up."""
    return math.ceil(len(content or "") / 4)


def ledger_entry(memory: MemoryEntry) -> dict:
    return {
        "id": memory.id,
        "content": memory.content,
        "created_at": memory.created_at.isoformat() if memory.created_at else None,
        "tokens": token_estimate(memory.content),
        "constitutional": bool(memory.constitutional),
    }


def _validate_content(content: str) -> str:
    validate_required_text(content, "content", config.MAX_MEMORY_CONTENT_LENGTH)
    return content.strip()


def _live(query):
    return query.filter(MemoryEntry.discarded_at.is_(None))


def find(
    db,
    agent_id: int,
    memory_id: int,
    *,
    kind: Optional[MemoryKind] = MemoryKind.core,
    include_discarded: bool = False,
) -> MemoryEntry:
    query = db.query(MemoryEntry).filter(
        MemoryEntry.agent_id == agent_id,
        MemoryEntry.id == memory_id,
    )
    if kind is not None:
        query = query.filter(MemoryEntry.kind == kind)
    if not include_discarded:
        query = _live(query)
    memory = query.first()
    if memory is None:
        raise MemoryNotFound(memory_id)
    return memory


def find_many(db, agent_id: int, memory_ids: Iterable[int]) -> list[MemoryEntry]:
    """Resolve every id to a live core memory or raise on the first miss."""
    memory_ids = list(memory_ids)
    rows = (
        _live(db.query(MemoryEntry))
        .filter(
            MemoryEntry.agent_id == agent_id,
            MemoryEntry.kind == MemoryKind.core,
            MemoryEntry.id.in_(memory_ids),
        )
        .all()
    )
    by_id = {row.id: row for row in rows}
    for memory_id in memory_ids:
        if memory_id not in by_id:
            raise MemoryNotFound(memory_id)
    return [by_id[memory_id] for memory_id in memory_ids]


def search(db, agent_id: int, query: str) -> list[MemoryEntry]:
    """Case-insensitive substring search over live core memories, oldest first."""
    return (
        _live(db.query(MemoryEntry))
        .filter(
            MemoryEntry.agent_id == agent_id,
            MemoryEntry.kind == MemoryKind.core,
            MemoryEntry.content.icontains(query, autoescape=True),
        )
        .order_by(MemoryEntry.created_at.asc(), MemoryEntry.id.asc())
        .all()
    )


def create(
    db,
    agent_id: int,
    content: str,
    kind: MemoryKind,
    *,
    created_at: Optional[datetime] = None,
) -> MemoryEntry:
    memory = MemoryEntry(
        agent_id=agent_id,
        content=_validate_content(content),
        kind=MemoryKind(kind),
        constitutional=False,
        created_at=created_at or datetime.utcnow(),
    )
    db.add(memory)
    db.flush()
    return memory


def soft_delete(memory: MemoryEntry) -> None:
    if memory.constitutional:
        raise ConstitutionalMemoryError(
            f"Cannot delete constitutional memory #{memory.id}",
            memory_ids=[memory.id],
        )
    memory.discarded_at = datetime.utcnow()


def undelete(memory: MemoryEntry) -> None:
    memory.discarded_at = None


def update_content(memory: MemoryEntry, content: str) -> None:
    memory.content = _validate_content(content)


def set_constitutional(memory: MemoryEntry, flag: bool) -> None:
    memory.constitutional = bool(flag)


def core_mass(db, agent_id: int) -> int:
    """Aggregate token estimate over the agent's live core memories."""
    contents = (
        _live(db.query(MemoryEntry.content))
        .filter(
            MemoryEntry.agent_id == agent_id,
            MemoryEntry.kind == MemoryKind.core,
        )
        .all()
    )
    return sum(token_estimate(row[0]) for row in contents)


def core_memories(db, agent_id: int) -> list[MemoryEntry]:
    return (
        _live(db.query(MemoryEntry))
        .filter(MemoryEntry.agent_id == agent_id, MemoryEntry.kind == MemoryKind.core)
        .order_by(MemoryEntry.created_at.asc(), MemoryEntry.id.asc())
        .all()
    )


def _journal_cutoff() -> datetime:
    return datetime.utcnow() - timedelta(days=config.JOURNAL_WINDOW_DAYS)


def is_expired(memory: MemoryEntry) -> bool:
    if MemoryKind(memory.kind) != MemoryKind.journal:
        return False
    return as_naive_utc(memory.created_at) < _journal_cutoff()


def prompt_memories(db, agent_id: int) -> list[MemoryEntry]:
    """Core memories plus journal entries still inside the journal window."""
    return (
        _live(db.query(MemoryEntry))
        .filter(
            MemoryEntry.agent_id == agent_id,
            or_(
                MemoryEntry.kind == MemoryKind.core,
                MemoryEntry.created_at >= _journal_cutoff(),
            ),
        )
        .order_by(MemoryEntry.created_at.asc(), MemoryEntry.id.asc())
        .all()
    )


def format_memory_ledger(memories: Iterable[MemoryEntry]) -> str:
    lines = []
    for memory in memories:
        flag = " [CONSTITUTIONAL]" if memory.constitutional else ""
        day = memory.created_at.strftime("%Y-%m-%d") if memory.created_at else "unknown"
        lines.append(
            f"- #{memory.id} ({day}, ~{token_estimate(memory.content)} tokens){flag}: {memory.content}"
        )
    return "\n".join(lines)


def refinement_status(db, agent_id: int) -> dict:
    count = (
        _live(db.query(func.count(MemoryEntry.id)))
        .filter(MemoryEntry.agent_id == agent_id, MemoryEntry.kind == MemoryKind.core)
        .scalar()
    )
    usage = core_mass(db, agent_id)
    budget = config.CORE_TOKEN_BUDGET
    return {
        "core_count": int(count or 0),
        "token_usage": usage,
        "token_budget": budget,
        "over_budget_by": max(usage - budget, 0),
    }


__all__ = [
    "token_estimate",
    "ledger_entry",
    "find",
    "find_many",
    "search",
    "create",
    "soft_delete",
    "undelete",
    "update_content",
    "set_constitutional",
    "core_mass",
    "core_memories",
    "is_expired",
    "prompt_memories",
    "format_memory_ledger",
    "refinement_status",
]
