"""
Memory refinery database models
PostgreSQL (JSONB) or SQLite (JSON) schema
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    Column, Integer, BigInteger, String, Text, Float, Boolean,
    DateTime, ForeignKey, CheckConstraint, Index, Enum, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, declarative_base

import refinery.config as config

DB_BACKEND_EFFECTIVE = config.DB_BACKEND_EFFECTIVE

JSON_TYPE = JSONB if DB_BACKEND_EFFECTIVE == "postgres" else JSON

Base = declarative_base()


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize DB timestamps (aware on postgres, naive on sqlite) to naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)

# =============================================================================
# Enums
# =============================================================================

class MemoryKind(str, PyEnum):
    journal = "journal"
    core = "core"


class SubjectKind(str, PyEnum):
    memory = "memory"
    agent = "agent"


class AuditAction(str, PyEnum):
    # Refinement actions (correlated by session_id)
    update = "update"
    delete = "delete"
    protect = "protect"
    consolidate = "consolidate"
    complete = "complete"
    rollback = "rollback"
    # Operator actions (never carry a session_id)
    unprotect = "unprotect"
    discard = "discard"
    restore = "restore"


@dataclass(frozen=True)
class AuditSubject:
    """Tagged reference to the record an audit entry is about."""

    kind: SubjectKind
    id: int

    @staticmethod
    def memory(memory_id: int) -> "AuditSubject":
        return AuditSubject(kind=SubjectKind.memory, id=memory_id)

    @staticmethod
    def agent(agent_id: int) -> "AuditSubject":
        return AuditSubject(kind=SubjectKind.agent, id=agent_id)


# =============================================================================
# Agents
# =============================================================================

class Agent(Base):
    __tablename__ = "agents"

    id = Column(Integer, primary_key=True)
    account_id = Column(Integer, nullable=False)
    name = Column(String(100), nullable=False)
    refinement_threshold = Column(Float)  # NULL means DEFAULT_REFINEMENT_THRESHOLD
    last_refinement_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    # Single open refinement session per agent
    refinement_session_id = Column(String(64))
    refinement_pre_session_mass = Column(BigInteger)
    refinement_lease_expires_at = Column(DateTime(timezone=True))

    memories = relationship("MemoryEntry", back_populates="agent")

    __table_args__ = (
        CheckConstraint(
            "refinement_threshold IS NULL OR (refinement_threshold > 0 AND refinement_threshold <= 1)",
            name="check_refinement_threshold",
        ),
        Index("ix_agents_account_id", "account_id"),
    )

    @property
    def effective_refinement_threshold(self) -> float:
        if self.refinement_threshold is None:
            return config.DEFAULT_REFINEMENT_THRESHOLD
        return self.refinement_threshold


# =============================================================================
# Memories
# =============================================================================

class MemoryEntry(Base):
    __tablename__ = "agent_memories"

    id = Column(Integer, primary_key=True)
    agent_id = Column(Integer, ForeignKey("agents.id"), nullable=False)
    content = Column(Text, nullable=False)
    kind = Column(Enum(MemoryKind, name="memory_kind"), nullable=False)
    constitutional = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    discarded_at = Column(DateTime(timezone=True))  # soft-delete tombstone

    agent = relationship("Agent", back_populates="memories")

    __table_args__ = (
        Index("ix_agent_memories_agent_kind", "agent_id", "kind"),
        Index("ix_agent_memories_discarded_at", "discarded_at"),
    )

    @property
    def discarded(self) -> bool:
        return self.discarded_at is not None


# =============================================================================
# Audit Trail
# =============================================================================

class AuditEntry(Base):
    __tablename__ = "audit_entries"

    # Autoincrement id breaks ties between identical created_at values
    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(Enum(AuditAction, name="audit_action"), nullable=False)
    subject_type = Column(Enum(SubjectKind, name="audit_subject_kind"), nullable=False)
    subject_id = Column(Integer, nullable=False)
    agent_id = Column(Integer, ForeignKey("agents.id"))
    account_id = Column(Integer)
    session_id = Column(String(64))
    payload = Column(JSON_TYPE, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_audit_entries_session_id", "session_id", "created_at"),
        Index("ix_audit_entries_agent_session", "agent_id", "session_id"),
        Index("ix_audit_entries_subject", "subject_type", "subject_id"),
        Index("ix_audit_entries_account_id", "account_id"),
        Index("ix_audit_entries_created_at", "created_at"),
    )

    @property
    def subject(self) -> AuditSubject:
        return AuditSubject(kind=SubjectKind(self.subject_type), id=self.subject_id)


__all__ = [
    "Base",
    "as_naive_utc",
    "MemoryKind",
    "SubjectKind",
    "AuditAction",
    "AuditSubject",
    "Agent",
    "MemoryEntry",
    "AuditEntry",
]
