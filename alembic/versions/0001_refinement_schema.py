"""Create agents, agent memories and audit entries.

Revision ID: 0001_refinement_schema
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_refinement_schema"
down_revision = None
branch_labels = None
depends_on = None

MEMORY_KINDS = ("journal", "core")
AUDIT_ACTIONS = (
    "update",
    "delete",
    "protect",
    "consolidate",
    "complete",
    "rollback",
    "unprotect",
    "discard",
    "restore",
)
SUBJECT_KINDS = ("memory", "agent")


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"
    json_type = postgresql.JSONB if is_postgres else sa.JSON

    op.create_table(
        "agents",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("refinement_threshold", sa.Float()),
        sa.Column("last_refinement_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("refinement_session_id", sa.String(length=64)),
        sa.Column("refinement_pre_session_mass", sa.BigInteger()),
        sa.Column("refinement_lease_expires_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint(
            "refinement_threshold IS NULL OR (refinement_threshold > 0 AND refinement_threshold <= 1)",
            name="check_refinement_threshold",
        ),
    )
    op.create_index("ix_agents_account_id", "agents", ["account_id"])

    op.create_table(
        "agent_memories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("agent_id", sa.Integer(), sa.ForeignKey("agents.id"), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("kind", sa.Enum(*MEMORY_KINDS, name="memory_kind"), nullable=False),
        sa.Column("constitutional", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("discarded_at", sa.DateTime(timezone=True)),
    )
    op.create_index(
        "ix_agent_memories_agent_kind",
        "agent_memories",
        ["agent_id", "kind"],
    )
    op.create_index(
        "ix_agent_memories_discarded_at",
        "agent_memories",
        ["discarded_at"],
    )

    op.create_table(
        "audit_entries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("action", sa.Enum(*AUDIT_ACTIONS, name="audit_action"), nullable=False),
        sa.Column("subject_type", sa.Enum(*SUBJECT_KINDS, name="audit_subject_kind"), nullable=False),
        sa.Column("subject_id", sa.Integer(), nullable=False),
        sa.Column("agent_id", sa.Integer(), sa.ForeignKey("agents.id")),
        sa.Column("account_id", sa.Integer()),
        sa.Column("session_id", sa.String(length=64)),
        sa.Column("payload", json_type, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_audit_entries_session_id",
        "audit_entries",
        ["session_id", "created_at"],
    )
    op.create_index(
        "ix_audit_entries_agent_session",
        "audit_entries",
        ["agent_id", "session_id"],
    )
    op.create_index(
        "ix_audit_entries_subject",
        "audit_entries",
        ["subject_type", "subject_id"],
    )
    op.create_index(
        "ix_audit_entries_account_id",
        "audit_entries",
        ["account_id"],
    )
    op.create_index(
        "ix_audit_entries_created_at",
        "audit_entries",
        ["created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_audit_entries_created_at", table_name="audit_entries")
    op.drop_index("ix_audit_entries_account_id", table_name="audit_entries")
    op.drop_index("ix_audit_entries_subject", table_name="audit_entries")
    op.drop_index("ix_audit_entries_agent_session", table_name="audit_entries")
    op.drop_index("ix_audit_entries_session_id", table_name="audit_entries")
    op.drop_table("audit_entries")

    op.drop_index("ix_agent_memories_discarded_at", table_name="agent_memories")
    op.drop_index("ix_agent_memories_agent_kind", table_name="agent_memories")
    op.drop_table("agent_memories")

    op.drop_index("ix_agents_account_id", table_name="agents")
    op.drop_table("agents")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for enum_name in ("audit_subject_kind", "audit_action", "memory_kind"):
            postgresql.ENUM(name=enum_name).drop(bind, checkfirst=True)
