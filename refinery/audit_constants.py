"""
Canonical audit action groupings for the refinement trail.
"""

from refinery.models import AuditAction

# Actions that must carry a session_id
SESSION_ACTIONS = frozenset(
    {
        AuditAction.update,
        AuditAction.delete,
        AuditAction.protect,
        AuditAction.consolidate,
        AuditAction.complete,
        AuditAction.rollback,
    }
)

# Actions the rollback engine reverses
REPLAYABLE_ACTIONS = frozenset(
    {
        AuditAction.update,
        AuditAction.delete,
        AuditAction.protect,
        AuditAction.consolidate,
    }
)

# Actions counted against the per-session mutation cap
CAPPED_ACTIONS = frozenset({AuditAction.update, AuditAction.delete, AuditAction.consolidate})

# Operator actions issued outside any refinement session
OPERATOR_ACTIONS = frozenset(
    {
        AuditAction.protect,
        AuditAction.unprotect,
        AuditAction.discard,
        AuditAction.restore,
    }
)

__all__ = [
    "SESSION_ACTIONS",
    "REPLAYABLE_ACTIONS",
    "CAPPED_ACTIONS",
    "OPERATOR_ACTIONS",
]
