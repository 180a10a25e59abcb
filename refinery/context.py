"""
Session-scoped context objects for refinement services.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional


class SessionState(str, Enum):
    open = "open"
    committed = "committed"
    rolled_back = "rolled_back"


@dataclass
class RefinementStats:
    consolidated: int = 0
    updated: int = 0
    deleted: int = 0
    protected: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class RefinementSession:
    """
    One bounded refinement session for one agent.

    Passed explicitly into every controller call. The baseline mass is the
    caller's measurement taken before the first action; it is never
    re-measured, so the agent's memories must not change from elsewhere
    while the session is open (see services.sessions for the lease).
    """

    session_id: str
    agent_id: int
    pre_session_mass: Optional[int] = None
    stats: RefinementStats = field(default_factory=RefinementStats)
    mutations: int = 0
    state: SessionState = SessionState.open

    @property
    def is_open(self) -> bool:
        return self.state == SessionState.open

    def as_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "agent_id": self.agent_id,
            "pre_session_mass": self.pre_session_mass,
            "stats": self.stats.as_dict(),
            "mutations": self.mutations,
            "state": self.state.value,
        }


__all__ = [
    "SessionState",
    "RefinementStats",
    "RefinementSession",
]
