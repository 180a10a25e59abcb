"""
Retention circuit breaker for refinement sessions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class BreakerReading:
    tripped: bool
    ratio: Optional[float]
    pre_session_mass: Optional[int]
    post_session_mass: int
    threshold: float

    @property
    def reduction_percent(self) -> Optional[float]:
        if self.ratio is None:
            return None
        return (1.0 - self.ratio) * 100.0

    def reason(self) -> str:
        return (
            f"Core memory would shrink from {self.pre_session_mass} to {self.post_session_mass} tokens "
            f"(retained {self.ratio:.1%}), below the retention threshold of {self.threshold:.0%}"
        )


def evaluate_breaker(
    pre_session_mass: Optional[int],
    post_session_mass: int,
    threshold: float,
) -> BreakerReading:
    """
    Compare post-session mass to the baseline.

    Trips iff post/pre < threshold; a ratio exactly at the threshold passes.
    Without a positive baseline there is nothing to compare and the breaker
    stays closed.
    """
    if pre_session_mass is None or pre_session_mass <= 0:
        return BreakerReading(
            tripped=False,
            ratio=None,
            pre_session_mass=pre_session_mass,
            post_session_mass=post_session_mass,
            threshold=threshold,
        )
    ratio = post_session_mass / pre_session_mass
    return BreakerReading(
        tripped=ratio < threshold,
        ratio=ratio,
        pre_session_mass=pre_session_mass,
        post_session_mass=post_session_mass,
        threshold=threshold,
    )
