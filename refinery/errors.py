"""
Shared error types for refinery services.
"""


class ValidationIssue(ValueError):
    def __init__(
        self,
        message: str,
        field: str = "unknown",
        error_type: str = "invalid",
        error_code: str | None = None,
        data: dict | None = None,
    ):
        super().__init__(message)
        self.field = field
        self.error_type = error_type
        self.error_code = error_code
        self.data = data


class MemoryNotFound(ValidationIssue):
    """Raised when an id does not resolve to a live memory of the expected kind."""

    def __init__(self, memory_id, message: str | None = None):
        super().__init__(
            message or f"Memory #{memory_id} not found",
            field="id",
            error_type="not_found",
        )
        self.memory_id = memory_id


class AgentNotFound(ValidationIssue):
    def __init__(self, agent_id):
        super().__init__(f"Agent #{agent_id} not found", field="agent_id", error_type="not_found")
        self.agent_id = agent_id


class ConstitutionalMemoryError(ValidationIssue):
    """Raised when a constitutional memory would be discarded or merged away."""

    def __init__(self, message: str, memory_ids: list[int]):
        super().__init__(message, field="id", error_type="constitutional")
        self.memory_ids = memory_ids


class SessionConflictError(ValidationIssue):
    """Raised when another refinement session holds the agent's lease."""

    def __init__(self, message: str, holder_session_id: str | None = None):
        super().__init__(
            message,
            field="session_id",
            error_type="conflict",
            data={"holder_session_id": holder_session_id},
        )
        self.holder_session_id = holder_session_id


class RollbackIntegrityError(RuntimeError):
    """Raised when an audit entry can no longer be reversed against the store."""
