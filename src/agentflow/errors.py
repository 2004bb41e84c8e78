from __future__ import annotations


class AgentflowError(RuntimeError):
    """Base class for orchestration errors surfaced to callers."""


class ValidationError(AgentflowError):
    """Raised when a plan or a persisted document is malformed."""


class DuplicateTaskError(ValidationError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Duplicate task id: {task_id}")
        self.task_id = task_id


class UnknownDependencyError(ValidationError):
    def __init__(self, task_id: str, dependency_id: str) -> None:
        super().__init__(f"Task '{task_id}' depends on unknown task '{dependency_id}'.")
        self.task_id = task_id
        self.dependency_id = dependency_id


class CircularDependencyError(ValidationError):
    def __init__(self, cycle: list[str]) -> None:
        super().__init__("Circular dependency detected: " + " -> ".join(cycle))
        self.cycle = cycle


class NotFoundError(AgentflowError):
    """Raised when a session or task does not exist."""


class SessionNotFoundError(NotFoundError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class TaskNotFoundError(NotFoundError):
    def __init__(self, session_id: str, task_id: str) -> None:
        super().__init__(f"Task '{task_id}' not found in session {session_id}")
        self.session_id = session_id
        self.task_id = task_id


class TransitionError(AgentflowError):
    """Raised when a state edge is illegal or lost a race to another caller."""

    def __init__(
        self,
        message: str,
        *,
        task_id: str | None = None,
        current: str | None = None,
        requested: str | None = None,
    ) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.current = current
        self.requested = requested


class PersistenceError(AgentflowError):
    """Raised when plan/progress documents cannot be read or written."""
