from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


class AgentInvocationError(RuntimeError):
    """Raised when an agent worker cannot complete an invocation."""

    def __init__(
        self,
        message: str,
        *,
        agent_type: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.agent_type = agent_type
        self.exit_code = exit_code
        self.retriable = retriable


class AgentTimeoutError(AgentInvocationError):
    """Raised when an invocation exceeds its deadline."""


class AgentProcessError(AgentInvocationError):
    """Raised when the worker process cannot be started or talked to."""


@dataclass(slots=True)
class AgentResult:
    success: bool
    summary: str = ""
    files_modified: list[str] = field(default_factory=list)
    error: str | None = None
    agent_session_id: str | None = None
    agent_type: str | None = None


class AgentSession(ABC):
    """Contract for the worker that executes one task.

    Each invocation runs in its own conversation, identified by the returned
    ``agent_session_id`` and distinct from the orchestration session id.
    """

    supports_resume: bool = False

    @abstractmethod
    async def invoke(
        self,
        agent_type: str,
        task_id: str,
        prompt: str,
        orchestration_session_id: str,
    ) -> AgentResult:
        """Run ``prompt`` with the worker type ``agent_type``."""

    async def resume(
        self,
        prior_agent_session_id: str,
        prompt: str,
        orchestration_session_id: str,
    ) -> AgentResult:
        raise AgentInvocationError(
            f"{type(self).__name__} cannot resume agent session {prior_agent_session_id}",
            retriable=False,
        )
