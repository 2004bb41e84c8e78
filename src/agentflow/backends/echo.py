"""Deterministic local worker for smoke runs and CLI tests."""

from __future__ import annotations

from uuid import uuid4

from agentflow.backends.base import AgentResult, AgentSession


class EchoAgentSession(AgentSession):
    supports_resume = True

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    async def invoke(
        self,
        agent_type: str,
        task_id: str,
        prompt: str,
        orchestration_session_id: str,
    ) -> AgentResult:
        _ = orchestration_session_id
        self.calls.append((agent_type, task_id))
        first_line = prompt.strip().splitlines()[0] if prompt.strip() else task_id
        return AgentResult(
            success=True,
            summary=f"echo: {first_line}"[:4000],
            agent_session_id=f"echo-{uuid4().hex[:12]}",
            agent_type=agent_type,
        )

    async def resume(
        self,
        prior_agent_session_id: str,
        prompt: str,
        orchestration_session_id: str,
    ) -> AgentResult:
        _ = orchestration_session_id
        self.calls.append(("resume", prior_agent_session_id))
        return AgentResult(
            success=True,
            summary=f"echo (resumed): {prompt.strip()[:200]}",
            agent_session_id=prior_agent_session_id,
        )
