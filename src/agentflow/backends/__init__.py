from agentflow.backends.base import (
    AgentInvocationError,
    AgentProcessError,
    AgentResult,
    AgentSession,
    AgentTimeoutError,
)
from agentflow.backends.claude import ClaudeCliAgentSession
from agentflow.backends.echo import EchoAgentSession

__all__ = [
    "AgentInvocationError",
    "AgentProcessError",
    "AgentResult",
    "AgentSession",
    "AgentTimeoutError",
    "ClaudeCliAgentSession",
    "EchoAgentSession",
]
