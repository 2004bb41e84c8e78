"""Failure diagnosis and retry bookkeeping for failed tasks."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from agentflow.errors import TransitionError
from agentflow.models import ProgressTask, TaskState
from agentflow.state.store import ProgressStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3

_WRONG_AGENT_PATTERNS: tuple[str, ...] = (
    "wrong agent",
    "incorrect agent",
    "agent mismatch",
    "not the designated agent",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "execution interrupted",
    "rate limit",
    "too many requests",
    "connection",
    "temporarily unavailable",
    "try again later",
)
_REPORTED_AGENT_PATTERN = re.compile(r"wrong agent invoked - (\S+) instead of", re.IGNORECASE)


@dataclass(slots=True, frozen=True)
class RetryWithAgent:
    agent_type: str
    reason: str
    kind: str = "transient"

    def describe(self) -> str:
        if self.kind == "wrong_agent":
            return f"Reinvoking with correct agent: {self.agent_type}"
        return f"Retrying with agent: {self.agent_type} ({self.reason})"


@dataclass(slots=True, frozen=True)
class NoAction:
    reason: str


HealAction = RetryWithAgent | NoAction


def _match(text: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in text:
            return pattern
    return None


class SelfHealer:
    """Decides whether a failed task is worth another attempt.

    Diagnosis is a pure function of the task's failure summary. Booking the
    retry goes through :meth:`ProgressStore.record_self_heal`, so the history
    entry, the attempt counter and the ``failed -> in_progress`` move are one
    atomic write.
    """

    def __init__(self, store: ProgressStore, *, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> None:
        if max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        self.store = store
        self.max_attempts = max_attempts

    def diagnose(self, task: ProgressTask) -> HealAction:
        summary = (task.summary or "").strip()
        if not summary:
            return NoAction("no failure summary recorded")
        lowered = summary.lower()

        pattern = _match(lowered, _WRONG_AGENT_PATTERNS)
        if pattern is not None:
            reported = _REPORTED_AGENT_PATTERN.search(summary)
            reason = (
                f"Detected wrong agent ({reported.group(1)})"
                if reported
                else f"Matched '{pattern}'"
            )
            return RetryWithAgent(task.designated_agent, reason, kind="wrong_agent")

        pattern = _match(lowered, _TRANSIENT_PATTERNS)
        if pattern is not None:
            return RetryWithAgent(task.designated_agent, f"transient failure: {pattern}")

        return NoAction(f"no known remedy for: {summary[:200]}")

    def attempts_remaining(self, task: ProgressTask) -> int:
        return max(0, self.max_attempts - task.self_heal_attempts)

    def prepare_retry(self, session_id: str, task: ProgressTask) -> RetryWithAgent | None:
        if task.state is not TaskState.FAILED:
            return None
        if self.attempts_remaining(task) == 0:
            logger.info(
                "Session %s: task %s exhausted %d self-heal attempts",
                session_id,
                task.id,
                self.max_attempts,
            )
            return None

        action = self.diagnose(task)
        if isinstance(action, NoAction):
            logger.info("Session %s: no self-heal for %s: %s", session_id, task.id, action.reason)
            return None

        try:
            self.store.record_self_heal(
                session_id,
                task.id,
                action=action.describe(),
                max_attempts=self.max_attempts,
            )
        except TransitionError as exc:
            logger.warning("Session %s: self-heal for %s not booked: %s", session_id, task.id, exc)
            return None
        return action
