from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from agentflow.backends.base import AgentInvocationError, AgentResult, AgentSession
from agentflow.errors import AgentflowError
from agentflow.graph import TaskGraph
from agentflow.healer import RetryWithAgent, SelfHealer
from agentflow.models import PlanDocument, ProgressDocument, ProgressTask, TaskState, utcnow_iso
from agentflow.monitoring import MonitoringRecorder
from agentflow.state.store import ProgressStore

logger = logging.getLogger(__name__)

INTERRUPTED_SUMMARY = "execution interrupted"
STALE_RUN_ERROR = "run ended without a final record; its process is gone"


class SessionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


@dataclass(slots=True)
class RunSummary:
    session_id: str
    run_id: str
    status: SessionStatus
    started_at: str
    ended_at: str
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    pending_tasks: int
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload


def classify_status(progress: ProgressDocument) -> SessionStatus:
    total = len(progress.tasks)
    completed = len(progress.in_state(TaskState.COMPLETED))
    if completed == total:
        return SessionStatus.COMPLETED
    if completed == 0:
        return SessionStatus.FAILED
    return SessionStatus.PARTIAL


def _pid_alive(pid: object) -> bool:
    if not isinstance(pid, int) or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _owned_elsewhere(record: dict[str, Any]) -> bool:
    """True when a run record belongs to another process that is still alive.

    Records owned by this process are only live while the engine tracks the
    session in ``_active``, which callers check separately.
    """
    pid = record.get("pid")
    return pid != os.getpid() and _pid_alive(pid)


class OrchestrationEngine:
    """Executes a session's plan one task at a time in dependency order.

    All state lives in the :class:`ProgressStore`; the engine only decides what
    to run next, so a run that dies half-way can be restarted with ``run``.
    Agent failures of any kind end up as ``failed`` transitions and are handed
    to the :class:`SelfHealer`. Library errors (missing session, bad plan,
    unwritable store) propagate.
    """

    def __init__(
        self,
        store: ProgressStore,
        agents: AgentSession,
        *,
        recorder: MonitoringRecorder | None = None,
        healer: SelfHealer | None = None,
        task_timeout_seconds: float | None = 1800.0,
    ) -> None:
        self.store = store
        self.agents = agents
        self.recorder = recorder or MonitoringRecorder()
        self.healer = healer or SelfHealer(store)
        self.task_timeout_seconds = task_timeout_seconds
        self._active: set[str] = set()

    def _emit(self, hook: str, *args: Any, **kwargs: Any) -> None:
        try:
            getattr(self.recorder, hook)(*args, **kwargs)
        except Exception:
            logger.warning("Monitoring hook %s failed", hook, exc_info=True)

    @staticmethod
    def build_prompt(plan: PlanDocument, task: ProgressTask) -> str:
        lines = [task.description, "", f"Overall goal: {plan.task_description}"]
        lines.append(f"Plan synopsis: {plan.synopsis}")
        if task.files_to_modify:
            lines.extend(["", "Files to modify:"])
            lines.extend(f"- {path}" for path in task.files_to_modify)
        if task.dependencies:
            lines.extend(["", "Completed prerequisites: " + ", ".join(task.dependencies)])
        return "\n".join(lines)

    @staticmethod
    def build_retry_prompt(task: ProgressTask, action: RetryWithAgent) -> str:
        return (
            f"The previous attempt at task {task.id} failed: {task.summary or 'unknown error'}\n"
            f"{action.describe()}. Continue the task from where it stopped.\n\n"
            f"{task.description}"
        )

    async def _recover_interrupted(self, session_id: str) -> None:
        running = self.store.get_in_progress_task(session_id)
        if running is None:
            return
        logger.warning(
            "Session %s: task %s was left in_progress by an earlier run; marking failed",
            session_id,
            running.id,
        )
        await asyncio.to_thread(
            self.store.transition,
            session_id,
            running.id,
            TaskState.FAILED,
            summary=INTERRUPTED_SUMMARY,
        )

    @staticmethod
    def _unmet_dependencies(progress: ProgressDocument, task: ProgressTask) -> list[str]:
        unmet: list[str] = []
        for dependency_id in task.dependencies:
            dependency = progress.find(dependency_id)
            if dependency is None or dependency.state is not TaskState.COMPLETED:
                unmet.append(dependency_id)
        return unmet

    async def _call_agent(
        self,
        session_id: str,
        task: ProgressTask,
        prompt: str,
        *,
        resume_from: str | None = None,
    ) -> AgentResult:
        designated = task.designated_agent
        try:
            if resume_from is not None:
                call = self.agents.resume(resume_from, prompt, session_id)
            else:
                call = self.agents.invoke(designated, task.id, prompt, session_id)
            result = await asyncio.wait_for(call, timeout=self.task_timeout_seconds)
        except TimeoutError:
            return AgentResult(
                success=False,
                error=f"Agent invocation timed out after {self.task_timeout_seconds}s",
            )
        except AgentInvocationError as exc:
            return AgentResult(success=False, error=f"Agent invocation failed: {exc}")
        except Exception as exc:
            logger.warning(
                "Session %s: agent raised while running %s", session_id, task.id, exc_info=True
            )
            return AgentResult(
                success=False,
                error=f"Agent invocation raised {type(exc).__name__}: {exc}",
            )

        if result.agent_type and result.agent_type != designated:
            return AgentResult(
                success=False,
                error=f"Wrong agent invoked - {result.agent_type} instead of {designated}",
                agent_session_id=result.agent_session_id,
                agent_type=result.agent_type,
            )
        return result

    async def _attempt(
        self,
        session_id: str,
        task: ProgressTask,
        prompt: str,
        *,
        attempt: int,
        resume_from: str | None = None,
    ) -> ProgressTask:
        """Invoke the agent for a task already in_progress and record the outcome."""
        self._emit(
            "on_task_start",
            session_id,
            task.id,
            agent_type=task.designated_agent,
            attempt=attempt,
        )
        result = await self._call_agent(session_id, task, prompt, resume_from=resume_from)
        self_healed = attempt > 1

        if result.success:
            updated = await asyncio.to_thread(
                self.store.transition,
                session_id,
                task.id,
                TaskState.COMPLETED,
                agent_session_id=result.agent_session_id,
                files_modified=result.files_modified,
                summary=result.summary or None,
            )
            error = None
        else:
            error = result.error or result.summary or "Agent reported failure without details"
            updated = await asyncio.to_thread(
                self.store.transition,
                session_id,
                task.id,
                TaskState.FAILED,
                agent_session_id=result.agent_session_id,
                summary=error,
            )
            logger.info("Session %s: task %s failed: %s", session_id, task.id, error)

        if self_healed:
            outcome = "succeeded" if result.success else f"failed: {error}"
            updated = await asyncio.to_thread(
                self.store.record_self_heal_result, session_id, task.id, outcome
            )

        self._emit(
            "on_task_complete",
            session_id,
            task.id,
            status=updated.state.value,
            agent_session_id=updated.agent_session_id,
            files_modified=list(updated.files_modified),
            error=error,
            self_healed=self_healed and result.success,
        )
        return updated

    async def _heal(self, session_id: str, task: ProgressTask) -> ProgressTask:
        while task.state is TaskState.FAILED:
            if self.store.cancel_requested(session_id):
                return task
            prior_agent_session = task.agent_session_id
            action = await asyncio.to_thread(self.healer.prepare_retry, session_id, task)
            if action is None:
                return task
            task = self.store.get_task(session_id, task.id)

            resume_from = None
            if (
                self.agents.supports_resume
                and prior_agent_session
                and action.kind != "wrong_agent"
                and action.agent_type == task.designated_agent
            ):
                resume_from = prior_agent_session
            logger.info(
                "Session %s: %s for %s (attempt %d/%d)",
                session_id,
                action.describe(),
                task.id,
                task.self_heal_attempts,
                self.healer.max_attempts,
            )
            prompt = self.build_retry_prompt(task, action)
            task = await self._attempt(
                session_id,
                task,
                prompt,
                attempt=task.self_heal_attempts + 1,
                resume_from=resume_from,
            )
        return task

    async def run(self, session_id: str) -> RunSummary:
        if session_id in self._active:
            raise AgentflowError(f"Session {session_id} is already running.")
        documents = self.store.load(session_id)
        plan = documents.plan
        order = TaskGraph.build(plan.tasks)

        started_at = utcnow_iso()
        started = time.monotonic()
        run_id = f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"
        self._active.add(session_id)
        try:
            stale = await asyncio.to_thread(
                self.store.fail_stale_runs, session_id, _owned_elsewhere, error=STALE_RUN_ERROR
            )
            if stale:
                logger.warning(
                    "Session %s: closed runs left open by a dead process: %s",
                    session_id,
                    ", ".join(stale),
                )
            await asyncio.to_thread(
                self.store.record_run,
                session_id,
                run_id,
                {
                    "status": SessionStatus.RUNNING.value,
                    "started_at": started_at,
                    "total_tasks": len(order),
                    "pid": os.getpid(),
                },
            )
            self._emit(
                "on_orchestration_start",
                session_id,
                run_id=run_id,
                task_description=plan.task_description,
                total_tasks=len(order),
                revision_tag=plan.revision_tag,
            )
            cancelled = await self._run_tasks(session_id, plan, list(order))
        except Exception as exc:
            await asyncio.to_thread(
                self.store.record_run,
                session_id,
                run_id,
                {
                    "status": SessionStatus.FAILED.value,
                    "ended_at": utcnow_iso(),
                    "error": str(exc),
                },
            )
            raise
        finally:
            self._active.discard(session_id)

        if cancelled:
            await asyncio.to_thread(self.store.clear_cancel, session_id)
        progress = self.store.load_progress(session_id)
        status = classify_status(progress)
        summary = RunSummary(
            session_id=session_id,
            run_id=run_id,
            status=status,
            started_at=started_at,
            ended_at=utcnow_iso(),
            total_tasks=len(progress.tasks),
            completed_tasks=len(progress.in_state(TaskState.COMPLETED)),
            failed_tasks=len(progress.in_state(TaskState.FAILED)),
            pending_tasks=len(progress.in_state(TaskState.PENDING)),
            cancelled=cancelled,
        )
        await asyncio.to_thread(self.store.record_run, session_id, run_id, summary.to_dict())
        self._emit(
            "on_orchestration_complete",
            session_id,
            run_id=run_id,
            status=status.value,
            completed_tasks=summary.completed_tasks,
            failed_tasks=summary.failed_tasks,
            duration_seconds=time.monotonic() - started,
        )
        logger.info(
            "Session %s finished %s: %d/%d tasks completed",
            session_id,
            status.value,
            summary.completed_tasks,
            summary.total_tasks,
        )
        return summary

    async def _run_tasks(self, session_id: str, plan: PlanDocument, order: list[str]) -> bool:
        """Walk the execution order once. Returns True when stopped by cancellation."""
        await self._recover_interrupted(session_id)
        for task_id in order:
            if self.store.cancel_requested(session_id):
                logger.info(
                    "Session %s: cancellation requested, stopping before %s", session_id, task_id
                )
                return True

            progress = self.store.load_progress(session_id)
            task = progress.find(task_id)
            if task is None or task.state is TaskState.COMPLETED:
                continue

            if task.state is TaskState.PENDING:
                unmet = self._unmet_dependencies(progress, task)
                if unmet:
                    logger.info(
                        "Session %s: task %s blocked on %s", session_id, task_id, ", ".join(unmet)
                    )
                    continue
                task = await asyncio.to_thread(
                    self.store.transition, session_id, task_id, TaskState.IN_PROGRESS
                )
                task = await self._attempt(
                    session_id, task, self.build_prompt(plan, task), attempt=1
                )

            if task.state is TaskState.FAILED:
                await self._heal(session_id, task)
        return self.store.cancel_requested(session_id)

    def request_cancel(self, session_id: str) -> None:
        self.store.request_cancel(session_id)

    def status(self, session_id: str) -> dict[str, Any]:
        progress = self.store.load_progress(session_id)
        runs = self.store.list_runs(session_id)
        running = session_id in self._active or (
            bool(runs)
            and runs[-1].get("status") == SessionStatus.RUNNING.value
            and _owned_elsewhere(runs[-1])
        )
        return {
            "session_id": session_id,
            "status": SessionStatus.RUNNING.value if running else classify_status(progress).value,
            "last_updated": progress.last_updated,
            "revision_tag": progress.revision_tag,
            "cancel_requested": self.store.cancel_requested(session_id),
            "tasks": [
                {
                    "id": task.id,
                    "designated_agent": task.designated_agent,
                    "state": task.state.value,
                    "self_heal_attempts": task.self_heal_attempts,
                }
                for task in progress.tasks
            ],
            "runs": runs[-5:],
        }
