from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agentflow.errors import (
    PersistenceError,
    SessionNotFoundError,
    TaskNotFoundError,
    TransitionError,
    ValidationError,
)
from agentflow.graph import TaskGraph
from agentflow.models import (
    ALLOWED_TRANSITIONS,
    PlanDocument,
    ProgressDocument,
    ProgressTask,
    SelfHealEntry,
    TaskState,
    utcnow_iso,
)
from agentflow.state.locks import SessionLockRegistry, file_lock
from agentflow.state.merge import reconcile_progress

logger = logging.getLogger(__name__)

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
PLAN_FILE = "plan.json"
PROGRESS_FILE = "progress.json"
RUNS_FILE = "runs.json"
EVENTS_FILE = "events.jsonl"
CANCEL_FILE = "cancel"
LOCK_FILE = ".lock"


@dataclass(slots=True)
class SessionDocuments:
    session_id: str
    plan: PlanDocument
    progress: ProgressDocument


class ProgressStore:
    """Durable home of the plan and progress documents, one directory per session.

    Every read-modify-write goes through :meth:`_session_lock`, which holds the
    in-process lock for the session and an exclusive lock file in the session
    directory. Reads go straight to disk; writes replace files atomically so a
    reader never observes a half-written document.
    """

    def __init__(
        self,
        root: Path,
        *,
        lock_timeout_seconds: float = 5.0,
        locks: SessionLockRegistry | None = None,
        clock: Callable[[], str] | None = None,
    ) -> None:
        self.root = root.resolve()
        self.sessions_dir = self.root / "sessions"
        self.lock_timeout_seconds = lock_timeout_seconds
        self.locks = locks or SessionLockRegistry()
        self._clock = clock or utcnow_iso

    @staticmethod
    def validate_session_id(session_id: str) -> str:
        if not isinstance(session_id, str) or not SESSION_ID_PATTERN.match(session_id):
            raise ValidationError(f"Invalid session id: {session_id!r}")
        return session_id

    def session_dir(self, session_id: str) -> Path:
        return self.sessions_dir / self.validate_session_id(session_id)

    def events_file(self, session_id: str) -> Path:
        return self.session_dir(session_id) / EVENTS_FILE

    def exists(self, session_id: str) -> bool:
        session_dir = self.session_dir(session_id)
        return (session_dir / PLAN_FILE).exists() and (session_dir / PROGRESS_FILE).exists()

    def list_sessions(self) -> list[str]:
        if not self.sessions_dir.exists():
            return []
        return sorted(
            entry.name
            for entry in self.sessions_dir.iterdir()
            if entry.is_dir() and (entry / PROGRESS_FILE).exists()
        )

    @contextmanager
    def _session_lock(self, session_id: str, *, create: bool = False) -> Iterator[Path]:
        session_dir = self.session_dir(session_id)
        if create:
            try:
                session_dir.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise PersistenceError(f"Cannot create session directory: {exc}") from exc
        elif not session_dir.exists():
            raise SessionNotFoundError(session_id)
        with self.locks.hold(session_id, timeout_seconds=self.lock_timeout_seconds):
            with file_lock(session_dir / LOCK_FILE, timeout_seconds=self.lock_timeout_seconds):
                yield session_dir

    @staticmethod
    def _read_json(path: Path) -> Any:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise
        except json.JSONDecodeError as exc:
            raise PersistenceError(f"Corrupt document {path}: {exc}") from exc
        except OSError as exc:
            raise PersistenceError(f"Cannot read {path}: {exc}") from exc

    @staticmethod
    def _write_json(path: Path, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2) + "\n"
        tmp_path = path.with_name(f"{path.name}.tmp")
        try:
            tmp_path.write_text(serialized, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as exc:
            try:
                tmp_path.unlink()
            except OSError:
                pass
            raise PersistenceError(f"Cannot write {path}: {exc}") from exc

    def _load_plan_unlocked(self, session_id: str) -> PlanDocument:
        path = self.session_dir(session_id) / PLAN_FILE
        try:
            raw = self._read_json(path)
        except FileNotFoundError as exc:
            raise SessionNotFoundError(session_id) from exc
        try:
            return PlanDocument.from_dict(raw)
        except ValidationError as exc:
            raise PersistenceError(
                f"Invalid plan document for session {session_id}: {exc}"
            ) from exc

    def _load_progress_unlocked(self, session_id: str) -> ProgressDocument:
        path = self.session_dir(session_id) / PROGRESS_FILE
        try:
            raw = self._read_json(path)
        except FileNotFoundError as exc:
            raise SessionNotFoundError(session_id) from exc
        try:
            return ProgressDocument.from_dict(raw)
        except ValidationError as exc:
            raise PersistenceError(
                f"Invalid progress document for session {session_id}: {exc}"
            ) from exc

    def _write_progress(self, session_id: str, progress: ProgressDocument) -> None:
        self._write_json(self.session_dir(session_id) / PROGRESS_FILE, progress.to_dict())

    def load_plan(self, session_id: str) -> PlanDocument:
        return self._load_plan_unlocked(session_id)

    def load_progress(self, session_id: str) -> ProgressDocument:
        return self._load_progress_unlocked(session_id)

    def load(self, session_id: str) -> SessionDocuments:
        return SessionDocuments(
            session_id=session_id,
            plan=self._load_plan_unlocked(session_id),
            progress=self._load_progress_unlocked(session_id),
        )

    def create_or_update_plan(self, session_id: str, plan: PlanDocument) -> SessionDocuments:
        TaskGraph(plan.tasks)
        with self._session_lock(session_id, create=True) as session_dir:
            plan_path = session_dir / PLAN_FILE
            progress_path = session_dir / PROGRESS_FILE
            previous: ProgressDocument | None = None
            if progress_path.exists():
                previous = self._load_progress_unlocked(session_id)
            progress = reconcile_progress(previous, plan, plan_file=PLAN_FILE, now=self._clock())

            previous_plan: bytes | None = None
            if plan_path.exists():
                try:
                    previous_plan = plan_path.read_bytes()
                except OSError as exc:
                    raise PersistenceError(f"Cannot read {plan_path}: {exc}") from exc

            self._write_json(plan_path, plan.to_dict())
            try:
                self._write_json(progress_path, progress.to_dict())
            except PersistenceError:
                try:
                    if previous_plan is None:
                        plan_path.unlink()
                    else:
                        plan_path.write_bytes(previous_plan)
                except OSError:
                    logger.error("Could not restore plan document for session %s", session_id)
                raise

        if previous is None:
            logger.info("Created session %s with %d tasks", session_id, len(plan.tasks))
        else:
            logger.info("Replanned session %s (%d tasks)", session_id, len(plan.tasks))
        return SessionDocuments(session_id=session_id, plan=plan, progress=progress)

    def _apply_transition(
        self,
        progress: ProgressDocument,
        task: ProgressTask,
        target: TaskState,
        now: str,
        *,
        agent_session_id: str | None = None,
        files_modified: list[str] | None = None,
        summary: str | None = None,
        restart_clock: bool = False,
    ) -> None:
        if target not in ALLOWED_TRANSITIONS[task.state]:
            raise TransitionError(
                f"Illegal transition for task {task.id}: {task.state.value} -> {target.value}",
                task_id=task.id,
                current=task.state.value,
                requested=target.value,
            )
        if target is TaskState.IN_PROGRESS:
            running = [
                item.id
                for item in progress.tasks
                if item.state is TaskState.IN_PROGRESS and item.id != task.id
            ]
            if running:
                raise TransitionError(
                    f"Cannot start task {task.id}: task {running[0]} is already in_progress",
                    task_id=task.id,
                    current=task.state.value,
                    requested=target.value,
                )
            if task.started_at is None or restart_clock:
                task.started_at = now
        elif target is TaskState.COMPLETED:
            task.completed_at = now
            if files_modified is not None:
                task.files_modified = list(files_modified)
        elif target is TaskState.FAILED:
            task.failed_at = now

        task.state = target
        if agent_session_id:
            task.agent_session_id = agent_session_id
        if summary is not None and target is not TaskState.IN_PROGRESS:
            task.summary = summary

    def transition(
        self,
        session_id: str,
        task_id: str,
        new_state: TaskState | str,
        *,
        agent_session_id: str | None = None,
        files_modified: list[str] | None = None,
        summary: str | None = None,
        restart_clock: bool = False,
    ) -> ProgressTask:
        try:
            target = TaskState(new_state)
        except ValueError as exc:
            raise ValidationError(f"Unknown task state: {new_state!r}") from exc

        with self._session_lock(session_id):
            progress = self._load_progress_unlocked(session_id)
            task = progress.find(task_id)
            if task is None:
                raise TaskNotFoundError(session_id, task_id)
            now = self._clock()
            self._apply_transition(
                progress,
                task,
                target,
                now,
                agent_session_id=agent_session_id,
                files_modified=files_modified,
                summary=summary,
                restart_clock=restart_clock,
            )
            progress.last_updated = now
            self._write_progress(session_id, progress)
        logger.debug("Session %s: task %s -> %s", session_id, task_id, target.value)
        return task

    def record_self_heal(
        self,
        session_id: str,
        task_id: str,
        *,
        action: str,
        max_attempts: int,
        agent_session_id: str | None = None,
    ) -> ProgressTask:
        """Book one retry and move the failed task back to in_progress.

        History entry, attempt counter and state change land in the same
        write; a caller racing for the same failed task gets TransitionError.
        """
        with self._session_lock(session_id):
            progress = self._load_progress_unlocked(session_id)
            task = progress.find(task_id)
            if task is None:
                raise TaskNotFoundError(session_id, task_id)
            if task.state is not TaskState.FAILED:
                raise TransitionError(
                    f"Self-heal requires a failed task; {task_id} is {task.state.value}",
                    task_id=task_id,
                    current=task.state.value,
                    requested=TaskState.IN_PROGRESS.value,
                )
            if task.self_heal_attempts >= max_attempts:
                raise TransitionError(
                    f"Self-heal attempts exhausted for {task_id} "
                    f"({task.self_heal_attempts}/{max_attempts})",
                    task_id=task_id,
                    current=task.state.value,
                    requested=TaskState.IN_PROGRESS.value,
                )
            now = self._clock()
            attempt = task.self_heal_attempts + 1
            self._apply_transition(
                progress,
                task,
                TaskState.IN_PROGRESS,
                now,
                agent_session_id=agent_session_id,
            )
            task.self_heal_attempts = attempt
            task.self_heal_history.append(
                SelfHealEntry(attempt=attempt, action=action, timestamp=now)
            )
            progress.last_updated = now
            self._write_progress(session_id, progress)
        logger.info(
            "Session %s: self-heal attempt %d for %s: %s", session_id, attempt, task_id, action
        )
        return task

    def record_self_heal_result(self, session_id: str, task_id: str, result: str) -> ProgressTask:
        with self._session_lock(session_id):
            progress = self._load_progress_unlocked(session_id)
            task = progress.find(task_id)
            if task is None:
                raise TaskNotFoundError(session_id, task_id)
            if not task.self_heal_history:
                return task
            task.self_heal_history[-1].result = result
            progress.last_updated = self._clock()
            self._write_progress(session_id, progress)
        return task

    def get_task(self, session_id: str, task_id: str) -> ProgressTask:
        task = self._load_progress_unlocked(session_id).find(task_id)
        if task is None:
            raise TaskNotFoundError(session_id, task_id)
        return task

    def get_failed_tasks(self, session_id: str) -> list[ProgressTask]:
        return self._load_progress_unlocked(session_id).in_state(TaskState.FAILED)

    def get_in_progress_task(self, session_id: str) -> ProgressTask | None:
        running = self._load_progress_unlocked(session_id).in_state(TaskState.IN_PROGRESS)
        return running[0] if running else None

    def record_run(self, session_id: str, run_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        with self._session_lock(session_id) as session_dir:
            path = session_dir / RUNS_FILE
            try:
                runs = self._read_json(path)
            except FileNotFoundError:
                runs = []
            if not isinstance(runs, list):
                runs = []
            record: dict[str, Any] | None = None
            for item in runs:
                if isinstance(item, dict) and item.get("run_id") == run_id:
                    record = item
                    break
            if record is None:
                record = {"run_id": run_id}
                runs.append(record)
            record.update(updates)
            self._write_json(path, runs[-50:])
        return record

    def fail_stale_runs(
        self,
        session_id: str,
        is_live: Callable[[dict[str, Any]], bool],
        *,
        error: str,
    ) -> list[str]:
        """Close ``running`` records whose owner is gone. Returns their run ids."""
        with self._session_lock(session_id) as session_dir:
            path = session_dir / RUNS_FILE
            try:
                runs = self._read_json(path)
            except FileNotFoundError:
                return []
            if not isinstance(runs, list):
                return []
            stale = [
                item
                for item in runs
                if isinstance(item, dict) and item.get("status") == "running" and not is_live(item)
            ]
            if not stale:
                return []
            now = self._clock()
            for item in stale:
                item.update({"status": "failed", "ended_at": now, "error": error})
            self._write_json(path, runs)
        return [str(item.get("run_id")) for item in stale]

    def list_runs(self, session_id: str) -> list[dict[str, Any]]:
        path = self.session_dir(session_id) / RUNS_FILE
        try:
            runs = self._read_json(path)
        except FileNotFoundError:
            return []
        return [item for item in runs if isinstance(item, dict)] if isinstance(runs, list) else []

    def request_cancel(self, session_id: str) -> None:
        with self._session_lock(session_id) as session_dir:
            try:
                (session_dir / CANCEL_FILE).write_text(self._clock() + "\n", encoding="utf-8")
            except OSError as exc:
                raise PersistenceError(
                    f"Cannot mark session {session_id} cancelled: {exc}"
                ) from exc
        logger.info("Cancellation requested for session %s", session_id)

    def cancel_requested(self, session_id: str) -> bool:
        return (self.session_dir(session_id) / CANCEL_FILE).exists()

    def clear_cancel(self, session_id: str) -> None:
        try:
            (self.session_dir(session_id) / CANCEL_FILE).unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise PersistenceError(f"Cannot clear cancellation for {session_id}: {exc}") from exc
