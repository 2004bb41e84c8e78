from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from agentflow.errors import ValidationError


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class TaskState(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.PENDING: frozenset({TaskState.IN_PROGRESS}),
    TaskState.IN_PROGRESS: frozenset({TaskState.COMPLETED, TaskState.FAILED}),
    TaskState.FAILED: frozenset({TaskState.IN_PROGRESS}),
    TaskState.COMPLETED: frozenset(),
}


def _require_str(payload: dict[str, Any], key: str, where: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{where}: '{key}' must be a non-empty string.")
    return value


def _optional_str(payload: dict[str, Any], key: str, where: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{where}: '{key}' must be a string or null.")
    return value


def _str_list(payload: dict[str, Any], key: str, where: str) -> list[str]:
    value = payload.get(key, [])
    if not isinstance(value, list):
        raise ValidationError(f"{where}: '{key}' must be an array.")
    if not all(isinstance(item, str) for item in value):
        raise ValidationError(f"{where}: '{key}' must contain only strings.")
    return list(value)


def _dedupe(values: list[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(values))


def _as_dict(payload: Any, where: str) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValidationError(f"{where}: expected an object.")
    return payload


@dataclass(slots=True, frozen=True)
class Task:
    """One unit of planned work. Immutable for the lifetime of a plan."""

    id: str
    designated_agent: str
    description: str
    files_to_modify: tuple[str, ...] = ()
    dependencies: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "designated_agent": self.designated_agent,
            "description": self.description,
            "files_to_modify": list(self.files_to_modify),
            "dependencies": list(self.dependencies),
        }

    @classmethod
    def from_dict(cls, payload: Any) -> Task:
        data = _as_dict(payload, "task")
        task_id = _require_str(data, "id", "task")
        where = f"task {task_id}"
        return cls(
            id=task_id,
            designated_agent=_require_str(data, "designated_agent", where),
            description=_require_str(data, "description", where),
            files_to_modify=tuple(_str_list(data, "files_to_modify", where)),
            dependencies=_dedupe(_str_list(data, "dependencies", where)),
        )


@dataclass(slots=True)
class SelfHealEntry:
    attempt: int
    action: str
    timestamp: str
    result: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt": self.attempt,
            "action": self.action,
            "timestamp": self.timestamp,
            "result": self.result,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> SelfHealEntry:
        data = _as_dict(payload, "self_heal_history entry")
        attempt = data.get("attempt")
        if not isinstance(attempt, int) or isinstance(attempt, bool) or attempt < 1:
            raise ValidationError("self_heal_history entry: 'attempt' must be a positive integer.")
        return cls(
            attempt=attempt,
            action=_require_str(data, "action", "self_heal_history entry"),
            timestamp=_require_str(data, "timestamp", "self_heal_history entry"),
            result=_optional_str(data, "result", "self_heal_history entry"),
        )


@dataclass(slots=True)
class ProgressTask:
    """Mutable execution record for one planned task."""

    id: str
    designated_agent: str
    description: str
    files_to_modify: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    state: TaskState = TaskState.PENDING
    agent_session_id: str | None = None
    files_modified: list[str] = field(default_factory=list)
    summary: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    failed_at: str | None = None
    self_heal_attempts: int = 0
    self_heal_history: list[SelfHealEntry] = field(default_factory=list)

    @classmethod
    def from_task(cls, task: Task) -> ProgressTask:
        return cls(
            id=task.id,
            designated_agent=task.designated_agent,
            description=task.description,
            files_to_modify=list(task.files_to_modify),
            dependencies=list(task.dependencies),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "designated_agent": self.designated_agent,
            "description": self.description,
            "files_to_modify": list(self.files_to_modify),
            "dependencies": list(self.dependencies),
            "state": self.state.value,
            "agent_session_id": self.agent_session_id,
            "files_modified": list(self.files_modified),
            "summary": self.summary,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "failed_at": self.failed_at,
            "self_heal_attempts": self.self_heal_attempts,
            "self_heal_history": [entry.to_dict() for entry in self.self_heal_history],
        }

    @classmethod
    def from_dict(cls, payload: Any) -> ProgressTask:
        data = _as_dict(payload, "progress task")
        task_id = _require_str(data, "id", "progress task")
        where = f"progress task {task_id}"
        raw_state = data.get("state", TaskState.PENDING.value)
        try:
            state = TaskState(raw_state)
        except ValueError as exc:
            raise ValidationError(f"{where}: unknown state '{raw_state}'.") from exc
        attempts = data.get("self_heal_attempts", 0)
        if not isinstance(attempts, int) or isinstance(attempts, bool) or attempts < 0:
            raise ValidationError(f"{where}: 'self_heal_attempts' must be a non-negative integer.")
        history = data.get("self_heal_history", [])
        if not isinstance(history, list):
            raise ValidationError(f"{where}: 'self_heal_history' must be an array.")
        return cls(
            id=task_id,
            designated_agent=_require_str(data, "designated_agent", where),
            description=_require_str(data, "description", where),
            files_to_modify=_str_list(data, "files_to_modify", where),
            dependencies=_str_list(data, "dependencies", where),
            state=state,
            agent_session_id=_optional_str(data, "agent_session_id", where),
            files_modified=_str_list(data, "files_modified", where),
            summary=_optional_str(data, "summary", where),
            started_at=_optional_str(data, "started_at", where),
            completed_at=_optional_str(data, "completed_at", where),
            failed_at=_optional_str(data, "failed_at", where),
            self_heal_attempts=attempts,
            self_heal_history=[SelfHealEntry.from_dict(item) for item in history],
        )


@dataclass(slots=True)
class PlanDocument:
    """Declared intent for a session. Replacing it never discards progress."""

    task_description: str
    synopsis: str
    tasks: list[Task]
    created_at: str = field(default_factory=utcnow_iso)
    revision_tag: str | None = None

    def task_ids(self) -> list[str]:
        return [task.id for task in self.tasks]

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_description": self.task_description,
            "synopsis": self.synopsis,
            "created_at": self.created_at,
            "revision_tag": self.revision_tag,
            "tasks": [task.to_dict() for task in self.tasks],
        }

    @classmethod
    def from_dict(cls, payload: Any) -> PlanDocument:
        data = _as_dict(payload, "plan")
        tasks = data.get("tasks")
        if not isinstance(tasks, list):
            raise ValidationError("plan: 'tasks' must be an array.")
        return cls(
            task_description=_require_str(data, "task_description", "plan"),
            synopsis=_require_str(data, "synopsis", "plan"),
            tasks=[Task.from_dict(item) for item in tasks],
            created_at=_require_str(data, "created_at", "plan"),
            revision_tag=_optional_str(data, "revision_tag", "plan"),
        )


@dataclass(slots=True)
class ProgressDocument:
    """Execution truth for a session; the only document mutated during a run."""

    plan_file: str
    tasks: list[ProgressTask]
    created_at: str = field(default_factory=utcnow_iso)
    last_updated: str = field(default_factory=utcnow_iso)
    revision_tag: str | None = None

    def find(self, task_id: str) -> ProgressTask | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def in_state(self, state: TaskState) -> list[ProgressTask]:
        return [task for task in self.tasks if task.state is state]

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_file": self.plan_file,
            "created_at": self.created_at,
            "last_updated": self.last_updated,
            "revision_tag": self.revision_tag,
            "tasks": [task.to_dict() for task in self.tasks],
        }

    @classmethod
    def from_dict(cls, payload: Any) -> ProgressDocument:
        data = _as_dict(payload, "progress")
        tasks = data.get("tasks")
        if not isinstance(tasks, list):
            raise ValidationError("progress: 'tasks' must be an array.")
        progress_tasks = [ProgressTask.from_dict(item) for item in tasks]
        running = [task.id for task in progress_tasks if task.state is TaskState.IN_PROGRESS]
        if len(running) > 1:
            raise ValidationError(
                "progress: more than one task is in_progress: " + ", ".join(running)
            )
        return cls(
            plan_file=_require_str(data, "plan_file", "progress"),
            tasks=progress_tasks,
            created_at=_require_str(data, "created_at", "progress"),
            last_updated=_require_str(data, "last_updated", "progress"),
            revision_tag=_optional_str(data, "revision_tag", "progress"),
        )
