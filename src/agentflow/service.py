from __future__ import annotations

import logging
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from agentflow.errors import ValidationError
from agentflow.models import (
    PlanDocument,
    ProgressDocument,
    ProgressTask,
    Task,
    TaskState,
    utcnow_iso,
)
from agentflow.state.store import ProgressStore

logger = logging.getLogger(__name__)

STATE_MARKERS = {
    TaskState.PENDING: "[ ]",
    TaskState.IN_PROGRESS: "[~]",
    TaskState.COMPLETED: "[x]",
    TaskState.FAILED: "[!]",
}


@dataclass(slots=True)
class CreatedPlan:
    session_id: str
    plan: PlanDocument
    progress: ProgressDocument


def git_revision_tag(repo_root: Path) -> str:
    """Commit hash of ``repo_root``'s HEAD, or a timestamped placeholder outside git."""
    try:
        completed = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            cwd=repo_root,
            text=True,
            capture_output=True,
            check=False,
        )
    except OSError:
        completed = None
    if completed is not None and completed.returncode == 0 and completed.stdout.strip():
        return completed.stdout.strip()
    return f"no-commit-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}"


def _nonempty(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _coerce_task(raw: Task | dict[str, Any]) -> Task:
    if isinstance(raw, Task):
        return raw
    if not isinstance(raw, dict):
        raise ValidationError("Each task must have id, designated_agent, and description")
    if not all(_nonempty(raw.get(key)) for key in ("id", "designated_agent", "description")):
        raise ValidationError("Each task must have id, designated_agent, and description")
    if not isinstance(raw.get("files_to_modify"), list):
        raise ValidationError("Each task must have files_to_modify as an array")
    if not isinstance(raw.get("dependencies"), list):
        raise ValidationError("Each task must have dependencies as an array")
    return Task.from_dict(raw)


class PlanService:
    """Caller-facing operations over a :class:`ProgressStore`."""

    def __init__(
        self,
        store: ProgressStore,
        *,
        repo_root: Path | None = None,
        revision_provider: Callable[[], str] | None = None,
    ) -> None:
        self.store = store
        self.repo_root = (repo_root or Path.cwd()).resolve()
        self._revision_provider = revision_provider or (lambda: git_revision_tag(self.repo_root))

    def create_plan(
        self,
        task_description: str,
        synopsis: str,
        tasks: list[Task] | list[dict[str, Any]],
        session_id: str | None = None,
    ) -> CreatedPlan:
        if not _nonempty(task_description):
            raise ValidationError("task_description is required and cannot be empty")
        if not _nonempty(synopsis):
            raise ValidationError("synopsis is required and cannot be empty")
        if not isinstance(tasks, list) or not tasks:
            raise ValidationError("tasks array is required and cannot be empty")

        session_id = session_id or str(uuid4())
        self.store.validate_session_id(session_id)
        plan = PlanDocument(
            task_description=task_description,
            synopsis=synopsis,
            tasks=[_coerce_task(item) for item in tasks],
            created_at=utcnow_iso(),
            revision_tag=self._revision_provider(),
        )
        documents = self.store.create_or_update_plan(session_id, plan)
        return CreatedPlan(session_id=session_id, plan=documents.plan, progress=documents.progress)

    def update_progress(
        self,
        session_id: str,
        task_id: str,
        state: TaskState | str,
        agent_session_id: str | None = None,
        files_modified: list[str] | None = None,
        summary: str | None = None,
    ) -> ProgressTask:
        return self.store.transition(
            session_id,
            task_id,
            state,
            agent_session_id=agent_session_id,
            files_modified=files_modified,
            summary=summary,
        )

    def compare_plan_progress(self, session_id: str) -> dict[str, Any]:
        documents = self.store.load(session_id)
        plan = documents.plan
        progress = documents.progress

        comparisons: list[dict[str, Any]] = []
        critical_missing: list[str] = []
        all_unexpected: list[str] = []
        for task in progress.tasks:
            planned = list(task.files_to_modify)
            actual = list(task.files_modified)
            missing = [path for path in planned if path not in actual]
            unexpected = [path for path in actual if path not in planned]
            started = task.state is not TaskState.PENDING
            has_discrepancy = started and bool(missing or unexpected)
            if has_discrepancy:
                critical_missing.extend(path for path in missing if path not in critical_missing)
                all_unexpected.extend(path for path in unexpected if path not in all_unexpected)
            comparisons.append(
                {
                    "task_id": task.id,
                    "description": task.description,
                    "designated_agent": task.designated_agent,
                    "state": task.state.value,
                    "planned_files": planned,
                    "actual_files": actual,
                    "missing_files": missing,
                    "unexpected_files": unexpected,
                    "has_discrepancy": has_discrepancy,
                    "summary": task.summary,
                }
            )

        total = len(progress.tasks)
        completed = len(progress.in_state(TaskState.COMPLETED))
        return {
            "session_id": session_id,
            "revision_tag": plan.revision_tag,
            "overall_goal": plan.task_description,
            "synopsis": plan.synopsis,
            "generated_at": utcnow_iso(),
            "task_comparisons": comparisons,
            "summary": {
                "total_tasks": total,
                "completed_tasks": completed,
                "in_progress_tasks": len(progress.in_state(TaskState.IN_PROGRESS)),
                "pending_tasks": len(progress.in_state(TaskState.PENDING)),
                "failed_tasks": len(progress.in_state(TaskState.FAILED)),
                "tasks_with_discrepancies": sum(
                    1 for item in comparisons if item["has_discrepancy"]
                ),
                "overall_completion_percentage": round(completed * 100 / total) if total else 0,
                "root_task_completed": total > 0 and completed == total,
            },
            "discrepancy_analysis": {
                "critical_missing_files": critical_missing,
                "all_unexpected_files": all_unexpected,
            },
        }

    def get_failed_tasks(self, session_id: str) -> list[dict[str, Any]]:
        return [
            {
                "task_id": task.id,
                "designated_agent": task.designated_agent,
                "failure_reason": task.summary,
                "failed_at": task.failed_at,
                "self_heal_attempts": task.self_heal_attempts,
                "self_heal_history": [entry.to_dict() for entry in task.self_heal_history],
            }
            for task in self.store.get_failed_tasks(session_id)
        ]


def format_plan_summary(session_id: str, plan: PlanDocument, progress: ProgressDocument) -> str:
    lines = [
        "=== EXECUTION PLAN SUMMARY ===",
        "",
        f"Session: {session_id}",
        f"Task: {plan.task_description}",
        f"Synopsis: {plan.synopsis}",
        f"Created: {plan.created_at}",
        f"Revision: {plan.revision_tag or 'unknown'}",
        "",
        f"Tasks ({len(progress.tasks)}):",
    ]
    for task in progress.tasks:
        lines.append(f"  {STATE_MARKERS[task.state]} {task.id}: {task.description}")
        lines.append(f"      agent: {task.designated_agent}")
        if task.files_to_modify:
            lines.append(f"      files: {', '.join(task.files_to_modify)}")
        if task.dependencies:
            lines.append(f"      depends on: {', '.join(task.dependencies)}")
    return "\n".join(lines)


def format_comparison_summary(report: dict[str, Any]) -> str:
    summary = report["summary"]
    analysis = report["discrepancy_analysis"]
    lines = [
        "=== PLAN VS PROGRESS COMPARISON SUMMARY ===",
        "",
        f"Goal: {report['overall_goal']}",
        f"Revision: {report.get('revision_tag') or 'unknown'}",
        "",
        "Task Completion Status:",
        f"  completed: {summary['completed_tasks']}/{summary['total_tasks']}"
        f" ({summary['overall_completion_percentage']}%)",
        f"  in progress: {summary['in_progress_tasks']}",
        f"  pending: {summary['pending_tasks']}",
        f"  failed: {summary['failed_tasks']}",
        "",
        "Discrepancy Analysis:",
        f"  tasks with discrepancies: {summary['tasks_with_discrepancies']}",
    ]
    for item in report["task_comparisons"]:
        if not item["has_discrepancy"]:
            continue
        lines.append(f"  {item['task_id']} ({item['state']})")
        for path in item["missing_files"]:
            lines.append(f"    missing: {path}")
        for path in item["unexpected_files"]:
            lines.append(f"    unexpected: {path}")
    if not analysis["critical_missing_files"] and not analysis["all_unexpected_files"]:
        lines.append("  none")
    lines.extend(
        [
            "",
            "Root Task Achievement:",
            "  achieved" if summary["root_task_completed"] else "  not yet achieved",
        ]
    )
    return "\n".join(lines)
