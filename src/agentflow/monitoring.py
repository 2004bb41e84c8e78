from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Any

from agentflow.models import utcnow_iso
from agentflow.state.store import ProgressStore

logger = logging.getLogger(__name__)


class MonitoringRecorder:
    """Receives lifecycle events from the engine.

    The hooks turn their arguments into one flat event and hand it to
    :meth:`record`, which does nothing here. Subclasses decide where events go.
    """

    def record(self, event: dict[str, Any]) -> None:
        _ = event

    def on_orchestration_start(
        self,
        session_id: str,
        *,
        run_id: str,
        task_description: str,
        total_tasks: int,
        revision_tag: str | None = None,
    ) -> None:
        self.record(
            {
                "event": "orchestration_start",
                "session_id": session_id,
                "run_id": run_id,
                "task_description": task_description,
                "total_tasks": total_tasks,
                "revision_tag": revision_tag,
                "at": utcnow_iso(),
            }
        )

    def on_orchestration_complete(
        self,
        session_id: str,
        *,
        run_id: str,
        status: str,
        completed_tasks: int,
        failed_tasks: int,
        duration_seconds: float,
    ) -> None:
        self.record(
            {
                "event": "orchestration_complete",
                "session_id": session_id,
                "run_id": run_id,
                "status": status,
                "completed_tasks": completed_tasks,
                "failed_tasks": failed_tasks,
                "duration_seconds": round(duration_seconds, 3),
                "at": utcnow_iso(),
            }
        )

    def on_task_start(
        self,
        session_id: str,
        task_id: str,
        *,
        agent_type: str,
        attempt: int,
    ) -> None:
        self.record(
            {
                "event": "task_start",
                "session_id": session_id,
                "task_id": task_id,
                "agent_type": agent_type,
                "attempt": attempt,
                "at": utcnow_iso(),
            }
        )

    def on_task_complete(
        self,
        session_id: str,
        task_id: str,
        *,
        status: str,
        agent_session_id: str | None = None,
        files_modified: list[str] | None = None,
        error: str | None = None,
        self_healed: bool = False,
    ) -> None:
        self.record(
            {
                "event": "task_complete",
                "session_id": session_id,
                "task_id": task_id,
                "status": status,
                "agent_session_id": agent_session_id,
                "files_modified": list(files_modified or []),
                "error": error,
                "self_healed": self_healed,
                "at": utcnow_iso(),
            }
        )


class LoggingRecorder(MonitoringRecorder):
    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    def record(self, event: dict[str, Any]) -> None:
        details = " ".join(
            f"{key}={value}"
            for key, value in event.items()
            if key not in {"event", "at"} and value not in (None, [], "")
        )
        logger.log(self.level, "%s %s", event["event"], details)


class EventLogRecorder(MonitoringRecorder):
    """Appends events as JSON lines to ``events.jsonl`` in the session directory."""

    def __init__(self, store: ProgressStore) -> None:
        self.store = store

    def record(self, event: dict[str, Any]) -> None:
        path = self.store.events_file(str(event["session_id"]))
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(event, ensure_ascii=False, separators=(",", ":")) + "\n")

    def read_events(self, session_id: str, limit: int = 200) -> list[dict[str, Any]]:
        path = self.store.events_file(session_id)
        if not path.exists():
            return []
        events: list[dict[str, Any]] = []
        for raw_line in path.read_text(encoding="utf-8").splitlines():
            line = raw_line.strip()
            if not line:
                continue
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                events.append(parsed)
        return events[-limit:]


class CompositeRecorder(MonitoringRecorder):
    def __init__(self, recorders: Iterable[MonitoringRecorder]) -> None:
        self.recorders = list(recorders)

    def record(self, event: dict[str, Any]) -> None:
        for recorder in self.recorders:
            recorder.record(event)
