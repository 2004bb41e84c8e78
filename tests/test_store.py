import json
import subprocess
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from agentflow.errors import (
    CircularDependencyError,
    PersistenceError,
    SessionNotFoundError,
    TaskNotFoundError,
    TransitionError,
    ValidationError,
)
from agentflow.models import PlanDocument, Task, TaskState
from agentflow.state import ProgressStore, SessionLockRegistry
from agentflow.state.locks import file_lock
from agentflow.state.store import LOCK_FILE, PLAN_FILE, PROGRESS_FILE


def _plan(*tasks: Task, revision_tag: str = "rev-1") -> PlanDocument:
    return PlanDocument(
        task_description="Ship the feature",
        synopsis="Three steps",
        tasks=list(tasks),
        revision_tag=revision_tag,
    )


def _task(task_id: str, *dependencies: str, agent: str = "backend-agent") -> Task:
    return Task(
        id=task_id,
        designated_agent=agent,
        description=f"Do {task_id}",
        files_to_modify=(f"src/{task_id.lower()}.py",),
        dependencies=tuple(dependencies),
    )


def _store(tmp_path: Path) -> ProgressStore:
    store = ProgressStore(tmp_path / "state", lock_timeout_seconds=2.0)
    store.create_or_update_plan("s1", _plan(_task("T1"), _task("T2", "T1"), _task("T3", "T2")))
    return store


def test_create_plan_writes_both_documents(tmp_path: Path) -> None:
    store = _store(tmp_path)

    documents = store.load("s1")
    assert documents.plan.task_ids() == ["T1", "T2", "T3"]
    assert [task.state for task in documents.progress.tasks] == [TaskState.PENDING] * 3
    assert documents.progress.revision_tag == "rev-1"
    assert store.list_sessions() == ["s1"]
    assert store.exists("s1")
    with file_lock(store.session_dir("s1") / LOCK_FILE, timeout_seconds=0.1):
        pass


def test_cyclic_plan_persists_nothing(tmp_path: Path) -> None:
    store = ProgressStore(tmp_path / "state")

    with pytest.raises(CircularDependencyError):
        store.create_or_update_plan("s1", _plan(_task("A", "B"), _task("B", "A")))

    assert not store.session_dir("s1").exists()
    assert store.list_sessions() == []


def test_invalid_session_id_is_rejected(tmp_path: Path) -> None:
    store = ProgressStore(tmp_path / "state")

    with pytest.raises(ValidationError):
        store.create_or_update_plan("../escape", _plan(_task("T1")))


def test_legal_lifecycle_sets_timestamps(tmp_path: Path) -> None:
    store = _store(tmp_path)

    started = store.transition("s1", "T1", TaskState.IN_PROGRESS)
    assert started.started_at is not None
    done = store.transition(
        "s1",
        "T1",
        "completed",
        agent_session_id="agent-1",
        files_modified=["src/t1.py"],
        summary="done",
    )

    assert done.state is TaskState.COMPLETED
    assert done.completed_at is not None
    assert done.agent_session_id == "agent-1"
    assert store.get_task("s1", "T1").files_modified == ["src/t1.py"]


@pytest.mark.parametrize(
    ("path", "target"),
    [
        ([], TaskState.COMPLETED),
        ([], TaskState.FAILED),
        ([TaskState.IN_PROGRESS, TaskState.COMPLETED], TaskState.IN_PROGRESS),
        ([TaskState.IN_PROGRESS, TaskState.COMPLETED], TaskState.FAILED),
        ([TaskState.IN_PROGRESS, TaskState.FAILED], TaskState.COMPLETED),
    ],
)
def test_illegal_transitions_are_rejected(
    tmp_path: Path, path: list[TaskState], target: TaskState
) -> None:
    store = _store(tmp_path)
    for state in path:
        store.transition("s1", "T1", state)
    before = (store.session_dir("s1") / PROGRESS_FILE).read_bytes()

    with pytest.raises(TransitionError):
        store.transition("s1", "T1", target)

    assert (store.session_dir("s1") / PROGRESS_FILE).read_bytes() == before


def test_unknown_state_is_a_validation_error(tmp_path: Path) -> None:
    store = _store(tmp_path)

    with pytest.raises(ValidationError, match="Unknown task state"):
        store.transition("s1", "T1", "paused")


def test_unknown_task_leaves_progress_byte_identical(tmp_path: Path) -> None:
    store = _store(tmp_path)
    progress_path = store.session_dir("s1") / PROGRESS_FILE
    before = progress_path.read_bytes()

    with pytest.raises(TaskNotFoundError):
        store.transition("s1", "TASK-999", TaskState.IN_PROGRESS)

    assert progress_path.read_bytes() == before


def test_unknown_session(tmp_path: Path) -> None:
    store = ProgressStore(tmp_path / "state")

    with pytest.raises(SessionNotFoundError):
        store.transition("missing", "T1", TaskState.IN_PROGRESS)
    with pytest.raises(SessionNotFoundError):
        store.load_progress("missing")


def test_only_one_task_in_progress(tmp_path: Path) -> None:
    store = ProgressStore(tmp_path / "state")
    store.create_or_update_plan("s1", _plan(_task("A"), _task("B")))
    store.transition("s1", "A", TaskState.IN_PROGRESS)

    with pytest.raises(TransitionError, match="already in_progress"):
        store.transition("s1", "B", TaskState.IN_PROGRESS)

    store.transition("s1", "A", TaskState.FAILED)
    store.transition("s1", "B", TaskState.IN_PROGRESS)
    assert store.get_in_progress_task("s1").id == "B"


def test_concurrent_starts_have_exactly_one_winner(tmp_path: Path) -> None:
    store = ProgressStore(tmp_path / "state", lock_timeout_seconds=10.0)
    store.create_or_update_plan("s1", _plan(_task("T1")))

    def _start() -> str:
        try:
            store.transition("s1", "T1", TaskState.IN_PROGRESS)
        except TransitionError:
            return "rejected"
        return "ok"

    with ThreadPoolExecutor(max_workers=3) as pool:
        outcomes = list(pool.map(lambda _: _start(), range(3)))

    assert sorted(outcomes) == ["ok", "rejected", "rejected"]
    assert store.get_task("s1", "T1").state is TaskState.IN_PROGRESS


def test_sessions_do_not_share_locks(tmp_path: Path) -> None:
    registry = SessionLockRegistry()
    store = ProgressStore(tmp_path / "state", locks=registry)
    store.create_or_update_plan("a", _plan(_task("T1")))
    store.create_or_update_plan("b", _plan(_task("T1")))

    with registry.hold("a"):
        store.transition("b", "T1", TaskState.IN_PROGRESS)

    assert registry.lock_for("a") is not registry.lock_for("b")
    assert store.get_task("a", "T1").state is TaskState.PENDING
    assert store.get_task("b", "T1").state is TaskState.IN_PROGRESS


def test_write_failure_releases_locks(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = _store(tmp_path)
    original = ProgressStore._write_json

    def _broken(path: Path, payload: object) -> None:
        raise PersistenceError(f"Cannot write {path}: disk full")

    monkeypatch.setattr(ProgressStore, "_write_json", staticmethod(_broken))
    with pytest.raises(PersistenceError, match="disk full"):
        store.transition("s1", "T1", TaskState.IN_PROGRESS)
    monkeypatch.setattr(ProgressStore, "_write_json", staticmethod(original))

    with file_lock(store.session_dir("s1") / LOCK_FILE, timeout_seconds=0.1):
        pass
    assert not store.locks.lock_for("s1").locked()
    assert store.transition("s1", "T1", TaskState.IN_PROGRESS).state is TaskState.IN_PROGRESS


def test_corrupt_progress_is_a_persistence_error(tmp_path: Path) -> None:
    store = _store(tmp_path)
    (store.session_dir("s1") / PROGRESS_FILE).write_text("{not json", encoding="utf-8")

    with pytest.raises(PersistenceError, match="Corrupt"):
        store.load_progress("s1")


def test_replan_preserves_history_and_adds_new_tasks(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.transition("s1", "T1", TaskState.IN_PROGRESS)
    store.transition("s1", "T1", TaskState.COMPLETED, agent_session_id="a-1", summary="built")
    store.transition("s1", "T2", TaskState.IN_PROGRESS)
    store.transition("s1", "T2", TaskState.FAILED, summary="timed out")
    store.record_self_heal("s1", "T2", action="Retry", max_attempts=3)
    store.transition("s1", "T2", TaskState.FAILED, summary="timed out again")
    created_at = store.load_progress("s1").created_at

    store.create_or_update_plan(
        "s1",
        _plan(
            _task("T1"),
            _task("T2", "T1", agent="frontend-agent"),
            _task("T4", "T2"),
            revision_tag="rev-2",
        ),
    )

    progress = store.load_progress("s1")
    assert [task.id for task in progress.tasks] == ["T1", "T2", "T4"]
    t1, t2, t4 = progress.tasks
    assert t1.state is TaskState.COMPLETED
    assert t1.agent_session_id == "a-1"
    assert t1.summary == "built"
    assert t2.state is TaskState.FAILED
    assert t2.designated_agent == "frontend-agent"
    assert t2.self_heal_attempts == 1
    assert len(t2.self_heal_history) == 1
    assert t4.state is TaskState.PENDING
    assert progress.created_at == created_at
    assert progress.revision_tag == "rev-2"


def test_record_self_heal_books_one_entry(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.transition("s1", "T1", TaskState.IN_PROGRESS)
    store.transition("s1", "T1", TaskState.FAILED, summary="connection reset")

    task = store.record_self_heal("s1", "T1", action="Retrying", max_attempts=1)

    assert task.state is TaskState.IN_PROGRESS
    assert task.self_heal_attempts == 1
    assert [entry.attempt for entry in task.self_heal_history] == [1]

    store.transition("s1", "T1", TaskState.FAILED, summary="connection reset")
    with pytest.raises(TransitionError, match="exhausted"):
        store.record_self_heal("s1", "T1", action="Retrying", max_attempts=1)

    updated = store.record_self_heal_result("s1", "T1", "failed: connection reset")
    assert updated.self_heal_history[-1].result == "failed: connection reset"


def test_record_self_heal_requires_failed_task(tmp_path: Path) -> None:
    store = _store(tmp_path)

    with pytest.raises(TransitionError, match="requires a failed task"):
        store.record_self_heal("s1", "T1", action="Retry", max_attempts=3)


def test_failed_tasks_and_runs(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.transition("s1", "T1", TaskState.IN_PROGRESS)
    store.transition("s1", "T1", TaskState.FAILED, summary="boom")

    assert [task.id for task in store.get_failed_tasks("s1")] == ["T1"]

    store.record_run("s1", "run-1", {"status": "running"})
    store.record_run("s1", "run-1", {"status": "partial"})
    store.record_run("s1", "run-2", {"status": "running"})
    runs = store.list_runs("s1")
    assert [run["run_id"] for run in runs] == ["run-1", "run-2"]
    assert runs[0]["status"] == "partial"


def test_cancel_marker_roundtrip(tmp_path: Path) -> None:
    store = _store(tmp_path)
    assert not store.cancel_requested("s1")

    store.request_cancel("s1")
    assert store.cancel_requested("s1")

    store.clear_cancel("s1")
    store.clear_cancel("s1")
    assert not store.cancel_requested("s1")


def test_documents_are_plain_json(tmp_path: Path) -> None:
    store = _store(tmp_path)

    raw = json.loads((store.session_dir("s1") / PROGRESS_FILE).read_text(encoding="utf-8"))
    assert raw["plan_file"] == "plan.json"
    assert raw["tasks"][0]["state"] == "pending"
    assert raw["tasks"][0]["self_heal_history"] == []


def test_concurrent_self_heal_books_exactly_one_attempt(tmp_path: Path) -> None:
    store = ProgressStore(tmp_path / "state", lock_timeout_seconds=10.0)
    store.create_or_update_plan("s1", _plan(_task("T1")))
    store.transition("s1", "T1", TaskState.IN_PROGRESS)
    store.transition("s1", "T1", TaskState.FAILED, summary="timed out")

    def _heal() -> str:
        try:
            store.record_self_heal("s1", "T1", action="Retrying", max_attempts=3)
        except TransitionError:
            return "rejected"
        return "ok"

    with ThreadPoolExecutor(max_workers=3) as pool:
        outcomes = list(pool.map(lambda _: _heal(), range(3)))

    assert sorted(outcomes) == ["ok", "rejected", "rejected"]
    task = store.get_task("s1", "T1")
    assert task.state is TaskState.IN_PROGRESS
    assert task.self_heal_attempts == 1
    assert len(task.self_heal_history) == 1


def _fail_progress_writes(monkeypatch: pytest.MonkeyPatch) -> None:
    original = ProgressStore._write_json

    def _write(path: Path, payload: object) -> None:
        if path.name == PROGRESS_FILE:
            raise PersistenceError(f"Cannot write {path}: disk full")
        original(path, payload)

    monkeypatch.setattr(ProgressStore, "_write_json", staticmethod(_write))


def test_replan_restores_previous_plan_when_progress_write_fails(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    store = _store(tmp_path)
    plan_path = store.session_dir("s1") / PLAN_FILE
    progress_path = store.session_dir("s1") / PROGRESS_FILE
    plan_before = plan_path.read_bytes()
    progress_before = progress_path.read_bytes()
    _fail_progress_writes(monkeypatch)

    with pytest.raises(PersistenceError, match="disk full"):
        store.create_or_update_plan("s1", _plan(_task("T9"), revision_tag="rev-2"))

    assert plan_path.read_bytes() == plan_before
    assert progress_path.read_bytes() == progress_before


def test_new_session_leaves_no_plan_when_progress_write_fails(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    store = ProgressStore(tmp_path / "state")
    _fail_progress_writes(monkeypatch)

    with pytest.raises(PersistenceError, match="disk full"):
        store.create_or_update_plan("fresh", _plan(_task("T1")))

    assert not (store.session_dir("fresh") / PLAN_FILE).exists()
    assert not store.exists("fresh")


def test_file_lock_times_out_while_held(tmp_path: Path) -> None:
    lock_path = tmp_path / ".lock"

    with file_lock(lock_path):
        with pytest.raises(PersistenceError, match="Timed out"):
            with file_lock(lock_path, timeout_seconds=0.05):
                pass

    with file_lock(lock_path, timeout_seconds=0.05):
        pass


def test_file_lock_is_freed_when_holder_process_dies(tmp_path: Path) -> None:
    lock_path = tmp_path / ".lock"
    holder = subprocess.Popen(
        [
            sys.executable,
            "-c",
            "import fcntl, sys, time\n"
            "handle = open(sys.argv[1], 'a+b')\n"
            "fcntl.flock(handle.fileno(), fcntl.LOCK_EX)\n"
            "print('held', flush=True)\n"
            "time.sleep(30)\n",
            str(lock_path),
        ],
        stdout=subprocess.PIPE,
        text=True,
    )
    try:
        assert holder.stdout is not None
        assert holder.stdout.readline().strip() == "held"
        with pytest.raises(PersistenceError, match="Timed out"):
            with file_lock(lock_path, timeout_seconds=0.05):
                pass
    finally:
        holder.kill()
        holder.wait()
        if holder.stdout is not None:
            holder.stdout.close()

    with file_lock(lock_path, timeout_seconds=1.0):
        pass
