import pytest

from agentflow.errors import (
    CircularDependencyError,
    DuplicateTaskError,
    UnknownDependencyError,
    ValidationError,
)
from agentflow.graph import TaskGraph
from agentflow.models import Task


def _task(task_id: str, *dependencies: str) -> Task:
    return Task(
        id=task_id,
        designated_agent="backend-agent",
        description=f"work for {task_id}",
        dependencies=tuple(dependencies),
    )


def test_linear_chain_orders_dependencies_first() -> None:
    order = TaskGraph.build([_task("T3", "T2"), _task("T1"), _task("T2", "T1")])

    assert list(order) == ["T1", "T2", "T3"]


def test_ties_follow_declaration_order() -> None:
    order = TaskGraph.build(
        [_task("B"), _task("A"), _task("D", "A", "B"), _task("C", "A")]
    )

    assert list(order) == ["B", "A", "D", "C"]
    assert order.position("D") < order.position("C")


def test_diamond_runs_join_after_both_branches() -> None:
    order = TaskGraph.build(
        [
            _task("root"),
            _task("left", "root"),
            _task("right", "root"),
            _task("join", "left", "right"),
        ]
    )

    assert order.position("root") == 0
    assert order.position("join") == 3
    assert len(order) == 4


def test_cycle_is_rejected_with_path() -> None:
    with pytest.raises(CircularDependencyError) as excinfo:
        TaskGraph([_task("A", "B"), _task("B", "A")])

    assert excinfo.value.cycle in (["A", "B", "A"], ["B", "A", "B"])
    assert "Circular dependency detected" in str(excinfo.value)


def test_self_dependency_is_a_cycle() -> None:
    with pytest.raises(CircularDependencyError, match="A -> A"):
        TaskGraph([_task("A", "A")])


def test_longer_cycle_behind_valid_prefix() -> None:
    with pytest.raises(CircularDependencyError) as excinfo:
        TaskGraph([_task("T0"), _task("T1", "T0", "T3"), _task("T2", "T1"), _task("T3", "T2")])

    cycle = excinfo.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"T1", "T2", "T3"}


def test_unknown_dependency_is_rejected() -> None:
    with pytest.raises(UnknownDependencyError, match="TASK-404"):
        TaskGraph([_task("T1", "TASK-404")])


def test_duplicate_ids_are_rejected() -> None:
    with pytest.raises(DuplicateTaskError):
        TaskGraph([_task("T1"), _task("T1")])


def test_graph_errors_are_validation_errors() -> None:
    assert issubclass(CircularDependencyError, ValidationError)
    assert issubclass(UnknownDependencyError, ValidationError)


def test_dependents_are_transitive() -> None:
    graph = TaskGraph([_task("T1"), _task("T2", "T1"), _task("T3", "T2"), _task("T4")])

    assert graph.dependents_of("T1") == {"T2", "T3"}
    assert graph.dependents_of("T4") == set()
    assert graph.dependencies_of("T3") == ("T2",)
    assert "T4" in graph
    assert "T9" not in graph


def test_empty_plan_has_empty_order() -> None:
    assert list(TaskGraph.build([])) == []
