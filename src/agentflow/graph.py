"""Dependency graph over a plan's tasks.

Validation happens on construction: duplicate ids, dependencies on tasks that
are not part of the plan and cycles are all rejected before anything is
persisted. The execution order is a topological order in which ties are broken
by declaration order, so two runs over the same plan always dispatch tasks in
the same sequence.
"""

from __future__ import annotations

import heapq
from collections.abc import Iterator, Sequence
from dataclasses import dataclass

from agentflow.errors import CircularDependencyError, DuplicateTaskError, UnknownDependencyError
from agentflow.models import Task


@dataclass(slots=True, frozen=True)
class ExecutionOrder:
    task_ids: tuple[str, ...]

    def __iter__(self) -> Iterator[str]:
        return iter(self.task_ids)

    def __len__(self) -> int:
        return len(self.task_ids)

    def position(self, task_id: str) -> int:
        return self.task_ids.index(task_id)


class TaskGraph:
    def __init__(self, tasks: Sequence[Task]) -> None:
        self._index: dict[str, int] = {}
        self._dependencies: dict[str, tuple[str, ...]] = {}
        self._dependents: dict[str, list[str]] = {}
        for index, task in enumerate(tasks):
            if task.id in self._index:
                raise DuplicateTaskError(task.id)
            self._index[task.id] = index
            self._dependencies[task.id] = tuple(task.dependencies)
            self._dependents[task.id] = []

        for task in tasks:
            for dependency_id in task.dependencies:
                if dependency_id not in self._index:
                    raise UnknownDependencyError(task.id, dependency_id)
                self._dependents[dependency_id].append(task.id)

        cycle = self._find_cycle()
        if cycle is not None:
            raise CircularDependencyError(cycle)

    @classmethod
    def build(cls, tasks: Sequence[Task]) -> ExecutionOrder:
        return cls(tasks).execution_order()

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._index

    def dependencies_of(self, task_id: str) -> tuple[str, ...]:
        return self._dependencies[task_id]

    def dependents_of(self, task_id: str) -> set[str]:
        """Every task that transitively depends on ``task_id``."""
        seen: set[str] = set()
        frontier = list(self._dependents[task_id])
        while frontier:
            current = frontier.pop()
            if current in seen:
                continue
            seen.add(current)
            frontier.extend(self._dependents[current])
        return seen

    def _find_cycle(self) -> list[str] | None:
        visiting: set[str] = set()
        done: set[str] = set()
        for root in self._index:
            if root in done:
                continue
            path = [root]
            stack = [iter(self._dependencies[root])]
            visiting.add(root)
            while stack:
                child = next(stack[-1], None)
                if child is None:
                    stack.pop()
                    finished = path.pop()
                    visiting.discard(finished)
                    done.add(finished)
                    continue
                if child in visiting:
                    start = path.index(child)
                    return [*path[start:], child]
                if child in done:
                    continue
                visiting.add(child)
                path.append(child)
                stack.append(iter(self._dependencies[child]))
        return None

    def execution_order(self) -> ExecutionOrder:
        unmet = {task_id: len(deps) for task_id, deps in self._dependencies.items()}
        ready = [(self._index[task_id], task_id) for task_id, count in unmet.items() if count == 0]
        heapq.heapify(ready)
        ordered: list[str] = []
        while ready:
            _, task_id = heapq.heappop(ready)
            ordered.append(task_id)
            for dependent in self._dependents[task_id]:
                unmet[dependent] -= 1
                if unmet[dependent] == 0:
                    heapq.heappush(ready, (self._index[dependent], dependent))
        return ExecutionOrder(tuple(ordered))
