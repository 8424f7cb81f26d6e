"""Dependency graph resolution for task batches.

Pure queries over task descriptors: topological ordering, cycle detection,
informational levels, and the live ready set used by the scheduler. Nothing
here touches runtime state or I/O.
"""

from collections import deque
from collections.abc import Collection, Iterable, Sequence
from dataclasses import dataclass, field

from taskbatch.errors import (
    CyclicDependencyError,
    DuplicateTaskError,
    UnknownDependencyError,
)
from taskbatch.models import TaskDescriptor


@dataclass
class DAGAnalysis:
    """Static shape of a batch.

    Attributes:
        sorted: Task ids in a valid execution order
        levels: Task ids grouped by dependency depth (level 0 has no deps)
        entry_points: Tasks with no dependencies
        exit_points: Tasks nothing depends on
    """

    sorted: list[str] = field(default_factory=list)
    levels: list[list[str]] = field(default_factory=list)
    entry_points: list[str] = field(default_factory=list)
    exit_points: list[str] = field(default_factory=list)


class DependencyGraph:
    """Validated dependency graph over a list of task descriptors.

    Construction checks for duplicate ids and unknown dependencies. Cycles
    surface from topological_order(), which every other whole-graph query
    goes through.

    Usage:
        graph = DependencyGraph(tasks)
        graph.topological_order()  # raises CyclicDependencyError
        graph.ready(completed={"a"}, running={"b"})
    """

    def __init__(self, tasks: Sequence[TaskDescriptor]) -> None:
        self._order: list[str] = []
        self._deps: dict[str, tuple[str, ...]] = {}
        self._dependents: dict[str, list[str]] = {}

        for task in tasks:
            if task.id in self._deps:
                raise DuplicateTaskError(task.id)
            self._order.append(task.id)
            self._deps[task.id] = tuple(task.depends_on)
            self._dependents[task.id] = []

        for task_id in self._order:
            for dep in self._deps[task_id]:
                if dep not in self._deps:
                    raise UnknownDependencyError(task_id, dep)
                self._dependents[dep].append(task_id)

    @property
    def task_ids(self) -> list[str]:
        """Task ids in declaration order."""
        return list(self._order)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._deps

    def __len__(self) -> int:
        return len(self._order)

    def direct_dependencies(self, task_id: str) -> tuple[str, ...]:
        return self._deps[task_id]

    def topological_order(self) -> list[str]:
        """Order tasks so every dependency precedes its dependents.

        Kahn's algorithm; among tasks that become available together the
        declaration order is kept.

        Raises:
            CyclicDependencyError: With the ids that could not be ordered
        """
        in_degree = {tid: len(self._deps[tid]) for tid in self._order}
        queue = deque(tid for tid in self._order if in_degree[tid] == 0)
        result: list[str] = []

        while queue:
            current = queue.popleft()
            result.append(current)
            for dependent in self._dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(result) != len(self._order):
            remaining = [tid for tid in self._order if in_degree[tid] > 0]
            raise CyclicDependencyError(remaining)

        return result

    def levels(self) -> list[list[str]]:
        """Group tasks by depth: 0 without deps, else 1 + max(dep level)."""
        level_of: dict[str, int] = {}
        for task_id in self.topological_order():
            deps = self._deps[task_id]
            level_of[task_id] = 1 + max(level_of[d] for d in deps) if deps else 0

        if not level_of:
            return []

        grouped: list[list[str]] = [[] for _ in range(max(level_of.values()) + 1)]
        for task_id in self._order:
            grouped[level_of[task_id]].append(task_id)
        return grouped

    def analyze(self) -> DAGAnalysis:
        return DAGAnalysis(
            sorted=self.topological_order(),
            levels=self.levels(),
            entry_points=[tid for tid in self._order if not self._deps[tid]],
            exit_points=[tid for tid in self._order if not self._dependents[tid]],
        )

    def ready(
        self, completed: Collection[str], running: Collection[str]
    ) -> list[str]:
        """Tasks whose dependencies are all completed, in declaration order.

        Tasks already in completed or running are excluded. The caller is
        responsible for filtering out tasks in other terminal statuses.
        """
        return [
            tid
            for tid in self._order
            if tid not in completed
            and tid not in running
            and all(dep in completed for dep in self._deps[tid])
        ]

    def dependencies(self, task_id: str) -> set[str]:
        """All tasks task_id transitively depends on."""
        return self._walk(task_id, self._deps)

    def dependents(self, task_id: str) -> set[str]:
        """All tasks that transitively depend on task_id."""
        return self._walk(task_id, self._dependents)

    def would_create_cycle(self, from_id: str, to_id: str) -> bool:
        """Whether adding "from_id depends on to_id" would close a cycle."""
        if from_id == to_id:
            return True
        return from_id in self.dependencies(to_id)

    def _walk(
        self, start: str, edges: dict[str, tuple[str, ...]] | dict[str, list[str]]
    ) -> set[str]:
        if start not in self._deps:
            raise KeyError(start)
        seen: set[str] = set()
        queue = deque(edges[start])
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(edges[current])
        return seen


def topological_sort(tasks: Sequence[TaskDescriptor]) -> list[str]:
    return DependencyGraph(tasks).topological_order()


def analyze_dag(tasks: Sequence[TaskDescriptor]) -> DAGAnalysis:
    return DependencyGraph(tasks).analyze()


def get_ready_tasks(
    tasks: Sequence[TaskDescriptor],
    completed: Iterable[str],
    running: Iterable[str],
) -> list[str]:
    return DependencyGraph(tasks).ready(set(completed), set(running))


def validate_graph(tasks: Sequence[TaskDescriptor]) -> DependencyGraph:
    """Build the graph and check it is acyclic.

    Returns:
        The validated graph

    Raises:
        DuplicateTaskError, UnknownDependencyError, CyclicDependencyError
    """
    graph = DependencyGraph(tasks)
    graph.topological_order()
    return graph
