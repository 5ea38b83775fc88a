"""
Dependency resolution for one phase.

Pure functions over a phase's task set: given the current task statuses and
declared dependencies, compute the next batch of tasks to dispatch. Nothing
here touches storage.

Dependencies are scoped to the phase: ids in ``depends_on`` that don't name
a task of the same phase are ignored (phase order already sequences work
across phases).
"""

from __future__ import annotations

from collections.abc import Sequence

from planloom.core.errors import DependencyDeadlock
from planloom.core.plans.models import ExecutionMode, Task, TaskStatus


class PhaseGraph:
    """
    Dependency graph for the tasks of a single phase.

    Tasks are kept in dispatch order: ascending ``order``, ties broken by
    declaration order.
    """

    def __init__(self, tasks: Sequence[Task]) -> None:
        # sorted() is stable, so equal orders keep declaration order
        self.tasks: list[Task] = sorted(tasks, key=lambda t: t.order)
        self._by_id: dict[str, Task] = {t.id: t for t in self.tasks}
        self._deps: dict[str, list[str]] = {
            t.id: [d for d in dict.fromkeys(t.depends_on) if d in self._by_id and d != t.id]
            for t in self.tasks
        }

    def dependencies(self, task_id: str) -> list[str]:
        """In-phase dependencies of a task."""
        return list(self._deps.get(task_id, []))

    def unsatisfied(self, task_id: str) -> list[str]:
        """Dependencies of a task that are not yet completed or skipped."""
        return [
            dep
            for dep in self._deps.get(task_id, [])
            if not self._by_id[dep].status.satisfies_dependency
        ]

    def is_eligible(self, task: Task) -> bool:
        """A task is eligible iff it is pending and all its dependencies are satisfied."""
        return task.status == TaskStatus.PENDING and not self.unsatisfied(task.id)

    def eligible(self) -> list[Task]:
        """All eligible tasks, in dispatch order."""
        return [t for t in self.tasks if self.is_eligible(t)]

    def running(self) -> list[Task]:
        return [t for t in self.tasks if t.status == TaskStatus.RUNNING]

    def find_cycle(self, among: set[str] | None = None) -> list[str]:
        """
        Find a dependency cycle using three-color DFS (white / gray / black).

        Args:
            among: Restrict the search to these task ids (defaults to all)

        Returns:
            Task ids forming the cycle in dependency order, or [] if acyclic
        """
        nodes = [t.id for t in self.tasks if among is None or t.id in among]
        WHITE, GRAY, BLACK = 0, 1, 2  # noqa: N806
        color: dict[str, int] = {tid: WHITE for tid in nodes}
        stack: list[str] = []

        def _visit(node: str) -> list[str]:
            color[node] = GRAY
            stack.append(node)
            for dep in self._deps.get(node, []):
                if dep not in color:
                    continue
                if color[dep] == GRAY:
                    return stack[stack.index(dep):]
                if color[dep] == WHITE:
                    found = _visit(dep)
                    if found:
                        return found
            stack.pop()
            color[node] = BLACK
            return []

        for tid in nodes:
            if color[tid] == WHITE:
                found = _visit(tid)
                if found:
                    return list(found)
        return []


def check_deadlock(phase_id: str, tasks: Sequence[Task]) -> None:
    """
    Raise DependencyDeadlock if the phase can never make progress.

    A phase is deadlocked when pending tasks remain but none is eligible,
    nothing is running, and no failed task explains the stall (failures are
    handled by the failure policy, not reported as deadlock).

    Raises:
        DependencyDeadlock: With the blocked tasks and any cycle among them
    """
    graph = PhaseGraph(tasks)
    pending = [t for t in graph.tasks if t.status == TaskStatus.PENDING]
    if not pending or graph.eligible() or graph.running():
        return
    if any(t.status == TaskStatus.FAILED for t in graph.tasks):
        return

    blocked = {t.id: graph.unsatisfied(t.id) for t in pending}
    cycle = graph.find_cycle(among=set(blocked))
    raise DependencyDeadlock(phase_id, blocked, cycle)


def resolve_next_batch(
    mode: ExecutionMode,
    tasks: Sequence[Task],
    *,
    phase_id: str | None = None,
) -> list[Task]:
    """
    Compute the next batch of tasks eligible to start in a phase.

    - SEQUENTIAL: at most one task, and only when nothing is running
    - PARALLEL: every eligible task that can run in parallel; a task that
      can't runs alone (only when nothing else runs, and nothing starts
      beside it)
    - MANUAL: never anything; manual tasks are triggered explicitly

    Args:
        mode: Phase execution mode
        tasks: All tasks of the phase
        phase_id: Phase id, used when reporting a deadlock

    Returns:
        Tasks to dispatch now, in dispatch order (possibly empty)

    Raises:
        DependencyDeadlock: If no progress is possible (see check_deadlock)
    """
    if mode == ExecutionMode.MANUAL:
        return []

    graph = PhaseGraph(tasks)
    running = graph.running()
    eligible = graph.eligible()

    if not eligible:
        if tasks:
            check_deadlock(phase_id or tasks[0].phase_id, tasks)
        return []

    if mode == ExecutionMode.SEQUENTIAL:
        return [] if running else eligible[:1]

    # Parallel mode
    if any(not t.can_run_in_parallel for t in running):
        return []

    head = eligible[0]
    if not head.can_run_in_parallel:
        return [] if running else [head]
    return [t for t in eligible if t.can_run_in_parallel]
