"""Tests for phase dependency resolution."""

import pytest

from planloom.core.errors import DependencyDeadlock
from planloom.core.plans.models import ExecutionMode, Task, TaskStatus
from planloom.core.scheduling import PhaseGraph, check_deadlock, resolve_next_batch


def make_task(task_id, order, *, deps=(), parallel=False, status=TaskStatus.PENDING):
    return Task(
        id=task_id,
        phase_id="phase-1",
        plan_id="plan-1",
        title=task_id,
        order=order,
        depends_on=list(deps),
        can_run_in_parallel=parallel,
        status=status,
    )


def ids(tasks):
    return [t.id for t in tasks]


# ==============================================================================
# PhaseGraph
# ==============================================================================


class TestPhaseGraph:
    def test_dispatch_order_is_stable(self):
        tasks = [make_task("b", 1), make_task("a", 0), make_task("c", 1)]
        assert ids(PhaseGraph(tasks).tasks) == ["a", "b", "c"]

    def test_foreign_and_self_dependencies_ignored(self):
        graph = PhaseGraph([make_task("a", 0, deps=["a", "elsewhere"])])
        assert graph.dependencies("a") == []
        assert ids(graph.eligible()) == ["a"]

    def test_skipped_dependency_is_satisfied(self):
        tasks = [
            make_task("a", 0, status=TaskStatus.SKIPPED),
            make_task("b", 1, deps=["a"]),
        ]
        assert ids(PhaseGraph(tasks).eligible()) == ["b"]

    def test_failed_dependency_is_not_satisfied(self):
        tasks = [
            make_task("a", 0, status=TaskStatus.FAILED),
            make_task("b", 1, deps=["a"]),
        ]
        graph = PhaseGraph(tasks)
        assert graph.eligible() == []
        assert graph.unsatisfied("b") == ["a"]

    def test_find_cycle(self):
        tasks = [
            make_task("a", 0, deps=["c"]),
            make_task("b", 1, deps=["a"]),
            make_task("c", 2, deps=["b"]),
            make_task("d", 3),
        ]
        cycle = PhaseGraph(tasks).find_cycle()
        assert sorted(cycle) == ["a", "b", "c"]

    def test_no_cycle(self):
        tasks = [make_task("a", 0), make_task("b", 1, deps=["a"])]
        assert PhaseGraph(tasks).find_cycle() == []


# ==============================================================================
# resolve_next_batch
# ==============================================================================


class TestSequential:
    def test_only_first_eligible_task(self):
        tasks = [make_task("t1", 1), make_task("t2", 2, deps=["t1"]), make_task("t3", 3)]
        assert ids(resolve_next_batch(ExecutionMode.SEQUENTIAL, tasks)) == ["t1"]

    def test_nothing_while_a_task_runs(self):
        tasks = [make_task("t1", 1, status=TaskStatus.RUNNING), make_task("t2", 2)]
        assert resolve_next_batch(ExecutionMode.SEQUENTIAL, tasks) == []

    def test_dependent_follows_completion(self):
        tasks = [
            make_task("t1", 1, status=TaskStatus.COMPLETED),
            make_task("t2", 2, deps=["t1"]),
        ]
        assert ids(resolve_next_batch(ExecutionMode.SEQUENTIAL, tasks)) == ["t2"]

    def test_lower_order_blocked_task_does_not_stall_others(self):
        tasks = [
            make_task("t1", 1, status=TaskStatus.COMPLETED),
            make_task("t2", 2, deps=["t3"]),
            make_task("t3", 3),
        ]
        assert ids(resolve_next_batch(ExecutionMode.SEQUENTIAL, tasks)) == ["t3"]


class TestParallel:
    def test_all_parallel_tasks(self):
        tasks = [make_task("t1", 1, parallel=True), make_task("t2", 2, parallel=True)]
        assert ids(resolve_next_batch(ExecutionMode.PARALLEL, tasks)) == ["t1", "t2"]

    def test_non_parallel_head_runs_alone(self):
        tasks = [make_task("t1", 1), make_task("t2", 2, parallel=True)]
        assert ids(resolve_next_batch(ExecutionMode.PARALLEL, tasks)) == ["t1"]

    def test_non_parallel_task_waits_for_running(self):
        tasks = [
            make_task("t1", 1, parallel=True, status=TaskStatus.RUNNING),
            make_task("t2", 2),
        ]
        assert resolve_next_batch(ExecutionMode.PARALLEL, tasks) == []

    def test_nothing_beside_running_exclusive_task(self):
        tasks = [
            make_task("t1", 1, status=TaskStatus.RUNNING),
            make_task("t2", 2, parallel=True),
        ]
        assert resolve_next_batch(ExecutionMode.PARALLEL, tasks) == []

    def test_parallel_tasks_join_running_ones(self):
        tasks = [
            make_task("t1", 1, parallel=True, status=TaskStatus.RUNNING),
            make_task("t2", 2, parallel=True),
        ]
        assert ids(resolve_next_batch(ExecutionMode.PARALLEL, tasks)) == ["t2"]

    def test_dependencies_respected(self):
        tasks = [
            make_task("t1", 1, parallel=True),
            make_task("t2", 2, parallel=True, deps=["t1"]),
        ]
        assert ids(resolve_next_batch(ExecutionMode.PARALLEL, tasks)) == ["t1"]


class TestManual:
    def test_never_dispatches(self):
        assert resolve_next_batch(ExecutionMode.MANUAL, [make_task("t1", 1)]) == []


class TestEmpty:
    def test_empty_phase(self):
        assert resolve_next_batch(ExecutionMode.SEQUENTIAL, []) == []

    def test_all_done(self):
        tasks = [make_task("t1", 1, status=TaskStatus.COMPLETED)]
        assert resolve_next_batch(ExecutionMode.PARALLEL, tasks) == []


# ==============================================================================
# Deadlock detection
# ==============================================================================


class TestDeadlock:
    def test_cycle_raises(self):
        tasks = [make_task("a", 0, deps=["b"]), make_task("b", 1, deps=["a"])]
        with pytest.raises(DependencyDeadlock) as exc_info:
            resolve_next_batch(ExecutionMode.SEQUENTIAL, tasks, phase_id="phase-1")
        error = exc_info.value
        assert error.phase_id == "phase-1"
        assert set(error.blocked) == {"a", "b"}
        assert sorted(error.cycle) == ["a", "b"]
        assert "cycle" in str(error)

    def test_failed_dependency_is_not_deadlock(self):
        tasks = [
            make_task("a", 0, status=TaskStatus.FAILED),
            make_task("b", 1, deps=["a"]),
        ]
        check_deadlock("phase-1", tasks)
        assert resolve_next_batch(ExecutionMode.SEQUENTIAL, tasks) == []

    def test_running_task_is_not_deadlock(self):
        tasks = [
            make_task("a", 0, status=TaskStatus.RUNNING),
            make_task("b", 1, deps=["a"]),
        ]
        check_deadlock("phase-1", tasks)
