"""
Denormalized counter projection.

Plan and phase counters are derived state: they are recomputed from the live
child records after every mutation rather than incremented, so they cannot
drift after a partial failure.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass

from planloom.core.errors import NotFoundError
from planloom.core.plans.models import Phase, PhaseStatus, Plan, Task, TaskStatus
from planloom.core.store.backend import PlanStore, RecordKind


@dataclass(frozen=True)
class PhaseCounters:
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0


@dataclass(frozen=True)
class PlanCounters:
    total_phases: int = 0
    completed_phases: int = 0
    total_tasks: int = 0
    completed_tasks: int = 0


def project_phase_counters(tasks: Iterable[Task]) -> PhaseCounters:
    """Count a phase's tasks by status."""
    total = completed = failed = 0
    for task in tasks:
        total += 1
        if task.status == TaskStatus.COMPLETED:
            completed += 1
        elif task.status == TaskStatus.FAILED:
            failed += 1
    return PhaseCounters(total_tasks=total, completed_tasks=completed, failed_tasks=failed)


def project_plan_counters(phases: Iterable[Phase], tasks: Iterable[Task]) -> PlanCounters:
    """
    Count a plan's phases and tasks.

    ``completed_tasks`` counts tasks with status completed only; skipped
    tasks satisfy dependencies but are not completed work.
    """
    phase_list = list(phases)
    task_counts = project_phase_counters(tasks)
    return PlanCounters(
        total_phases=len(phase_list),
        completed_phases=sum(1 for p in phase_list if p.status == PhaseStatus.COMPLETED),
        total_tasks=task_counts.total_tasks,
        completed_tasks=task_counts.completed_tasks,
    )


def refresh_counters(store: PlanStore, plan_id: str) -> Plan:
    """
    Recompute and persist the counters of a plan and all of its phases.

    Only rows whose counters actually changed are written.

    Args:
        store: Plan store
        plan_id: Plan to refresh

    Returns:
        The plan with up-to-date counters

    Raises:
        NotFoundError: If the plan doesn't exist
    """
    with store.transaction():
        plan = store.get(RecordKind.PLAN, plan_id)
        if plan is None:
            raise NotFoundError("plan", plan_id)

        phases = store.list(RecordKind.PHASE, {"plan_id": plan_id}, order_by="order")
        tasks = store.list(RecordKind.TASK, {"plan_id": plan_id}, order_by="order")

        for phase in phases:
            counts = project_phase_counters(t for t in tasks if t.phase_id == phase.id)
            current = PhaseCounters(
                total_tasks=phase.total_tasks,
                completed_tasks=phase.completed_tasks,
                failed_tasks=phase.failed_tasks,
            )
            if counts != current:
                store.update(RecordKind.PHASE, phase.id, asdict(counts))

        counts = project_plan_counters(phases, tasks)
        current_plan = PlanCounters(
            total_phases=plan.total_phases,
            completed_phases=plan.completed_phases,
            total_tasks=plan.total_tasks,
            completed_tasks=plan.completed_tasks,
        )
        if counts != current_plan:
            plan = store.update(RecordKind.PLAN, plan_id, asdict(counts))
        return plan
