"""Tests for plan and phase counter projection."""

from planloom.core.plans.counters import (
    project_phase_counters,
    project_plan_counters,
    refresh_counters,
)
from planloom.core.plans.models import Phase, PhaseStatus, Task, TaskStatus
from planloom.core.store import RecordKind


def make_task(status):
    return Task(phase_id="phase-1", plan_id="plan-1", title="t", order=0, status=status)


class TestProjection:
    def test_phase_counters(self):
        counts = project_phase_counters(
            [
                make_task(TaskStatus.COMPLETED),
                make_task(TaskStatus.FAILED),
                make_task(TaskStatus.SKIPPED),
                make_task(TaskStatus.PENDING),
            ]
        )
        assert counts.total_tasks == 4
        assert counts.completed_tasks == 1
        assert counts.failed_tasks == 1

    def test_plan_counters(self):
        phases = [
            Phase(plan_id="plan-1", title="a", order=0, status=PhaseStatus.COMPLETED),
            Phase(plan_id="plan-1", title="b", order=1),
        ]
        counts = project_plan_counters(phases, [make_task(TaskStatus.COMPLETED)])
        assert counts.total_phases == 2
        assert counts.completed_phases == 1
        assert counts.total_tasks == 1
        assert counts.completed_tasks == 1


class TestRefresh:
    def test_refresh_persists_changes(self, store, make_plan):
        detail = make_plan({"title": "P", "tasks": [{"title": "A"}, {"title": "B"}]})
        task = detail.phases[0].tasks[0]
        store.update(RecordKind.TASK, task.id, {"status": TaskStatus.COMPLETED})

        plan = refresh_counters(store, detail.id)
        assert plan.completed_tasks == 1
        assert plan.total_tasks == 2
        phase = store.get(RecordKind.PHASE, detail.phases[0].id)
        assert phase.completed_tasks == 1

    def test_refresh_writes_nothing_when_unchanged(self, store, make_plan):
        detail = make_plan({"title": "P", "tasks": [{"title": "A"}]})
        before = store.get(RecordKind.PLAN, detail.id)
        after = refresh_counters(store, detail.id)
        assert after.updated_at == before.updated_at
