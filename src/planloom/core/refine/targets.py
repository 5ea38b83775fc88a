"""
Positional resolution of proposal targets.

Proposals address phases by their 1-based position among the plan's
phases (sorted by ``order``) and tasks by their 1-based position within
the phase. A PlanLayout is taken once per batch, so positions stay stable
while the batch mutates the plan: created phases and tasks are appended
after the existing ones, and deleted tasks keep their slot but are marked
gone.
"""

from __future__ import annotations

from planloom.core.plans.models import Phase, PlanDetail, Task
from planloom.core.refine.models import Proposal, ProposalAction, ProposalSnapshot
from planloom.core.store.backend import PlanStore, RecordKind


class PlanLayout:
    """Positional view of one plan."""

    def __init__(self, phases: list[Phase], tasks: list[Task]) -> None:
        self._phases = sorted(phases, key=lambda p: p.order)
        self._tasks: dict[str, list[Task]] = {p.id: [] for p in self._phases}
        for task in sorted(tasks, key=lambda t: t.order):
            if task.phase_id in self._tasks:
                self._tasks[task.phase_id].append(task)
        self._gone: set[str] = set()

    @classmethod
    def load(cls, store: PlanStore, plan_id: str) -> PlanLayout:
        phases = store.list(RecordKind.PHASE, {"plan_id": plan_id}, order_by="order")
        tasks = store.list(RecordKind.TASK, {"plan_id": plan_id}, order_by="order")
        return cls(phases, tasks)

    @classmethod
    def from_detail(cls, detail: PlanDetail) -> PlanLayout:
        phases = [Phase(**p.model_dump(exclude={"tasks"})) for p in detail.phases]
        tasks = [t for p in detail.phases for t in p.tasks]
        return cls(phases, tasks)

    @property
    def phases(self) -> list[Phase]:
        return list(self._phases)

    def phase_at(self, phase_order: int | None) -> Phase | None:
        if phase_order is None or not 1 <= phase_order <= len(self._phases):
            return None
        return self._phases[phase_order - 1]

    def task_at(self, phase_order: int | None, task_order: int | None) -> Task | None:
        phase = self.phase_at(phase_order)
        if phase is None or task_order is None:
            return None
        tasks = self._tasks[phase.id]
        if not 1 <= task_order <= len(tasks):
            return None
        return tasks[task_order - 1]

    def is_gone(self, task_id: str) -> bool:
        return task_id in self._gone

    def next_phase_order(self) -> int:
        return max((p.order for p in self._phases), default=-1) + 1

    def add_phase(self, phase: Phase) -> None:
        self._phases.append(phase)
        self._tasks[phase.id] = []

    def add_task(self, task: Task) -> None:
        self._tasks.setdefault(task.phase_id, []).append(task)

    def mark_gone(self, task_id: str) -> None:
        self._gone.add(task_id)

    def snapshot_for(self, proposal: Proposal) -> ProposalSnapshot | None:
        """Current title/description of an update/delete target, if it exists."""
        if proposal.action == ProposalAction.UPDATE_PHASE:
            target: Phase | Task | None = self.phase_at(proposal.phase_order)
        elif proposal.action.targets_task:
            target = self.task_at(proposal.phase_order, proposal.task_order)
        else:
            return None
        if target is None:
            return None
        return ProposalSnapshot(title=target.title, description=target.description)
