"""
Plan CRUD service.

Creates, reads, edits and deletes plans, phases and tasks on top of a
PlanStore. Every mutation runs in one store transaction and ends with a
counter refresh, so the denormalized counters always match the live rows.

Execution state (status transitions beyond draft -> ready) belongs to the
ExecutionController; this service never starts or stops work.
"""

from __future__ import annotations

import logging
from typing import Any

from planloom.core.errors import InvalidTransition, NotFoundError, ValidationFailure
from planloom.core.plans.counters import refresh_counters
from planloom.core.plans.models import (
    IterationType,
    Phase,
    PhaseDetail,
    PhaseDraft,
    PhasePatch,
    PhaseStatus,
    Plan,
    PlanDetail,
    PlanDraft,
    PlanPatch,
    PlanStatus,
    StatusReason,
    Task,
    TaskDraft,
    TaskPatch,
    TaskStatus,
    new_id,
)
from planloom.core.store.backend import PlanStore, RecordKind

logger = logging.getLogger(__name__)


def _patch_fields(patch: PlanPatch | PhasePatch | TaskPatch) -> dict[str, Any]:
    return {k: v for k, v in patch.model_dump(exclude_unset=True).items() if v is not None}


class PlanService:
    """
    Plan, phase and task CRUD.

    Example:
        >>> service = PlanService(store)
        >>> detail = service.create_plan(PlanDraft(title="Ship it"))
        >>> service.mark_ready(detail.id).status
        <PlanStatus.READY: 'ready'>
    """

    def __init__(self, store: PlanStore) -> None:
        self.store = store

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    def create_plan(self, draft: PlanDraft) -> PlanDetail:
        """
        Create a plan in draft status, with any nested phases and tasks.

        Task dependencies in the draft name sibling tasks by ``key`` or
        ``title``. A plan created with phases gets an ``initial`` iteration.

        Raises:
            ValidationFailure: If a dependency can't be resolved
        """
        with self.store.transaction():
            plan = self.store.insert(
                RecordKind.PLAN,
                {
                    "title": draft.title,
                    "description": draft.description,
                    "created_by": draft.created_by,
                },
            )
            task_count = 0
            for order, phase_draft in enumerate(draft.phases):
                self._insert_phase(plan.id, order, phase_draft)
                task_count += len(phase_draft.tasks)

            if draft.phases:
                self.store.insert(
                    RecordKind.ITERATION,
                    {
                        "plan_id": plan.id,
                        "iteration_type": IterationType.INITIAL,
                        "changes": [
                            {
                                "action": "create_plan",
                                "phases": len(draft.phases),
                                "tasks": task_count,
                            }
                        ],
                        "changed_by": draft.created_by,
                    },
                )
            refresh_counters(self.store, plan.id)

        logger.info("Created plan %s '%s'", plan.id, plan.title)
        return self.get_plan_detail(plan.id)

    def list_plans(self, status: PlanStatus | None = None) -> list[Plan]:
        """List plans, oldest first, optionally filtered by status."""
        filters = {"status": status} if status is not None else None
        return self.store.list(RecordKind.PLAN, filters, order_by="created_at")

    def get_plan(self, plan_id: str) -> Plan:
        plan = self.store.get(RecordKind.PLAN, plan_id)
        if plan is None:
            raise NotFoundError("plan", plan_id)
        return plan

    def get_plan_detail(self, plan_id: str) -> PlanDetail:
        """
        Plan with phases, tasks and iterations; counters recomputed on read.

        Raises:
            NotFoundError: If the plan doesn't exist
        """
        plan = refresh_counters(self.store, plan_id)
        phases = self.store.list(RecordKind.PHASE, {"plan_id": plan_id}, order_by="order")
        tasks = self.store.list(RecordKind.TASK, {"plan_id": plan_id}, order_by="order")
        iterations = self.store.list(
            RecordKind.ITERATION, {"plan_id": plan_id}, order_by="created_at"
        )

        details = [
            PhaseDetail(
                **phase.model_dump(),
                tasks=[t for t in tasks if t.phase_id == phase.id],
            )
            for phase in phases
        ]
        return PlanDetail(**plan.model_dump(), phases=details, iterations=iterations)

    def update_plan(self, plan_id: str, patch: PlanPatch) -> Plan:
        fields = _patch_fields(patch)
        self.get_plan(plan_id)
        if not fields:
            return self.get_plan(plan_id)
        return self.store.update(RecordKind.PLAN, plan_id, fields)

    def mark_ready(self, plan_id: str) -> Plan:
        """
        Move a draft plan to ready. Ready plans are returned unchanged.

        Raises:
            NotFoundError: If the plan doesn't exist
            InvalidTransition: If the plan is past ready
        """
        plan = self.get_plan(plan_id)
        if plan.status == PlanStatus.READY:
            return plan
        if plan.status != PlanStatus.DRAFT:
            raise InvalidTransition(
                f"Cannot mark plan {plan_id} ready: status is {plan.status.value}"
            )
        logger.info("Plan %s is ready", plan_id)
        return self.store.update(RecordKind.PLAN, plan_id, {"status": PlanStatus.READY})

    def delete_plan(self, plan_id: str) -> None:
        """
        Delete a plan, cascading iterations, tasks and phases.

        Whether a scheduling loop is live is the caller's concern (see
        ``Engine.delete_plan``).

        Raises:
            NotFoundError: If the plan doesn't exist
        """
        self.get_plan(plan_id)
        with self.store.transaction():
            for iteration in self.store.list(RecordKind.ITERATION, {"plan_id": plan_id}):
                self.store.delete(RecordKind.ITERATION, iteration.id)
            for task in self.store.list(RecordKind.TASK, {"plan_id": plan_id}):
                self.store.delete(RecordKind.TASK, task.id)
            for phase in self.store.list(RecordKind.PHASE, {"plan_id": plan_id}):
                self.store.delete(RecordKind.PHASE, phase.id)
            self.store.delete(RecordKind.PLAN, plan_id)
        logger.info("Deleted plan %s", plan_id)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def get_phase(self, phase_id: str) -> Phase:
        phase = self.store.get(RecordKind.PHASE, phase_id)
        if phase is None:
            raise NotFoundError("phase", phase_id)
        return phase

    def add_phase(self, plan_id: str, draft: PhaseDraft) -> PhaseDetail:
        """
        Append a phase (with any draft tasks) after the plan's last phase.

        Raises:
            NotFoundError: If the plan doesn't exist
            ValidationFailure: If a task dependency can't be resolved
        """
        self.get_plan(plan_id)
        with self.store.transaction():
            phase = self._insert_phase(plan_id, self._next_phase_order(plan_id), draft)
            refresh_counters(self.store, plan_id)

        phase = self.get_phase(phase.id)
        tasks = self.store.list(RecordKind.TASK, {"phase_id": phase.id}, order_by="order")
        return PhaseDetail(**phase.model_dump(), tasks=tasks)

    def update_phase(self, phase_id: str, patch: PhasePatch) -> Phase:
        fields = _patch_fields(patch)
        phase = self.get_phase(phase_id)
        if not fields:
            return phase
        return self.store.update(RecordKind.PHASE, phase_id, fields)

    def delete_phase(self, phase_id: str) -> None:
        """
        Delete a phase and its tasks.

        Raises:
            NotFoundError: If the phase doesn't exist
            InvalidTransition: If one of its tasks is running
        """
        phase = self.get_phase(phase_id)
        tasks = self.store.list(RecordKind.TASK, {"phase_id": phase_id})
        if any(t.status == TaskStatus.RUNNING for t in tasks):
            raise InvalidTransition(f"Cannot delete phase {phase_id}: a task is running")

        with self.store.transaction():
            for task in tasks:
                self.store.delete(RecordKind.TASK, task.id)
            self.store.delete(RecordKind.PHASE, phase_id)
            plan = self.get_plan(phase.plan_id)
            task_ids = {t.id for t in tasks}
            pointers: dict[str, Any] = {}
            if plan.current_phase_id == phase_id:
                pointers["current_phase_id"] = None
            if plan.current_task_id in task_ids:
                pointers["current_task_id"] = None
            if pointers:
                self.store.update(RecordKind.PLAN, plan.id, pointers)
            refresh_counters(self.store, phase.plan_id)
        logger.info("Deleted phase %s (%d task(s))", phase_id, len(tasks))

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> Task:
        task = self.store.get(RecordKind.TASK, task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    def add_task(self, phase_id: str, draft: TaskDraft) -> Task:
        """
        Append a task to a phase. ``draft.depends_on`` holds sibling task ids.

        Adding work to a completed phase reopens it; a completed plan goes
        back to paused so the new task can run.

        Raises:
            NotFoundError: If the phase doesn't exist
            ValidationFailure: If a dependency isn't a task of the phase
        """
        phase = self.get_phase(phase_id)
        siblings = self.store.list(RecordKind.TASK, {"phase_id": phase_id}, order_by="order")
        depends_on = self._check_dependencies(None, draft.depends_on, siblings)

        with self.store.transaction():
            task = self.store.insert(
                RecordKind.TASK,
                {
                    "phase_id": phase_id,
                    "plan_id": phase.plan_id,
                    "title": draft.title,
                    "description": draft.description,
                    "order": max((t.order for t in siblings), default=-1) + 1,
                    "depends_on": depends_on,
                    "can_run_in_parallel": draft.can_run_in_parallel,
                },
            )
            reopen_phase(self.store, phase, f"Task '{task.title}' was added")
            refresh_counters(self.store, phase.plan_id)
        return task

    def update_task(self, task_id: str, patch: TaskPatch) -> Task:
        """
        Edit a task's fields.

        Raises:
            NotFoundError: If the task doesn't exist
            ValidationFailure: If a dependency isn't a sibling task, or is the task itself
        """
        fields = _patch_fields(patch)
        task = self.get_task(task_id)
        if not fields:
            return task
        if "depends_on" in fields:
            siblings = self.store.list(RecordKind.TASK, {"phase_id": task.phase_id})
            fields["depends_on"] = self._check_dependencies(task_id, fields["depends_on"], siblings)
        return self.store.update(RecordKind.TASK, task_id, fields)

    def delete_task(self, task_id: str) -> None:
        """
        Delete a task and prune it from its siblings' ``depends_on``.

        Raises:
            NotFoundError: If the task doesn't exist
            InvalidTransition: If the task is running
        """
        task = self.get_task(task_id)
        if task.status == TaskStatus.RUNNING:
            raise InvalidTransition(f"Cannot delete task {task_id}: it is running")

        with self.store.transaction():
            remove_task(self.store, task)
            refresh_counters(self.store, task.plan_id)
        logger.info("Deleted task %s", task_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _insert_phase(self, plan_id: str, order: int, draft: PhaseDraft) -> Phase:
        phase = self.store.insert(
            RecordKind.PHASE,
            {
                "plan_id": plan_id,
                "title": draft.title,
                "description": draft.description,
                "order": order,
                "execution_mode": draft.execution_mode,
                "pause_after": draft.pause_after,
            },
        )

        ids = [new_id("task") for _ in draft.tasks]
        lookup: dict[str, str] = {}
        for task_id, task_draft in zip(ids, draft.tasks):
            if task_draft.key:
                lookup[task_draft.key] = task_id
        for task_id, task_draft in zip(ids, draft.tasks):
            lookup.setdefault(task_draft.title, task_id)

        for order_in_phase, (task_id, task_draft) in enumerate(zip(ids, draft.tasks)):
            depends_on: list[str] = []
            for ref in task_draft.depends_on:
                dep_id = lookup.get(ref)
                if dep_id is None:
                    raise ValidationFailure(
                        f"Task '{task_draft.title}' depends on '{ref}', "
                        f"which is not a task of phase '{draft.title}'"
                    )
                if dep_id == task_id:
                    raise ValidationFailure(f"Task '{task_draft.title}' depends on itself")
                if dep_id not in depends_on:
                    depends_on.append(dep_id)

            self.store.insert(
                RecordKind.TASK,
                {
                    "id": task_id,
                    "phase_id": phase.id,
                    "plan_id": plan_id,
                    "title": task_draft.title,
                    "description": task_draft.description,
                    "order": order_in_phase,
                    "depends_on": depends_on,
                    "can_run_in_parallel": task_draft.can_run_in_parallel,
                },
            )
        return phase

    def _next_phase_order(self, plan_id: str) -> int:
        phases = self.store.list(RecordKind.PHASE, {"plan_id": plan_id})
        return max((p.order for p in phases), default=-1) + 1

    @staticmethod
    def _check_dependencies(
        task_id: str | None, depends_on: list[str], siblings: list[Task]
    ) -> list[str]:
        sibling_ids = {t.id for t in siblings}
        result: list[str] = []
        for dep_id in depends_on:
            if dep_id == task_id:
                raise ValidationFailure(f"Task {task_id} can't depend on itself")
            if dep_id not in sibling_ids:
                raise ValidationFailure(
                    f"Dependency {dep_id} is not a task of the same phase"
                )
            if dep_id not in result:
                result.append(dep_id)
        return result


def remove_task(store: PlanStore, task: Task) -> None:
    """
    Delete a task row and prune dangling references to it.

    Removes the id from sibling ``depends_on`` lists and clears the plan's
    ``current_task_id`` if it pointed at the task. Callers own the
    transaction and the counter refresh.
    """
    for sibling in store.list(RecordKind.TASK, {"phase_id": task.phase_id}):
        if task.id in sibling.depends_on:
            store.update(
                RecordKind.TASK,
                sibling.id,
                {"depends_on": [d for d in sibling.depends_on if d != task.id]},
            )
    store.delete(RecordKind.TASK, task.id)

    plan = store.get(RecordKind.PLAN, task.plan_id)
    if plan is not None and plan.current_task_id == task.id:
        store.update(RecordKind.PLAN, plan.id, {"current_task_id": None})


def reopen_phase(store: PlanStore, phase: Phase, reason: str) -> None:
    """
    Put a completed phase back to pending after work was added or reset in it.

    If its plan had completed, the plan goes back to paused (``reopened``)
    so ``resume`` can run the new work. Callers own the transaction and the
    counter refresh.
    """
    if phase.status != PhaseStatus.COMPLETED:
        return
    store.update(RecordKind.PHASE, phase.id, {"status": PhaseStatus.PENDING, "completed_at": None})

    plan = store.get(RecordKind.PLAN, phase.plan_id)
    if plan is not None and plan.status == PlanStatus.COMPLETED:
        store.update(
            RecordKind.PLAN,
            plan.id,
            {
                "status": PlanStatus.PAUSED,
                "status_reason": StatusReason.REOPENED,
                "status_detail": f"{reason}; resume the plan to run it",
                "completed_at": None,
            },
        )
        logger.info("Plan %s reopened: %s", plan.id, reason)
