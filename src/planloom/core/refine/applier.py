"""
ProposalApplier: commit accepted proposals to the plan store as one batch.

Targets are resolved positionally against the plan as it is when the batch
starts (see PlanLayout). Update proposals diff only the fields present in
``updates`` against the live record; the ``before`` snapshot is never
consulted. A proposal that can't be applied is reported and skipped; the
rest of the batch still lands.
"""

import logging
from typing import Any

from planloom.core.errors import NotFoundError, ProposalApplyFailure, ValidationFailure
from planloom.core.plans.counters import refresh_counters
from planloom.core.plans.models import (
    ExecutionMode,
    IterationType,
    PlanAuthor,
    TaskStatus,
)
from planloom.core.plans.service import remove_task, reopen_phase
from planloom.core.refine.models import (
    ApplyReport,
    Proposal,
    ProposalAction,
    ProposalResult,
    ProposalStatus,
)
from planloom.core.refine.targets import PlanLayout
from planloom.core.store.backend import PlanStore, RecordKind

logger = logging.getLogger(__name__)

# Editable fields per record kind (wire name -> record field)
PHASE_FIELDS = {
    "title": "title",
    "description": "description",
    "executionMode": "execution_mode",
    "execution_mode": "execution_mode",
    "pauseAfter": "pause_after",
    "pause_after": "pause_after",
}
TASK_FIELDS = {
    "title": "title",
    "description": "description",
    "canRunInParallel": "can_run_in_parallel",
    "can_run_in_parallel": "can_run_in_parallel",
}


class ProposalApplier:
    """
    Applies proposals to a PlanStore.

    Example:
        >>> report = ProposalApplier(store).apply(plan_id, session.proposals)
        >>> report.applied, report.total
        (2, 2)
    """

    def __init__(self, store: PlanStore) -> None:
        self.store = store

    def apply(
        self,
        plan_id: str,
        proposals: list[Proposal],
        *,
        prompt: str | None = None,
        only_accepted: bool = True,
    ) -> ApplyReport:
        """
        Apply a batch of proposals in one transaction.

        Args:
            plan_id: Plan to mutate
            proposals: Candidate proposals
            prompt: Instruction that produced them (recorded in the iteration log)
            only_accepted: Skip proposals whose status isn't accepted

        Returns:
            Per-proposal results. When at least one proposal lands, counters
            are refreshed and a refine iteration is recorded.

        Raises:
            NotFoundError: If the plan doesn't exist
            StorageFailure: If the store fails; nothing from the batch is kept
        """
        if only_accepted:
            selected = [p for p in proposals if p.status == ProposalStatus.ACCEPTED]
        else:
            selected = list(proposals)

        results: list[ProposalResult] = []
        iteration_id = None
        with self.store.transaction():
            if self.store.get(RecordKind.PLAN, plan_id) is None:
                raise NotFoundError("plan", plan_id)
            layout = PlanLayout.load(self.store, plan_id)

            for proposal in selected:
                try:
                    record_id = self._apply_one(plan_id, layout, proposal)
                except ProposalApplyFailure as e:
                    logger.warning("Proposal %d not applied: %s", proposal.id, e)
                    results.append(self._result(proposal, error=e.reason))
                except ValidationFailure as e:
                    logger.warning("Proposal %d not applied: %s", proposal.id, e)
                    results.append(self._result(proposal, error=str(e)))
                else:
                    results.append(self._result(proposal, record_id=record_id))

            landed = [p for p, r in zip(selected, results) if r.applied]
            if landed:
                refresh_counters(self.store, plan_id)
                iteration = self.store.insert(
                    RecordKind.ITERATION,
                    {
                        "plan_id": plan_id,
                        "iteration_type": IterationType.REFINE,
                        "prompt": prompt,
                        "changes": [p.to_wire() for p in landed],
                        "changed_by": PlanAuthor.ASSISTANT,
                    },
                )
                iteration_id = iteration.id

        report = ApplyReport(
            results=results,
            applied=len(landed),
            total=len(selected),
            iteration_id=iteration_id,
        )
        logger.info("Applied %d of %d proposal(s) to plan %s", report.applied, report.total, plan_id)
        return report

    def _apply_one(self, plan_id: str, layout: PlanLayout, proposal: Proposal) -> str:
        label = proposal.label

        if proposal.action == ProposalAction.CREATE_PHASE:
            draft = proposal.phase
            assert draft is not None
            phase = self.store.insert(
                RecordKind.PHASE,
                {
                    "plan_id": plan_id,
                    "title": draft.title,
                    "description": draft.description,
                    "order": layout.next_phase_order(),
                    "execution_mode": draft.execution_mode or ExecutionMode.SEQUENTIAL,
                    "pause_after": bool(draft.pause_after),
                },
            )
            layout.add_phase(phase)
            return phase.id

        phase = layout.phase_at(proposal.phase_order)
        if phase is None:
            raise ProposalApplyFailure(label, f"phase {proposal.phase_order} does not exist")
        live_phase = self.store.get(RecordKind.PHASE, phase.id)
        if live_phase is None:
            raise ProposalApplyFailure(label, f"phase {proposal.phase_order} no longer exists")

        if proposal.action == ProposalAction.UPDATE_PHASE:
            fields = self._changed_fields(proposal, PHASE_FIELDS, live_phase)
            if fields:
                self.store.update(RecordKind.PHASE, phase.id, fields)
            return phase.id

        if proposal.action == ProposalAction.CREATE_TASK:
            draft = proposal.task
            assert draft is not None
            siblings = self.store.list(RecordKind.TASK, {"phase_id": phase.id})
            task = self.store.insert(
                RecordKind.TASK,
                {
                    "phase_id": phase.id,
                    "plan_id": plan_id,
                    "title": draft.title,
                    "description": draft.description,
                    "order": max((t.order for t in siblings), default=-1) + 1,
                    "can_run_in_parallel": bool(draft.can_run_in_parallel),
                },
            )
            reopen_phase(self.store, live_phase, f"Task '{task.title}' was added")
            layout.add_task(task)
            return task.id

        task = layout.task_at(proposal.phase_order, proposal.task_order)
        if task is None:
            raise ProposalApplyFailure(
                label,
                f"task {proposal.task_order} of phase {proposal.phase_order} does not exist",
            )
        if layout.is_gone(task.id):
            raise ProposalApplyFailure(label, "task was already deleted in this batch")
        live_task = self.store.get(RecordKind.TASK, task.id)
        if live_task is None:
            raise ProposalApplyFailure(label, "task no longer exists")

        if proposal.action == ProposalAction.UPDATE_TASK:
            fields = self._changed_fields(proposal, TASK_FIELDS, live_task)
            if fields:
                self.store.update(RecordKind.TASK, task.id, fields)
            return task.id

        if live_task.status == TaskStatus.RUNNING:
            raise ProposalApplyFailure(label, "task is running")
        remove_task(self.store, live_task)
        layout.mark_gone(task.id)
        return task.id

    @staticmethod
    def _changed_fields(
        proposal: Proposal, allowed: dict[str, str], live: Any
    ) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        for key, value in proposal.updates.items():
            name = allowed.get(key)
            if name is None:
                logger.warning("Proposal %d: ignoring field '%s'", proposal.id, key)
                continue
            fields[name] = value
        if not fields:
            raise ProposalApplyFailure(proposal.label, "no editable fields in updates")
        return {k: v for k, v in fields.items() if getattr(live, k) != v}

    @staticmethod
    def _result(
        proposal: Proposal, *, record_id: str | None = None, error: str | None = None
    ) -> ProposalResult:
        return ProposalResult(
            proposal_id=proposal.id,
            label=proposal.label,
            action=proposal.action,
            applied=error is None,
            error=error,
            record_id=record_id,
        )
