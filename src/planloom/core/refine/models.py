"""
Refinement data models.

A Proposal is one reviewable edit parsed from a refinement reply. It is
addressed by position (``phaseOrder``/``taskOrder``, 1-based), never by
record id, and only turns into Plan/Phase/Task rows when applied.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from planloom.core.plans.models import ExecutionMode


class ProposalAction(str, Enum):
    CREATE_PHASE = "create_phase"
    CREATE_TASK = "create_task"
    UPDATE_PHASE = "update_phase"
    UPDATE_TASK = "update_task"
    DELETE_TASK = "delete_task"

    @property
    def targets_task(self) -> bool:
        """True if the action addresses an existing task."""
        return self in (ProposalAction.UPDATE_TASK, ProposalAction.DELETE_TASK)


class ProposalStatus(str, Enum):
    """Review state. Only the operator changes it."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class ProposalSnapshot(BaseModel):
    """Display-only view of a proposal's target when it was parsed."""

    title: str
    description: str = ""


class EntityDraft(BaseModel):
    """Payload of a create_phase/create_task proposal."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str = Field(min_length=1)
    description: str = ""
    execution_mode: ExecutionMode | None = Field(default=None, alias="executionMode")
    pause_after: bool | None = Field(default=None, alias="pauseAfter")
    can_run_in_parallel: bool | None = Field(default=None, alias="canRunInParallel")


# Coordinates and payload each action requires
_REQUIREMENTS: dict[ProposalAction, tuple[str, ...]] = {
    ProposalAction.CREATE_PHASE: ("phase",),
    ProposalAction.CREATE_TASK: ("phase_order", "task"),
    ProposalAction.UPDATE_PHASE: ("phase_order", "updates"),
    ProposalAction.UPDATE_TASK: ("phase_order", "task_order", "updates"),
    ProposalAction.DELETE_TASK: ("phase_order", "task_order"),
}


class Proposal(BaseModel):
    """
    One candidate edit produced by a refinement turn.

    Attributes:
        id: Session-scoped id
        action: What to do
        phase_order: 1-based position of the target phase
        task_order: 1-based position of the target task within its phase
        label: Short human-readable summary; identifies the proposal in reports
        updates: Fields to change (update actions)
        phase: New phase (create_phase)
        task: New task (create_task)
        before: Target as it was when parsed (update/delete only)
        status: Review state
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int = 0
    action: ProposalAction
    phase_order: int | None = Field(default=None, alias="phaseOrder", ge=1)
    task_order: int | None = Field(default=None, alias="taskOrder", ge=1)
    label: str = ""
    updates: dict[str, Any] = Field(default_factory=dict)
    phase: EntityDraft | None = None
    task: EntityDraft | None = None
    before: ProposalSnapshot | None = None
    status: ProposalStatus = ProposalStatus.PENDING

    @model_validator(mode="after")
    def _check_shape(self) -> "Proposal":
        missing = [name for name in _REQUIREMENTS[self.action] if not getattr(self, name)]
        if missing:
            raise ValueError(f"{self.action.value} proposal requires {', '.join(missing)}")
        if not self.label:
            self.label = self._default_label()
        return self

    def _default_label(self) -> str:
        if self.action == ProposalAction.CREATE_PHASE and self.phase is not None:
            return f"Add phase '{self.phase.title}'"
        if self.action == ProposalAction.CREATE_TASK and self.task is not None:
            return f"Add task '{self.task.title}' to phase {self.phase_order}"
        if self.action == ProposalAction.UPDATE_PHASE:
            return f"Update phase {self.phase_order}"
        if self.action == ProposalAction.UPDATE_TASK:
            return f"Update task {self.task_order} of phase {self.phase_order}"
        return f"Delete task {self.task_order} of phase {self.phase_order}"

    def to_wire(self) -> dict[str, Any]:
        """camelCase JSON form used by the HTTP API and the iteration log."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ProposalResult(BaseModel):
    """Outcome of applying one proposal."""

    proposal_id: int
    label: str
    action: ProposalAction
    applied: bool
    error: str | None = None
    record_id: str | None = None


class ApplyReport(BaseModel):
    """Per-proposal results of one apply batch."""

    results: list[ProposalResult] = Field(default_factory=list)
    applied: int = 0
    total: int = 0
    iteration_id: str | None = None

    @property
    def failed(self) -> list[ProposalResult]:
        return [r for r in self.results if not r.applied]


class RefineTurn(BaseModel):
    """Result of one completed refinement turn."""

    instruction: str
    text: str
    proposals: list[Proposal] = Field(default_factory=list)
    report: ApplyReport | None = None
