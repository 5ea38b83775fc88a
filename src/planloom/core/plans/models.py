"""
Plan data models for planloom.

A Plan owns ordered Phases; each Phase owns ordered Tasks. Tasks may depend
on sibling tasks of the same phase. Plans and phases carry denormalized
counters that are always recomputed from live child records
(see planloom.core.plans.counters), never incremented in place.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Return the current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """
    Generate a record id.

    Format: <prefix>-<12 hex chars> (e.g., 'task-3f9a0c1d2e4b')
    """
    return f"{prefix}-{uuid4().hex[:12]}"


# ==============================================================================
# Status enums
# ==============================================================================


class PlanStatus(str, Enum):
    """Lifecycle status of a plan."""

    DRAFT = "draft"
    READY = "ready"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Check if the plan can no longer run without operator action."""
        return self in (PlanStatus.COMPLETED, PlanStatus.FAILED)


class PhaseStatus(str, Enum):
    """Aggregate status of a phase, mirroring its tasks."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class ExecutionMode(str, Enum):
    """
    How tasks inside a phase are dispatched.

    - SEQUENTIAL: at most one task at a time, lowest order first
    - PARALLEL: all eligible parallel-safe tasks at once
    - MANUAL: never auto-dispatched; tasks are triggered explicitly
    """

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    MANUAL = "manual"


class TaskStatus(str, Enum):
    """Status of a single task."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        """Check if the task reached an end state."""
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED)

    @property
    def satisfies_dependency(self) -> bool:
        """Skipped tasks count as done so dependents don't block forever."""
        return self in (TaskStatus.COMPLETED, TaskStatus.SKIPPED)


class PlanAuthor(str, Enum):
    """Who created a plan or recorded an iteration."""

    USER = "user"
    ASSISTANT = "assistant"
    API = "api"


class StatusReason(str, Enum):
    """Why a plan is paused or failed."""

    TASK_FAILED = "task_failed"
    RETRY_CEILING_EXHAUSTED = "retry_ceiling_exhausted"
    CANCELLED = "cancelled"
    PHASE_COMPLETE = "phase_complete"
    PAUSE_REQUESTED = "pause_requested"
    MANUAL_APPROVAL_REQUIRED = "manual_approval_required"
    DEPENDENCY_DEADLOCK = "dependency_deadlock"
    STORAGE_FAILURE = "storage_failure"
    INTERRUPTED = "interrupted"
    REOPENED = "reopened"


class IterationType(str, Enum):
    """Kind of change recorded in the iteration log."""

    INITIAL = "initial"
    REFINE = "refine"


# ==============================================================================
# Records
# ==============================================================================


class Plan(BaseModel):
    """Top-level unit of work composed of ordered phases."""

    id: str = Field(default_factory=lambda: new_id("plan"))
    title: str = Field(min_length=1)
    description: str = ""
    status: PlanStatus = PlanStatus.DRAFT
    created_by: PlanAuthor = PlanAuthor.USER
    status_reason: StatusReason | None = None
    status_detail: str | None = None

    total_phases: int = Field(default=0, ge=0)
    completed_phases: int = Field(default=0, ge=0)
    total_tasks: int = Field(default=0, ge=0)
    completed_tasks: int = Field(default=0, ge=0)

    current_phase_id: str | None = None
    current_task_id: str | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None


class Phase(BaseModel):
    """Ordered group of tasks sharing one execution mode."""

    id: str = Field(default_factory=lambda: new_id("phase"))
    plan_id: str
    title: str = Field(min_length=1)
    description: str = ""
    order: int = Field(ge=0)
    execution_mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    pause_after: bool = False
    status: PhaseStatus = PhaseStatus.PENDING

    total_tasks: int = Field(default=0, ge=0)
    completed_tasks: int = Field(default=0, ge=0)
    failed_tasks: int = Field(default=0, ge=0)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None


class Task(BaseModel):
    """
    Smallest unit of dispatched work.

    ``phase_id`` is the authoritative owner; ``plan_id`` is a back-reference
    for query convenience. ``depends_on`` names sibling tasks of the same
    phase.
    """

    id: str = Field(default_factory=lambda: new_id("task"))
    phase_id: str
    plan_id: str
    title: str = Field(min_length=1)
    description: str = ""
    order: int = Field(ge=0)
    depends_on: list[str] = Field(default_factory=list)
    can_run_in_parallel: bool = False
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    last_error: str | None = None
    correlation_id: str | None = None
    output: str | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None


class Iteration(BaseModel):
    """One entry of a plan's change log."""

    id: str = Field(default_factory=lambda: new_id("iter"))
    plan_id: str
    iteration_type: IterationType = IterationType.REFINE
    prompt: str | None = None
    changes: list[dict[str, Any]] = Field(default_factory=list)
    changed_by: PlanAuthor = PlanAuthor.ASSISTANT
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ==============================================================================
# Aggregate views
# ==============================================================================


class PhaseDetail(Phase):
    """Phase with its tasks, sorted by order."""

    tasks: list[Task] = Field(default_factory=list)


class PlanDetail(Plan):
    """Plan with phases, tasks and iteration log."""

    phases: list[PhaseDetail] = Field(default_factory=list)
    iterations: list[Iteration] = Field(default_factory=list)

    def find_task(self, task_id: str) -> Task | None:
        """Look up a task anywhere in the plan."""
        for phase in self.phases:
            for task in phase.tasks:
                if task.id == task_id:
                    return task
        return None


# ==============================================================================
# Authoring drafts (input to PlanService.create_plan / plan import)
# ==============================================================================


class TaskDraft(BaseModel):
    """
    New task definition.

    ``depends_on`` entries name sibling tasks of the same draft phase by
    ``key`` or by ``title``. When adding a task to an existing phase they
    are task ids instead.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    key: str | None = None
    title: str = Field(min_length=1)
    description: str = ""
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    can_run_in_parallel: bool = Field(default=False, alias="canRunInParallel")


class PhaseDraft(BaseModel):
    """New phase definition, optionally with tasks."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    title: str = Field(min_length=1)
    description: str = ""
    execution_mode: ExecutionMode = Field(
        default=ExecutionMode.SEQUENTIAL, alias="executionMode"
    )
    pause_after: bool = Field(default=False, alias="pauseAfter")
    tasks: list[TaskDraft] = Field(default_factory=list)


class PlanDraft(BaseModel):
    """New plan definition as read from YAML/JSON or the HTTP API."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    title: str = Field(min_length=1)
    description: str = ""
    created_by: PlanAuthor = Field(default=PlanAuthor.USER, alias="createdBy")
    phases: list[PhaseDraft] = Field(default_factory=list)


class PlanPatch(BaseModel):
    """Editable plan fields; unset fields are left unchanged."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1)
    description: str | None = None


class PhasePatch(BaseModel):
    """Editable phase fields; unset fields are left unchanged."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    execution_mode: ExecutionMode | None = Field(default=None, alias="executionMode")
    pause_after: bool | None = Field(default=None, alias="pauseAfter")


class TaskPatch(BaseModel):
    """Editable task fields; ``depends_on`` holds sibling task ids."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    depends_on: list[str] | None = Field(default=None, alias="dependsOn")
    can_run_in_parallel: bool | None = Field(default=None, alias="canRunInParallel")
