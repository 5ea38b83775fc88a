"""
Execution data models.

TaskRequest/TaskResult form the TaskRunner contract; ControllerState names
the states of a plan's scheduling loop.
"""

from dataclasses import dataclass
from enum import Enum

from planloom.core.plans.models import Phase, Plan, Task


class ControllerState(str, Enum):
    """
    State of the ExecutionController for one plan.

    - IDLE: draft/ready, no loop
    - SCHEDULING: computing and dispatching the next batch
    - AWAITING_TASKS: batch dispatched, waiting on the runner
    - PAUSE_PENDING: pause requested, draining in-flight tasks
    - PAUSED: halted, resumable
    - CANCELLING: cancel requested, in-flight tasks signalled to stop
    - COMPLETED / FAILED: terminal
    """

    IDLE = "idle"
    SCHEDULING = "scheduling"
    AWAITING_TASKS = "awaiting_tasks"
    PAUSE_PENDING = "pause_pending"
    PAUSED = "paused"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        """True while a scheduling loop owns the plan."""
        return self in (
            ControllerState.SCHEDULING,
            ControllerState.AWAITING_TASKS,
            ControllerState.PAUSE_PENDING,
            ControllerState.CANCELLING,
        )


class TaskOutcome(str, Enum):
    """Terminal outcome reported by a TaskRunner."""

    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class TaskRequest:
    """
    Everything a runner needs to perform one task.

    Attributes:
        plan: Owning plan (for context)
        phase: Owning phase
        task: The task, as persisted at dispatch (status running)
        correlation_id: Id to pass back to ``TaskRunner.cancel``
    """

    plan: Plan
    phase: Phase
    task: Task
    correlation_id: str


@dataclass(frozen=True)
class TaskResult:
    """Terminal result of one task run."""

    outcome: TaskOutcome
    output: str | None = None
    error: str | None = None

    @classmethod
    def completed(cls, output: str | None = None) -> "TaskResult":
        return cls(outcome=TaskOutcome.COMPLETED, output=output)

    @classmethod
    def failed(cls, error: str, output: str | None = None) -> "TaskResult":
        return cls(outcome=TaskOutcome.FAILED, output=output, error=error)

    @classmethod
    def skipped(cls, reason: str | None = None) -> "TaskResult":
        return cls(outcome=TaskOutcome.SKIPPED, output=reason)
