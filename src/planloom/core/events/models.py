"""
Progress event models.

ProgressEvents are produced by the ExecutionController at every state
transition and fanned out by the ProgressBus. Each event carries the ids an
observer needs to reconcile its view without re-querying the store.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from planloom.core.plans.models import utcnow


class ProgressEventType(str, Enum):
    """
    Discriminator for progress events.

    Renderers (CLI, SSE clients) switch on this.
    """

    # Task events
    TASK_STARTED = "task_started"
    TASK_PROGRESS = "task_progress"
    TASK_COMPLETED = "task_completed"

    # Phase events
    PHASE_STARTED = "phase_started"
    PHASE_COMPLETED = "phase_completed"

    # Plan lifecycle events
    PLAN_STARTED = "plan_started"
    PLAN_RESUMED = "plan_resumed"
    PLAN_PAUSED = "plan_paused"
    PLAN_COMPLETED = "plan_completed"
    PLAN_FAILED = "plan_failed"

    @property
    def settles_plan(self) -> bool:
        """True for events after which the plan's loop is no longer running."""
        return self in (
            ProgressEventType.PLAN_PAUSED,
            ProgressEventType.PLAN_COMPLETED,
            ProgressEventType.PLAN_FAILED,
        )


@dataclass(frozen=True)
class ProgressEvent:
    """
    One entry of a plan's ordered event stream.

    Attributes:
        sequence: Monotonic per-plan sequence number (starts at 1)
        event_type: Discriminator
        plan_id: Owning plan
        phase_id: Phase the event concerns (if any)
        task_id: Task the event concerns (if any)
        status: New status of the task/phase/plan (if applicable)
        reason: Status reason code for plan_paused / plan_failed
        message: Human-readable description
        data: Extra payload (error text, deadlock details, ...)
        timestamp: When the event was published
    """

    sequence: int
    event_type: ProgressEventType
    plan_id: str
    phase_id: str | None = None
    task_id: str | None = None
    status: str | None = None
    reason: str | None = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready representation (used by the SSE endpoint)."""
        return {
            "sequence": self.sequence,
            "type": self.event_type.value,
            "planId": self.plan_id,
            "phaseId": self.phase_id,
            "taskId": self.task_id,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }
