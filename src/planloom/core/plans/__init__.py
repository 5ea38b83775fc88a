"""
Plan data model and plan-level services.

Only the models are re-exported here; import the service and counter
helpers from their modules (they depend on the store package, which in
turn depends on these models).
"""

from .models import (
    ExecutionMode,
    Iteration,
    IterationType,
    Phase,
    PhaseDetail,
    PhaseDraft,
    PhasePatch,
    PhaseStatus,
    Plan,
    PlanAuthor,
    PlanDetail,
    PlanDraft,
    PlanPatch,
    PlanStatus,
    StatusReason,
    Task,
    TaskDraft,
    TaskPatch,
    TaskStatus,
)

__all__ = [
    "ExecutionMode",
    "Iteration",
    "IterationType",
    "Phase",
    "PhaseDetail",
    "PhaseDraft",
    "PhasePatch",
    "PhaseStatus",
    "Plan",
    "PlanAuthor",
    "PlanDetail",
    "PlanDraft",
    "PlanPatch",
    "PlanStatus",
    "StatusReason",
    "Task",
    "TaskDraft",
    "TaskPatch",
    "TaskStatus",
]
