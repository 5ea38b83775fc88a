"""
Exception hierarchy for the planloom engine.

Caller-invoked operations raise these synchronously. Failures that happen
inside a scheduling loop are absorbed into persisted plan/task state instead
(see ExecutionController), so most of these only ever reach a caller that
asked for something invalid.
"""

from __future__ import annotations


class PlanloomError(Exception):
    """Base class for all planloom errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        return self.message


class NotFoundError(PlanloomError):
    """A plan, phase, task or proposal id does not exist."""

    def __init__(self, kind: str, record_id: str | int) -> None:
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind.capitalize()} not found: {record_id}")


class InvalidTransition(PlanloomError):
    """
    Operation is not valid from the current plan or task status.

    Examples: resuming a plan that isn't paused, starting a plan that already
    has a live scheduling loop, deleting a running task.
    """


class DependencyDeadlock(PlanloomError):
    """
    No task in a phase can become eligible although unfinished tasks remain.

    Attributes:
        phase_id: Phase whose tasks are blocked
        blocked: Map of blocked task id -> unsatisfied dependency ids
        cycle: Task ids forming a dependency cycle (empty if none was found)
    """

    def __init__(
        self,
        phase_id: str,
        blocked: dict[str, list[str]],
        cycle: list[str] | None = None,
    ) -> None:
        self.phase_id = phase_id
        self.blocked = blocked
        self.cycle = cycle or []
        if self.cycle:
            detail = "cycle " + " -> ".join(self.cycle + self.cycle[:1])
        else:
            detail = ", ".join(
                f"{task_id} waits on {', '.join(deps)}" for task_id, deps in blocked.items()
            )
        super().__init__(f"Dependency deadlock in phase {phase_id}: {detail}")


class TaskExecutionFailure(PlanloomError):
    """A TaskRunner reported that a task failed."""

    def __init__(self, task_id: str, error: str) -> None:
        self.task_id = task_id
        self.error = error
        super().__init__(f"Task {task_id} failed: {error}")


class SessionBusy(PlanloomError):
    """A refinement request is already streaming for this session."""

    def __init__(self, plan_id: str) -> None:
        self.plan_id = plan_id
        super().__init__(f"A refinement request is already in progress for plan {plan_id}")


class ProposalApplyFailure(PlanloomError):
    """One proposal of a batch could not be applied."""

    def __init__(self, label: str, reason: str) -> None:
        self.label = label
        self.reason = reason
        super().__init__(f"{label or 'proposal'}: {reason}")


class StorageFailure(PlanloomError):
    """A PlanStore operation failed. Wraps the underlying sqlite3 error."""

    def __init__(self, operation: str, cause: Exception | None = None) -> None:
        self.operation = operation
        self.cause = cause
        message = f"Storage failure during {operation}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class ValidationFailure(PlanloomError):
    """Bad input to a CRUD operation (unknown field, foreign dependency, ...)."""


class HarnessUnavailable(PlanloomError):
    """No text-generation backend could be resolved."""


class RefinementFailure(PlanloomError):
    """A refinement turn ended without a reply (backend error or timeout)."""


__all__ = [
    "DependencyDeadlock",
    "HarnessUnavailable",
    "InvalidTransition",
    "NotFoundError",
    "PlanloomError",
    "ProposalApplyFailure",
    "RefinementFailure",
    "SessionBusy",
    "StorageFailure",
    "TaskExecutionFailure",
    "ValidationFailure",
]
