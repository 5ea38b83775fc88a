"""
Plan execution: the controller state machine and the TaskRunner contract.
"""

from planloom.core.execution.controller import ExecutionController
from planloom.core.execution.interrupt import InterruptHandler
from planloom.core.execution.models import (
    ControllerState,
    TaskOutcome,
    TaskRequest,
    TaskResult,
)
from planloom.core.execution.runner import (
    GeneratorTaskRunner,
    TaskRunner,
    get_runner,
    list_runners,
    register_runner,
)

__all__ = [
    "ControllerState",
    "ExecutionController",
    "GeneratorTaskRunner",
    "InterruptHandler",
    "TaskOutcome",
    "TaskRequest",
    "TaskResult",
    "TaskRunner",
    "get_runner",
    "list_runners",
    "register_runner",
]
