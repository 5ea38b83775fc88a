"""
Standardized error handling and exit codes for the planloom CLI.

Every command reports failures through ``print_error`` so messages share
one shape: the problem, an optional reason and an optional next step.
"""

from enum import IntEnum
from typing import NoReturn

import typer
from rich.console import Console

from planloom.core.errors import (
    HarnessUnavailable,
    InvalidTransition,
    NotFoundError,
    PlanloomError,
    SessionBusy,
    StorageFailure,
    ValidationFailure,
)

console = Console()


class ExitCode(IntEnum):
    """Standard exit codes for planloom CLI operations."""

    SUCCESS = 0
    """Operation completed successfully."""

    GENERAL_ERROR = 1
    """Generic error, or a plan that ended failed."""

    USER_ERROR = 2
    """Invalid input or a request the plan's state doesn't allow."""

    SIGINT = 130
    """Terminated by SIGINT (Ctrl+C) - Unix standard."""


def print_error(
    problem: str,
    *,
    reason: str | None = None,
    solution: str | None = None,
) -> None:
    """
    Print a standardized error message with actionable guidance.

    Args:
        problem: Brief description of what went wrong
        reason: Optional explanation of why it happened
        solution: Optional command or action to fix it

    Example:
        >>> print_error(
        ...     "Plan plan-1a2b3c4d is not ready",
        ...     solution="planloom plan ready plan-1a2b3c4d",
        ... )
    """
    console.print(f"[red]Error:[/red] {problem}")

    if reason:
        console.print(f"[dim]{reason}[/dim]")

    if solution:
        console.print(f"[cyan]→ Try:[/cyan] {solution}")


def exit_with_error(error: PlanloomError) -> NoReturn:
    """
    Report a planloom error and exit with the matching code.

    Raises:
        typer.Exit: Always
    """
    if isinstance(error, NotFoundError):
        print_error(error.message, solution="planloom plan list")
        raise typer.Exit(ExitCode.USER_ERROR)
    if isinstance(error, (InvalidTransition, SessionBusy, ValidationFailure)):
        print_error(error.message)
        raise typer.Exit(ExitCode.USER_ERROR)
    if isinstance(error, HarnessUnavailable):
        print_error(
            "No text-generation backend available",
            reason=error.message,
            solution="install the claude CLI, set ANTHROPIC_API_KEY, or set PLANLOOM_HARNESS=fake",
        )
        raise typer.Exit(ExitCode.GENERAL_ERROR)
    if isinstance(error, StorageFailure):
        print_error("Plan store failed", reason=error.message)
        raise typer.Exit(ExitCode.GENERAL_ERROR)
    print_error(error.message)
    raise typer.Exit(ExitCode.GENERAL_ERROR)
