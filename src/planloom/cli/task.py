"""
planloom CLI - task commands.

Retry, reset and trigger individual tasks. When a command restarts the
plan's scheduling loop, the run is followed in the foreground like
``planloom plan run``.
"""

from collections.abc import Awaitable, Callable

import typer
from rich.console import Console

from planloom.cli.context import open_engine, run_async
from planloom.cli.errors import ExitCode, exit_with_error
from planloom.cli.follow import follow_plan
from planloom.cli.render import outcome_hint
from planloom.core.engine import Engine
from planloom.core.errors import PlanloomError
from planloom.core.plans.models import Plan, PlanStatus, Task

console = Console()
app = typer.Typer(help="Retry, reset and trigger tasks")


async def _control(
    engine: Engine, task_id: str, operation: Callable[[str], Awaitable[Task]]
) -> tuple[Task, Plan | None, bool]:
    try:
        engine.controller.recover()
        task = engine.service.get_task(task_id)
        with engine.bus.subscribe(task.plan_id) as subscription:
            task = await operation(task_id)
            if not engine.controller.is_active(task.plan_id):
                return task, None, False
            plan, interrupted = await follow_plan(engine, task.plan_id, console, subscription)
            return task, plan, interrupted
    finally:
        await engine.shutdown()


def _report(task: Task, plan: Plan | None, interrupted: bool) -> None:
    if plan is None:
        console.print(f"Task {task.id} is [cyan]{task.status.value}[/cyan]")
        return
    if hint := outcome_hint(plan):
        console.print(f"[cyan]→ Next:[/cyan] {hint}")
    if interrupted:
        raise typer.Exit(ExitCode.SIGINT)
    if plan.status == PlanStatus.FAILED:
        raise typer.Exit(ExitCode.GENERAL_ERROR)


@app.command()
def retry(task_id: str = typer.Argument(..., help="Task ID")) -> None:
    """
    Reset a failed task and resume its plan.

    The task's attempt counter starts over. If the plan stopped because of
    a task failure it is resumed and followed until it settles.
    """
    engine = open_engine()
    try:
        task, plan, interrupted = run_async(_control, engine, task_id, engine.controller.retry_task)
    except PlanloomError as e:
        exit_with_error(e)
    _report(task, plan, interrupted)


@app.command()
def reset(task_id: str = typer.Argument(..., help="Task ID")) -> None:
    """Reset a task to pending without resuming its plan."""
    engine = open_engine()
    try:
        task = run_async(engine.controller.reset_task, task_id)
    except PlanloomError as e:
        exit_with_error(e)
    console.print(f"Task {task.id} is [cyan]{task.status.value}[/cyan]")


@app.command()
def trigger(task_id: str = typer.Argument(..., help="Task ID")) -> None:
    """
    Dispatch a task of a manual phase.

    The plan (paused waiting for approval) is resumed with the task queued
    and followed until it settles.
    """
    engine = open_engine()
    try:
        task, plan, interrupted = run_async(
            _control, engine, task_id, engine.controller.trigger_task
        )
    except PlanloomError as e:
        exit_with_error(e)
    _report(task, plan, interrupted)
