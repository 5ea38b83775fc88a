"""
planloom CLI - plan commands.

Create plans (inline or from a YAML/JSON file), inspect them, and run them
in the foreground.
"""

import json
from pathlib import Path

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console

from planloom.cli.context import open_engine, run_async
from planloom.cli.errors import ExitCode, exit_with_error, print_error
from planloom.cli.follow import follow_plan
from planloom.cli.render import outcome_hint, plan_tree, plans_table
from planloom.core.engine import Engine
from planloom.core.errors import InvalidTransition, PlanloomError
from planloom.core.plans.models import Plan, PlanDraft, PlanStatus

console = Console()
app = typer.Typer(help="Create, inspect and run plans")


def load_plan_file(path: Path) -> PlanDraft:
    """
    Read a plan definition from YAML or JSON.

    Raises:
        typer.Exit: If the file can't be read or doesn't describe a plan
    """
    try:
        text = path.read_text()
    except OSError as e:
        print_error(f"Cannot read {path}", reason=str(e))
        raise typer.Exit(ExitCode.USER_ERROR)

    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        print_error(f"{path} is not valid {path.suffix.lstrip('.').upper() or 'YAML'}", reason=str(e))
        raise typer.Exit(ExitCode.USER_ERROR)

    try:
        return PlanDraft.model_validate(data)
    except ValidationError as e:
        print_error(f"{path} does not describe a plan", reason=str(e))
        raise typer.Exit(ExitCode.USER_ERROR)


@app.command()
def create(
    title: str = typer.Argument(..., help="Plan title"),
    description: str = typer.Option("", "--description", "-d", help="Plan description"),
) -> None:
    """Create an empty draft plan."""
    engine = open_engine()
    try:
        detail = engine.service.create_plan(PlanDraft(title=title, description=description))
    except PlanloomError as e:
        exit_with_error(e)
    console.print(f"[green]Created plan[/green] {detail.id}: {detail.title}")


@app.command(name="import")
def import_plan(
    path: Path = typer.Argument(..., help="Plan definition (.yaml, .yml or .json)"),
    ready: bool = typer.Option(False, "--ready", help="Mark the plan ready after import"),
) -> None:
    """
    Import a plan with its phases and tasks.

    Tasks name their dependencies by ``key`` or by title within the phase.
    """
    draft = load_plan_file(path)
    engine = open_engine()
    try:
        detail = engine.service.create_plan(draft)
        if ready:
            engine.service.mark_ready(detail.id)
            detail = engine.service.get_plan_detail(detail.id)
    except PlanloomError as e:
        exit_with_error(e)
    console.print(
        f"[green]Imported plan[/green] {detail.id}: {detail.title} "
        f"[dim]({detail.total_phases} phases, {detail.total_tasks} tasks)[/dim]"
    )


@app.command(name="list")
def list_plans(
    status: PlanStatus | None = typer.Option(None, "--status", "-s", help="Filter by status"),
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """List plans."""
    engine = open_engine()
    plans = engine.service.list_plans(status)
    if as_json:
        console.print_json(json.dumps([p.model_dump(mode="json") for p in plans]))
        return
    if not plans:
        console.print("[dim]No plans found[/dim]")
        return
    console.print(plans_table(plans))


@app.command()
def show(
    plan_id: str = typer.Argument(..., help="Plan ID"),
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show a plan's phases and tasks."""
    engine = open_engine()
    try:
        detail = engine.service.get_plan_detail(plan_id)
    except PlanloomError as e:
        exit_with_error(e)
    if as_json:
        console.print_json(detail.model_dump_json())
        return
    console.print(plan_tree(detail))
    if detail.status_detail:
        console.print(f"[dim]{detail.status_detail}[/dim]")


@app.command()
def ready(plan_id: str = typer.Argument(..., help="Plan ID")) -> None:
    """Mark a draft plan ready to run."""
    engine = open_engine()
    try:
        plan = engine.service.mark_ready(plan_id)
    except PlanloomError as e:
        exit_with_error(e)
    console.print(f"Plan {plan.id} is [cyan]{plan.status.value}[/cyan]")


async def _run(engine: Engine, plan_id: str) -> tuple[Plan, bool]:
    controller = engine.controller
    try:
        controller.recover()
        plan = engine.service.get_plan(plan_id)
        with engine.bus.subscribe(plan_id) as subscription:
            if plan.status == PlanStatus.DRAFT:
                engine.service.mark_ready(plan_id)
                await controller.start(plan_id)
            elif plan.status == PlanStatus.READY:
                await controller.start(plan_id)
            elif plan.status == PlanStatus.PAUSED:
                await controller.resume(plan_id)
            else:
                raise InvalidTransition(
                    f"Cannot run plan {plan_id}: status is {plan.status.value}"
                )
            return await follow_plan(engine, plan_id, console, subscription)
    finally:
        await engine.shutdown()


@app.command()
def run(plan_id: str = typer.Argument(..., help="Plan ID")) -> None:
    """
    Run a plan in the foreground.

    Starts a draft/ready plan or resumes a paused one. Ctrl-C pauses after
    in-flight tasks finish; run the command again to resume.
    """
    engine = open_engine()
    try:
        plan, interrupted = run_async(_run, engine, plan_id)
    except PlanloomError as e:
        exit_with_error(e)

    if hint := outcome_hint(plan):
        console.print(f"[cyan]→ Next:[/cyan] {hint}")
    if interrupted:
        raise typer.Exit(ExitCode.SIGINT)
    if plan.status == PlanStatus.FAILED:
        raise typer.Exit(ExitCode.GENERAL_ERROR)


@app.command()
def cancel(plan_id: str = typer.Argument(..., help="Plan ID")) -> None:
    """Cancel a paused plan; it ends failed (cancelled)."""
    engine = open_engine()
    try:
        plan = run_async(engine.controller.cancel, plan_id)
    except PlanloomError as e:
        exit_with_error(e)
    console.print(f"Plan {plan.id} is [red]{plan.status.value}[/red]")


@app.command()
def delete(
    plan_id: str = typer.Argument(..., help="Plan ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Don't ask for confirmation"),
) -> None:
    """Delete a plan with its phases, tasks and iteration log."""
    engine = open_engine()
    try:
        plan = engine.service.get_plan(plan_id)
        if not yes and not typer.confirm(f"Delete plan '{plan.title}'?"):
            raise typer.Exit(ExitCode.SUCCESS)
        run_async(engine.delete_plan, plan_id)
    except PlanloomError as e:
        exit_with_error(e)
    console.print(f"[green]Deleted plan[/green] {plan_id}")
