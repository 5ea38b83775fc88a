"""
planloom CLI - refine command.

Send one natural-language instruction about a plan, stream the reply and
review the proposed changes. Proposals only land with ``--apply`` (all of
them) or ``--accept`` (the listed ones).
"""

import typer
from rich.console import Console
from rich.table import Table

from planloom.cli.context import open_engine, run_async
from planloom.cli.errors import ExitCode, exit_with_error, print_error
from planloom.core.engine import Engine
from planloom.core.errors import PlanloomError
from planloom.core.refine import ApplyReport, Proposal, RefineTurn

console = Console()


def proposals_table(proposals: list[Proposal]) -> Table:
    table = Table(title="Proposed changes")
    table.add_column("#", justify="right", style="cyan")
    table.add_column("Action")
    table.add_column("Target")
    table.add_column("Change")
    for proposal in proposals:
        target = ""
        if proposal.phase_order is not None:
            target = f"phase {proposal.phase_order}"
        if proposal.task_order is not None:
            target += f", task {proposal.task_order}"
        table.add_row(str(proposal.id), proposal.action.value, target, proposal.label)
    return table


def print_report(report: ApplyReport) -> None:
    for result in report.results:
        if result.applied:
            console.print(f"[green]✓[/green] {result.label}")
        else:
            console.print(f"[red]✗[/red] {result.label} [dim]({result.error})[/dim]")
    console.print(f"Applied {report.applied} of {report.total} change(s)")


async def _refine(
    engine: Engine, plan_id: str, instruction: str, apply_all: bool, accept: list[int]
) -> tuple[RefineTurn, ApplyReport | None]:
    session = engine.session(plan_id)
    try:
        turn = await session.send(
            instruction,
            on_chunk=lambda chunk: console.print(chunk, end="", markup=False, highlight=False),
            auto_apply=apply_all,
        )
    finally:
        console.print()
    if apply_all or not accept:
        return turn, turn.report
    return turn, session.apply(accept)


def refine(
    plan_id: str = typer.Argument(..., help="Plan ID"),
    instruction: str = typer.Argument(..., help="What to change, in plain words"),
    apply_all: bool = typer.Option(False, "--apply", help="Apply every proposed change"),
    accept: list[int] = typer.Option(
        [], "--accept", "-a", help="Apply only this proposal (repeatable)"
    ),
) -> None:
    """Ask for changes to a plan and review (or apply) the proposals."""
    if apply_all and accept:
        print_error("Use either --apply or --accept, not both")
        raise typer.Exit(ExitCode.USER_ERROR)

    engine = open_engine()
    try:
        turn, report = run_async(_refine, engine, plan_id, instruction, apply_all, accept)
    except PlanloomError as e:
        exit_with_error(e)

    if not turn.proposals:
        console.print("[dim]No changes proposed[/dim]")
        return
    console.print(proposals_table(turn.proposals))
    if report is not None:
        print_report(report)
        if report.failed:
            raise typer.Exit(ExitCode.GENERAL_ERROR)
    else:
        console.print("[dim]Nothing applied. Re-run with --apply or --accept N.[/dim]")
