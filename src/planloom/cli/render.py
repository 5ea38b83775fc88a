"""
Rich rendering of plans and progress events.
"""

from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from planloom.core.events import ProgressEvent, ProgressEventType
from planloom.core.plans.models import Plan, PlanDetail, PlanStatus, StatusReason, TaskStatus

STATUS_STYLES = {
    "draft": "dim",
    "ready": "cyan",
    "pending": "dim",
    "running": "yellow",
    "paused": "magenta",
    "completed": "green",
    "skipped": "blue",
    "failed": "red",
}


def styled(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def plans_table(plans: list[Plan]) -> Table:
    table = Table(title="Plans")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Phases", justify="right")
    table.add_column("Tasks", justify="right")
    for plan in plans:
        status = styled(plan.status.value)
        if plan.status_reason is not None:
            status += f" [dim]({plan.status_reason.value})[/dim]"
        table.add_row(
            plan.id,
            plan.title,
            status,
            f"{plan.completed_phases}/{plan.total_phases}",
            f"{plan.completed_tasks}/{plan.total_tasks}",
        )
    return table


def plan_tree(detail: PlanDetail) -> Tree:
    """Phases and tasks of a plan as a Rich tree."""
    header = f"[bold]{detail.title}[/bold] [dim]{detail.id}[/dim] {styled(detail.status.value)}"
    if detail.status_reason is not None:
        header += f" [dim]({detail.status_reason.value})[/dim]"
    tree = Tree(header)
    for index, phase in enumerate(detail.phases, start=1):
        mode = phase.execution_mode.value
        if phase.pause_after:
            mode += ", pause after"
        branch = tree.add(
            f"{index}. {phase.title} [dim]({mode})[/dim] {styled(phase.status.value)} "
            f"[dim]{phase.completed_tasks}/{phase.total_tasks}[/dim]"
        )
        positions = {task.id: str(i) for i, task in enumerate(phase.tasks, start=1)}
        for task_index, task in enumerate(phase.tasks, start=1):
            line = f"{task_index}. {task.title} {styled(task.status.value)} [dim]{task.id}[/dim]"
            if task.depends_on:
                deps = ", ".join(positions.get(dep, dep) for dep in task.depends_on)
                line += f" [dim]after {deps}[/dim]"
            if task.status == TaskStatus.FAILED and task.last_error:
                line += f"\n[red]{task.last_error}[/red]"
            branch.add(line)
    return tree


def render_event(console: Console, event: ProgressEvent) -> None:
    """Print one progress event as a single line."""
    kind = event.event_type
    reason = f" [dim]({event.reason})[/dim]" if event.reason else ""
    detail = f": {event.message}" if event.message else ""
    if kind == ProgressEventType.TASK_STARTED:
        attempt = event.data.get("attempt", 1)
        suffix = f" [dim](attempt {attempt})[/dim]" if attempt > 1 else ""
        console.print(f"[yellow]▶[/yellow] {event.message}{suffix}")
    elif kind == ProgressEventType.TASK_COMPLETED:
        mark = "[blue]↷[/blue]" if event.status == TaskStatus.SKIPPED.value else "[green]✓[/green]"
        console.print(f"{mark} {event.message}")
    elif kind == ProgressEventType.TASK_PROGRESS:
        if event.status == TaskStatus.FAILED.value:
            attempts = event.data.get("attempts")
            console.print(f"[red]✗[/red] Task {event.task_id} failed (attempt {attempts})")
            if event.message:
                console.print(f"  [dim]{event.message}[/dim]")
    elif kind == ProgressEventType.PHASE_STARTED:
        console.print(f"\n[bold cyan]Phase: {event.message}[/bold cyan]")
    elif kind == ProgressEventType.PHASE_COMPLETED:
        console.print(f"[green]Phase complete: {event.message}[/green]")
    elif kind == ProgressEventType.PLAN_STARTED:
        console.print("[bold]Plan started[/bold]")
    elif kind == ProgressEventType.PLAN_RESUMED:
        console.print("[bold]Plan resumed[/bold]")
    elif kind == ProgressEventType.PLAN_COMPLETED:
        console.print("\n[bold green]Plan completed[/bold green]")
    elif kind == ProgressEventType.PLAN_PAUSED:
        console.print(f"\n[bold magenta]Plan paused[/bold magenta]{reason}{detail}")
    elif kind == ProgressEventType.PLAN_FAILED:
        console.print(f"\n[bold red]Plan failed[/bold red]{reason}{detail}")


def outcome_hint(plan: Plan) -> str | None:
    """Next step for a plan that stopped short of completion."""
    if plan.current_task_id and plan.status_reason in (
        StatusReason.TASK_FAILED,
        StatusReason.RETRY_CEILING_EXHAUSTED,
    ):
        return f"planloom task retry {plan.current_task_id}"
    if plan.current_task_id and plan.status_reason == StatusReason.MANUAL_APPROVAL_REQUIRED:
        return f"planloom task trigger {plan.current_task_id}"
    if plan.status == PlanStatus.PAUSED:
        return f"planloom plan run {plan.id}"
    return None
