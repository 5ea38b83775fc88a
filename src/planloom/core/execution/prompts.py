"""
Prompt construction for generator-backed task runs.
"""

from planloom.core.plans.models import Phase, Plan, Task

SKIP_MARKER = "SKIP:"

TASK_SYSTEM_PROMPT = (
    "You are executing one task of a larger development plan. Complete the task "
    "described below in the current working directory. Do NOT commit your changes; "
    "they will be reviewed before committing. If the task needs no work, end your "
    "reply with a line 'SKIP: <reason>'."
)


def build_retry_context(task: Task) -> str:
    """Prefix for a task that failed before, or "" for a first attempt."""
    if task.attempts > 0 and task.last_error:
        return (
            f"Previous attempt failed. Error:\n{task.last_error}\n\n"
            "Please fix and try again.\n\n"
        )
    return ""


def build_task_prompt(plan: Plan, phase: Phase, task: Task) -> str:
    """
    Build the prompt for one task.

    Includes the plan and phase as context, then the task itself. Retries
    are prefixed with the previous error.
    """
    sections = [f"Plan: {plan.title}"]
    if plan.description:
        sections[0] += f"\n{plan.description}"

    phase_section = f"Phase: {phase.title}"
    if phase.description:
        phase_section += f"\n{phase.description}"
    sections.append(phase_section)

    task_section = f"Task: {task.title}"
    if task.description:
        task_section += f"\n{task.description}"
    sections.append(task_section)

    return build_retry_context(task) + "\n\n".join(sections)
