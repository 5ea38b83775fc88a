"""
Prompt construction for refinement turns.
"""

import json
from typing import Any

from planloom.core.plans.models import PlanDetail

REFINE_SYSTEM_PROMPT = (
    "You are helping refine a development plan. Propose concrete edits to the plan "
    "as an <UPDATES> block; never claim to have changed the plan yourself."
)

UPDATES_FORMAT = """IMPORTANT: Respond in TWO parts:

1. First, write a brief explanation of what you're changing and why (2-3 sentences max). Be specific.

2. Then include an <UPDATES> section. Each update MUST have a "label" field (short human-readable summary of the change).

REQUIRED FORMAT:
[Your brief explanation here]

<UPDATES>
[
  {"action": "update_phase", "phaseOrder": 1, "updates": {"title": "New Title", "description": "New Description"}, "label": "Rename Phase 1"},
  {"action": "update_task", "phaseOrder": 1, "taskOrder": 2, "updates": {"title": "New Title", "description": "New Description"}, "label": "Clarify task description"},
  {"action": "create_task", "phaseOrder": 1, "task": {"title": "Task Title", "description": "Detailed description"}, "label": "Add error handling task"},
  {"action": "create_phase", "phase": {"title": "Phase Title", "description": "Phase description"}, "label": "Add testing phase"},
  {"action": "delete_task", "phaseOrder": 1, "taskOrder": 3, "label": "Remove redundant validation task"}
]
</UPDATES>

CRITICAL: Always include <UPDATES> when the user asks for changes. Each update needs a "label" field. Use phaseOrder (1, 2, 3...) and taskOrder (1, 2, 3...) to reference items."""


def build_plan_context(detail: PlanDetail) -> dict[str, Any]:
    """Positional JSON view of a plan, matching the proposal coordinates."""
    return {
        "plan": {
            "title": detail.title,
            "description": detail.description,
            "status": detail.status.value,
        },
        "phases": [
            {
                "order": index + 1,
                "title": phase.title,
                "description": phase.description,
                "executionMode": phase.execution_mode.value,
                "tasks": [
                    {"order": task_index + 1, "title": task.title, "description": task.description}
                    for task_index, task in enumerate(phase.tasks)
                ],
            }
            for index, phase in enumerate(detail.phases)
        ],
    }


def build_refine_prompt(detail: PlanDetail, instruction: str) -> str:
    """
    Build the prompt for one refinement turn.

    Prior turns are not included here; they travel as request history.
    """
    context = json.dumps(build_plan_context(detail), indent=2)
    return (
        f"Current plan structure:\n\n{context}\n\n"
        f'User request: "{instruction}"\n\n'
        f"{UPDATES_FORMAT}"
    )
