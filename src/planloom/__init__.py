"""
Planloom - plan orchestration engine.

Turns hierarchical plans (phases of tasks with dependencies) into a
partially-parallel execution schedule, and refines plans through a
streaming conversational proposal protocol.
"""

__version__ = "0.1.0"

# Re-export core models for convenience
from planloom.core.config.models import PlanloomConfig
from planloom.core.plans.models import Phase, Plan, PlanStatus, Task, TaskStatus

__all__ = ["PlanloomConfig", "Phase", "Plan", "PlanStatus", "Task", "TaskStatus", "__version__"]
