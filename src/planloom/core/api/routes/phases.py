"""
Phase API routes.

- PATCH/DELETE /api/phases/{id}
- POST /api/phases/{id}/tasks - append a task
"""

from fastapi import APIRouter, Depends

from planloom.core.api.deps import get_engine
from planloom.core.engine import Engine
from planloom.core.plans.models import Phase, PhasePatch, Task, TaskDraft

router = APIRouter()


@router.patch("/phases/{phase_id}")
async def update_phase(
    phase_id: str, patch: PhasePatch, engine: Engine = Depends(get_engine)
) -> Phase:
    return engine.service.update_phase(phase_id, patch)


@router.delete("/phases/{phase_id}")
async def delete_phase(phase_id: str, engine: Engine = Depends(get_engine)) -> dict[str, bool]:
    """Delete a phase and its tasks."""
    engine.service.delete_phase(phase_id)
    return {"success": True}


@router.post("/phases/{phase_id}/tasks", status_code=201)
async def add_task(
    phase_id: str, draft: TaskDraft, engine: Engine = Depends(get_engine)
) -> Task:
    """Append a task; ``dependsOn`` holds ids of tasks in the same phase."""
    return engine.service.add_task(phase_id, draft)
