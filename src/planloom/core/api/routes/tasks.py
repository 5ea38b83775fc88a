"""
Task API routes.

- PATCH/DELETE /api/tasks/{id}
- POST /api/tasks/{id}/retry - reset the task and resume its plan if it
  stopped because of a task failure
- POST /api/tasks/{id}/trigger - dispatch a task of a manual phase
"""

from fastapi import APIRouter, Depends

from planloom.core.api.deps import get_engine
from planloom.core.engine import Engine
from planloom.core.plans.models import Task, TaskPatch

router = APIRouter()


@router.get("/tasks/{task_id}")
async def get_task(task_id: str, engine: Engine = Depends(get_engine)) -> Task:
    return engine.service.get_task(task_id)


@router.patch("/tasks/{task_id}")
async def update_task(
    task_id: str, patch: TaskPatch, engine: Engine = Depends(get_engine)
) -> Task:
    return engine.service.update_task(task_id, patch)


@router.delete("/tasks/{task_id}")
async def delete_task(task_id: str, engine: Engine = Depends(get_engine)) -> dict[str, bool]:
    """Delete a task and prune it from sibling dependencies."""
    engine.service.delete_task(task_id)
    return {"success": True}


@router.post("/tasks/{task_id}/retry")
async def retry_task(task_id: str, engine: Engine = Depends(get_engine)) -> Task:
    return await engine.controller.retry_task(task_id)


@router.post("/tasks/{task_id}/trigger")
async def trigger_task(task_id: str, engine: Engine = Depends(get_engine)) -> Task:
    return await engine.controller.trigger_task(task_id)
