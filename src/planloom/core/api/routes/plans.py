"""
Plan API routes.

- GET/POST /api/plans - list and create plans
- GET/PATCH/DELETE /api/plans/{id} - plan detail, edits, cascading delete
- POST /api/plans/{id}/ready|start|pause|resume|cancel - lifecycle control
- GET /api/plans/{id}/state - controller state
- GET /api/plans/{id}/events - SSE progress stream
- POST /api/plans/{id}/phases - append a phase
"""

import json
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from planloom.core.api.deps import get_engine
from planloom.core.engine import Engine
from planloom.core.plans.models import (
    PhaseDetail,
    PhaseDraft,
    Plan,
    PlanDetail,
    PlanDraft,
    PlanPatch,
    PlanStatus,
)

router = APIRouter()

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


@router.get("/plans")
async def list_plans(
    status: PlanStatus | None = None, engine: Engine = Depends(get_engine)
) -> list[Plan]:
    """List plans, optionally filtered by status."""
    return engine.service.list_plans(status)


@router.post("/plans", status_code=201)
async def create_plan(draft: PlanDraft, engine: Engine = Depends(get_engine)) -> PlanDetail:
    """Create a draft plan, optionally with phases and tasks."""
    return engine.service.create_plan(draft)


@router.get("/plans/{plan_id}")
async def get_plan(plan_id: str, engine: Engine = Depends(get_engine)) -> PlanDetail:
    """Plan with phases, tasks and iteration log."""
    return engine.service.get_plan_detail(plan_id)


@router.patch("/plans/{plan_id}")
async def update_plan(
    plan_id: str, patch: PlanPatch, engine: Engine = Depends(get_engine)
) -> Plan:
    return engine.service.update_plan(plan_id, patch)


@router.delete("/plans/{plan_id}")
async def delete_plan(plan_id: str, engine: Engine = Depends(get_engine)) -> dict[str, bool]:
    """Delete a plan. Rejected with 409 while its scheduling loop is live."""
    await engine.delete_plan(plan_id)
    return {"success": True}


@router.post("/plans/{plan_id}/ready")
async def mark_ready(plan_id: str, engine: Engine = Depends(get_engine)) -> Plan:
    return engine.service.mark_ready(plan_id)


@router.post("/plans/{plan_id}/start")
async def start_plan(plan_id: str, engine: Engine = Depends(get_engine)) -> Plan:
    """Start a ready plan. Returns as soon as the scheduling loop is launched."""
    return await engine.controller.start(plan_id)


@router.post("/plans/{plan_id}/pause")
async def pause_plan(plan_id: str, engine: Engine = Depends(get_engine)) -> Plan:
    """Request a pause; in-flight tasks finish first."""
    return await engine.controller.pause(plan_id)


@router.post("/plans/{plan_id}/resume")
async def resume_plan(plan_id: str, engine: Engine = Depends(get_engine)) -> Plan:
    return await engine.controller.resume(plan_id)


@router.post("/plans/{plan_id}/cancel")
async def cancel_plan(plan_id: str, engine: Engine = Depends(get_engine)) -> Plan:
    """Cancel a running or paused plan; it ends failed (cancelled)."""
    return await engine.controller.cancel(plan_id)


@router.get("/plans/{plan_id}/state")
async def plan_state(plan_id: str, engine: Engine = Depends(get_engine)) -> dict[str, object]:
    state = engine.controller.state(plan_id)
    return {
        "planId": plan_id,
        "state": state.value,
        "active": engine.controller.is_active(plan_id),
    }


@router.get("/plans/{plan_id}/events")
async def stream_events(
    plan_id: str,
    replay: bool = False,
    until_settled: bool = False,
    engine: Engine = Depends(get_engine),
) -> StreamingResponse:
    """
    Server-sent progress events of one plan (``data: {json}\\n\\n``).

    Args:
        replay: Send the retained history first
        until_settled: Close the stream after plan_paused/completed/failed
    """
    engine.service.get_plan(plan_id)
    subscription = engine.bus.subscribe(plan_id, replay=replay)

    async def event_source() -> AsyncIterator[str]:
        with subscription:
            async for event in subscription:
                yield f"data: {json.dumps(event.to_dict())}\n\n"
                if until_settled and event.event_type.settles_plan:
                    break

    return StreamingResponse(
        event_source(), media_type="text/event-stream", headers=SSE_HEADERS
    )


@router.post("/plans/{plan_id}/phases", status_code=201)
async def add_phase(
    plan_id: str, draft: PhaseDraft, engine: Engine = Depends(get_engine)
) -> PhaseDetail:
    """Append a phase (with optional tasks) to a plan."""
    return engine.service.add_phase(plan_id, draft)
