"""
Refinement API routes.

- POST /api/plans/{id}/refine - stream a refinement turn (SSE events:
  status, chunk, proposals, applied, error, done)
- GET /api/plans/{id}/refine - session state
- PUT /api/plans/{id}/refine/proposals/{pid} - accept/reject a proposal
- POST /api/plans/{id}/refine/apply - apply accepted proposals
- DELETE /api/plans/{id}/refine - discard the session
"""

from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from planloom.core.api.deps import get_engine
from planloom.core.engine import Engine
from planloom.core.harness import ChatTurn
from planloom.core.refine import ApplyReport, ProposalStatus

router = APIRouter()

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


class RefineRequest(BaseModel):
    """Request body for POST /api/plans/{id}/refine."""

    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(min_length=1)
    conversation_history: list[ChatTurn] | None = Field(
        default=None, alias="conversationHistory"
    )
    auto_apply: bool | None = Field(default=None, alias="autoApply")


class ProposalStatusUpdate(BaseModel):
    """Request body for PUT /api/plans/{id}/refine/proposals/{pid}."""

    status: ProposalStatus


class ApplyRequest(BaseModel):
    """Request body for POST /api/plans/{id}/refine/apply."""

    model_config = ConfigDict(populate_by_name=True)

    proposal_ids: list[int] | None = Field(default=None, alias="proposalIds")


@router.post("/plans/{plan_id}/refine")
async def refine_plan(
    plan_id: str, body: RefineRequest, engine: Engine = Depends(get_engine)
) -> StreamingResponse:
    """
    Stream one refinement turn.

    A second request while a turn is streaming is rejected with 409.
    """
    session = engine.session(plan_id)
    auto_apply = body.auto_apply
    if auto_apply is None:
        auto_apply = engine.config.refinement.auto_apply
    events = session.stream(
        body.message, history=body.conversation_history, auto_apply=auto_apply
    )

    async def event_source() -> AsyncIterator[str]:
        try:
            async for event in events:
                yield event.to_sse()
        finally:
            await events.aclose()

    return StreamingResponse(
        event_source(), media_type="text/event-stream", headers=SSE_HEADERS
    )


@router.get("/plans/{plan_id}/refine")
async def get_session(plan_id: str, engine: Engine = Depends(get_engine)) -> dict[str, Any]:
    return engine.session(plan_id).to_dict()


@router.put("/plans/{plan_id}/refine/proposals/{proposal_id}")
async def set_proposal_status(
    plan_id: str,
    proposal_id: int,
    update: ProposalStatusUpdate,
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    """Accept or reject a proposal. Nothing is written to the plan."""
    proposal = engine.session(plan_id).set_status(proposal_id, update.status)
    return proposal.to_wire()


@router.post("/plans/{plan_id}/refine/apply")
async def apply_proposals(
    plan_id: str,
    body: ApplyRequest | None = None,
    engine: Engine = Depends(get_engine),
) -> ApplyReport:
    """Apply accepted proposals (or the listed ones) as one batch."""
    session = engine.session(plan_id)
    return session.apply(body.proposal_ids if body is not None else None)


@router.delete("/plans/{plan_id}/refine")
async def clear_session(plan_id: str, engine: Engine = Depends(get_engine)) -> dict[str, bool]:
    engine.service.get_plan(plan_id)
    engine.drop_session(plan_id)
    return {"success": True}
