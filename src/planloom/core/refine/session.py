"""
RefinementSession: one conversation thread against one plan.

A turn streams the instruction through a text-generation backend. Prose
chunks are surfaced as they arrive (with the ``<UPDATES>`` block kept out
of them); when the stream ends the block is parsed into pending proposals.
Proposal review (accept/reject) is local state until ``apply``.

Only one turn may stream at a time; a second ``stream``/``send`` is
rejected with SessionBusy rather than queued.
"""

from __future__ import annotations

import asyncio
import json
import logging
import weakref
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from planloom.core.errors import (
    NotFoundError,
    PlanloomError,
    RefinementFailure,
    SessionBusy,
)
from planloom.core.harness import ChatRole, ChatTurn, GenerationRequest, TextGenerator
from planloom.core.plans.service import PlanService
from planloom.core.refine.applier import ProposalApplier
from planloom.core.refine.models import ApplyReport, Proposal, ProposalStatus, RefineTurn
from planloom.core.refine.parser import ReplyBuffer, build_proposals, parse_updates
from planloom.core.refine.prompts import REFINE_SYSTEM_PROMPT, build_refine_prompt
from planloom.core.refine.targets import PlanLayout

logger = logging.getLogger(__name__)


class RefineEventType(str, Enum):
    STATUS = "status"
    CHUNK = "chunk"
    PROPOSALS = "proposals"
    APPLIED = "applied"
    ERROR = "error"
    DONE = "done"


@dataclass(frozen=True)
class RefineEvent:
    """One event of a refinement stream."""

    type: RefineEventType
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, **self.data}

    def to_sse(self) -> str:
        return f"data: {json.dumps(self.to_dict())}\n\n"


class TurnStream:
    """Event stream of one refinement turn; holds the session while open."""

    def __init__(
        self, session: RefinementSession, events: AsyncGenerator[RefineEvent, None]
    ) -> None:
        self._session = session
        self._events = events
        self._open = True

    def __aiter__(self) -> TurnStream:
        return self

    async def __anext__(self) -> RefineEvent:
        if not self._open:
            raise StopAsyncIteration
        try:
            return await self._events.__anext__()
        except BaseException:
            self._release()
            raise

    async def aclose(self) -> None:
        try:
            await self._events.aclose()
        finally:
            self._release()

    def _release(self) -> None:
        if not self._open:
            return
        self._open = False
        active = self._session._active
        if active is not None and active() is self:
            self._session._active = None


class RefinementSession:
    """
    Conversation state for refining one plan.

    Args:
        plan_id: Plan being refined
        service: Plan service (reads the plan for each prompt)
        generator: Text-generation backend
        resolve: Zero-argument callable returning the backend on first use
        applier: Applies accepted proposals
        history_window: Prior turns included with each request
        timeout_seconds: Limit for a whole reply
        model: Model override

    Attributes:
        history: Completed turns, oldest first
        proposals: Proposals awaiting review or apply
        pending_message: Prose of the reply currently streaming
    """

    def __init__(
        self,
        plan_id: str,
        service: PlanService,
        generator: TextGenerator | None = None,
        *,
        resolve: Callable[[], TextGenerator] | None = None,
        applier: ProposalApplier | None = None,
        history_window: int = 6,
        timeout_seconds: float = 120.0,
        model: str | None = None,
    ) -> None:
        if generator is None and resolve is None:
            raise ValueError("RefinementSession needs a generator or a resolve callable")
        self.plan_id = plan_id
        self.service = service
        self.applier = applier or ProposalApplier(service.store)
        self.history_window = history_window
        self.timeout_seconds = timeout_seconds
        self.model = model
        self._generator = generator
        self._resolve = resolve

        self.history: list[ChatTurn] = []
        self.proposals: list[Proposal] = []
        self.pending_message = ""
        self.last_instruction: str | None = None
        self.last_turn: RefineTurn | None = None
        self._next_id = 0
        self._active: weakref.ref[TurnStream] | None = None

    @property
    def busy(self) -> bool:
        return self._active is not None and self._active() is not None

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def stream(
        self,
        instruction: str,
        *,
        history: list[ChatTurn] | None = None,
        auto_apply: bool = False,
    ) -> TurnStream:
        """
        Start a turn and return its event stream.

        The session is reserved immediately, so a concurrent call fails
        here rather than when iteration begins. The reservation ends when
        the stream is exhausted, raises, is closed (even before its first
        event) or is garbage collected.

        Args:
            instruction: Natural-language change request
            history: Prior turns to send instead of the session's own
            auto_apply: Apply every parsed proposal when the reply ends

        Raises:
            SessionBusy: If a turn is already streaming
        """
        if self.busy:
            raise SessionBusy(self.plan_id)
        events = TurnStream(self, self._run(instruction, history, auto_apply))
        self._active = weakref.ref(events)
        return events

    async def send(
        self,
        instruction: str,
        history: list[ChatTurn] | None = None,
        *,
        on_chunk: Callable[[str], None] | None = None,
        auto_apply: bool = False,
    ) -> RefineTurn:
        """
        Run a turn to completion.

        Args:
            instruction: Natural-language change request
            history: Prior turns to send instead of the session's own
            on_chunk: Called with each prose chunk as it arrives
            auto_apply: Apply every parsed proposal when the reply ends

        Returns:
            The completed turn

        Raises:
            SessionBusy: If a turn is already streaming
            RefinementFailure: If the backend failed or timed out
        """
        error: str | None = None
        events = self.stream(instruction, history=history, auto_apply=auto_apply)
        try:
            async for event in events:
                if event.type == RefineEventType.CHUNK and on_chunk is not None:
                    on_chunk(event.data["content"])
                elif event.type == RefineEventType.ERROR:
                    error = event.data["message"]
        finally:
            await events.aclose()
        if error is not None:
            raise RefinementFailure(error)
        assert self.last_turn is not None
        return self.last_turn

    async def _run(
        self,
        instruction: str,
        history: list[ChatTurn] | None,
        auto_apply: bool,
    ) -> AsyncIterator[RefineEvent]:
        yield RefineEvent(RefineEventType.STATUS, {"message": "Analyzing plan..."})
        try:
            detail = self.service.get_plan_detail(self.plan_id)
        except NotFoundError:
            yield RefineEvent(RefineEventType.ERROR, {"message": "Plan not found"})
            return

        turns = list(self.history if history is None else history)
        if self.history_window:
            turns = turns[-self.history_window:]
        else:
            turns = []
        request = GenerationRequest(
            prompt=build_refine_prompt(detail, instruction),
            history=turns,
            system_prompt=REFINE_SYSTEM_PROMPT,
            model=self.model,
        )

        buffer = ReplyBuffer()
        self.pending_message = ""
        try:
            async for chunk in self._chunks(request):
                if visible := buffer.feed(chunk):
                    self.pending_message += visible
                    yield RefineEvent(RefineEventType.CHUNK, {"content": visible})
            if tail := buffer.flush():
                self.pending_message += tail
                yield RefineEvent(RefineEventType.CHUNK, {"content": tail})
        except (RuntimeError, PlanloomError) as e:
            logger.warning("Refinement of plan %s failed: %s", self.plan_id, e)
            self.pending_message = ""
            yield RefineEvent(RefineEventType.ERROR, {"message": str(e) or type(e).__name__})
            return

        reply = buffer.finish()
        proposals = build_proposals(parse_updates(reply.block), start_id=self._next_id)
        self._next_id += len(proposals)
        layout = PlanLayout.from_detail(detail)
        for proposal in proposals:
            proposal.before = layout.snapshot_for(proposal)

        self.history.append(ChatTurn(role=ChatRole.USER, content=instruction))
        self.history.append(ChatTurn(role=ChatRole.ASSISTANT, content=reply.text))
        # Accepted proposals from earlier turns survive a new turn
        self.proposals = [
            p for p in self.proposals if p.status == ProposalStatus.ACCEPTED
        ] + proposals
        self.last_instruction = instruction
        self.pending_message = ""
        turn = RefineTurn(instruction=instruction, text=reply.text, proposals=proposals)
        self.last_turn = turn
        logger.info(
            "Refinement of plan %s produced %d proposal(s)", self.plan_id, len(proposals)
        )

        if auto_apply and proposals:
            yield RefineEvent(RefineEventType.STATUS, {"message": "Applying changes..."})
            for proposal in proposals:
                proposal.status = ProposalStatus.ACCEPTED
            try:
                report = self._apply_selected(proposals)
            except PlanloomError as e:
                logger.warning("Auto-apply for plan %s failed: %s", self.plan_id, e)
                yield RefineEvent(RefineEventType.ERROR, {"message": str(e)})
                return
            turn.report = report
            yield RefineEvent(
                RefineEventType.APPLIED,
                {
                    "count": report.applied,
                    "total": report.total,
                    "results": [r.model_dump(mode="json") for r in report.results],
                },
            )
        elif proposals:
            yield RefineEvent(
                RefineEventType.PROPOSALS,
                {"changes": [p.to_wire() for p in proposals]},
            )

        yield RefineEvent(RefineEventType.DONE, {"text": reply.text})

    async def _chunks(self, request: GenerationRequest) -> AsyncIterator[str]:
        """Backend chunks, bounded by ``timeout_seconds`` for the whole reply."""
        generator = self._get_generator()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_seconds
        iterator = generator.stream(request).__aiter__()
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise RefinementFailure(
                        f"No complete reply within {self.timeout_seconds:g} seconds"
                    )
                try:
                    chunk = await asyncio.wait_for(iterator.__anext__(), timeout=remaining)
                except StopAsyncIteration:
                    return
                except asyncio.TimeoutError:
                    raise RefinementFailure(
                        f"No complete reply within {self.timeout_seconds:g} seconds"
                    ) from None
                yield chunk
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    def _get_generator(self) -> TextGenerator:
        if self._generator is None:
            assert self._resolve is not None
            self._generator = self._resolve()
        return self._generator

    # ------------------------------------------------------------------
    # Review and apply
    # ------------------------------------------------------------------

    def get_proposal(self, proposal_id: int) -> Proposal:
        for proposal in self.proposals:
            if proposal.id == proposal_id:
                return proposal
        raise NotFoundError("proposal", str(proposal_id))

    def set_status(self, proposal_id: int, status: ProposalStatus) -> Proposal:
        """
        Accept, reject or reset one proposal. Local state only.

        Raises:
            NotFoundError: If no pending proposal has that id
        """
        proposal = self.get_proposal(proposal_id)
        proposal.status = status
        return proposal

    def accepted(self) -> list[Proposal]:
        return [p for p in self.proposals if p.status == ProposalStatus.ACCEPTED]

    def apply(self, proposal_ids: list[int] | None = None) -> ApplyReport:
        """
        Apply accepted proposals (or the given ones, accepting them first).

        Applied proposals, and those that failed, leave the session; rejected
        and undecided ones stay.

        Raises:
            SessionBusy: If a turn is streaming
            NotFoundError: If an id doesn't name a proposal
            StorageFailure: If the store fails (nothing is applied)
        """
        if self.busy:
            raise SessionBusy(self.plan_id)
        if proposal_ids is not None:
            for proposal_id in proposal_ids:
                self.set_status(proposal_id, ProposalStatus.ACCEPTED)
        return self._apply_selected(self.accepted())

    def _apply_selected(self, selected: list[Proposal]) -> ApplyReport:
        report = self.applier.apply(
            self.plan_id, selected, prompt=self.last_instruction, only_accepted=True
        )
        done = {r.proposal_id for r in report.results}
        self.proposals = [p for p in self.proposals if p.id not in done]
        return report

    def clear(self) -> None:
        """
        Forget history and proposals.

        Raises:
            SessionBusy: If a turn is streaming
        """
        if self.busy:
            raise SessionBusy(self.plan_id)
        self.history.clear()
        self.proposals.clear()
        self.pending_message = ""
        self.last_instruction = None
        self.last_turn = None

    def to_dict(self) -> dict[str, Any]:
        """JSON view of the session for the HTTP API."""
        return {
            "planId": self.plan_id,
            "busy": self.busy,
            "history": [turn.model_dump(mode="json") for turn in self.history],
            "proposals": [p.to_wire() for p in self.proposals],
            "pendingMessage": self.pending_message,
            "lastInstruction": self.last_instruction,
        }
