"""Tests for RefinementSession turns, review and apply."""

import asyncio
import json

import pytest

from planloom.core.errors import NotFoundError, RefinementFailure, SessionBusy
from planloom.core.harness import ChatRole, ChatTurn
from planloom.core.harness.fake import FakeGenerator
from planloom.core.refine import (
    ProposalStatus,
    RefineEventType,
    RefinementSession,
)


def reply(prose, *updates):
    return f"{prose}\n\n<UPDATES>\n{json.dumps(list(updates))}\n</UPDATES>"


RENAME = {"action": "update_phase", "phaseOrder": 1, "updates": {"title": "Core"}, "label": "Rename phase"}
ADD_TASK = {"action": "create_task", "phaseOrder": 1, "task": {"title": "Lint"}, "label": "Add lint"}
DROP_T2 = {"action": "delete_task", "phaseOrder": 1, "taskOrder": 2, "label": "Drop T2"}


async def collect(stream):
    return [event async for event in stream]


@pytest.fixture
def session(engine, sequential_plan):
    return engine.session(sequential_plan.id)


class TestStream:
    @pytest.mark.asyncio
    async def test_turn_events(self, session, fake_generator, sequential_plan):
        fake_generator.queue(reply("Renaming the phase.", RENAME))

        events = await collect(session.stream("rename phase one"))

        types = [e.type for e in events]
        assert types[0] == RefineEventType.STATUS
        assert types[-2:] == [RefineEventType.PROPOSALS, RefineEventType.DONE]
        prose = "".join(e.data["content"] for e in events if e.type == RefineEventType.CHUNK)
        assert "<UPDATES>" not in prose
        assert prose.strip() == "Renaming the phase."

        (change,) = events[-2].data["changes"]
        assert change["label"] == "Rename phase"
        assert change["status"] == "pending"
        assert change["before"] == {"title": "Build", "description": ""}
        assert events[-1].data == {"text": "Renaming the phase."}
        assert not session.busy

    @pytest.mark.asyncio
    async def test_prompt_carries_plan_and_history(self, session, fake_generator):
        fake_generator.queue("First answer.", "Second answer.")
        await session.send("first")
        await session.send("second")

        first, second = fake_generator.requests
        assert '"title": "Build"' in first.prompt
        assert 'User request: "first"' in first.prompt
        assert first.history == []
        assert [t.role for t in second.history] == [ChatRole.USER, ChatRole.ASSISTANT]
        assert second.history[1].content == "First answer."

    @pytest.mark.asyncio
    async def test_explicit_history(self, session, fake_generator):
        fake_generator.queue("ok")
        history = [ChatTurn(role=ChatRole.USER, content="earlier")]
        await session.send("now", history)
        assert fake_generator.requests[0].history == history

    @pytest.mark.asyncio
    async def test_history_window(self, engine, sequential_plan, fake_generator):
        session = RefinementSession(
            sequential_plan.id, engine.service, fake_generator, history_window=2
        )
        fake_generator.queue("a", "b", "c")
        for instruction in ("one", "two", "three"):
            await session.send(instruction)
        assert len(session.history) == 6
        assert [t.content for t in fake_generator.requests[2].history] == ["two", "b"]

    @pytest.mark.asyncio
    async def test_malformed_block_means_no_proposals(self, session, fake_generator):
        fake_generator.queue("Here you go.\n<UPDATES>[{not json</UPDATES>")
        events = await collect(session.stream("x"))
        assert RefineEventType.PROPOSALS not in [e.type for e in events]
        assert events[-1].type == RefineEventType.DONE
        assert session.proposals == []

    @pytest.mark.asyncio
    async def test_second_turn_rejected_while_streaming(self, session, fake_generator):
        fake_generator.queue("one two three")
        stream = session.stream("first")
        assert session.busy
        with pytest.raises(SessionBusy):
            session.stream("second")
        with pytest.raises(SessionBusy):
            session.apply()
        await collect(stream)
        assert not session.busy

    @pytest.mark.asyncio
    async def test_closing_unstarted_stream_releases_session(self, session, fake_generator):
        stream = session.stream("abandoned")
        await stream.aclose()

        assert not session.busy
        fake_generator.queue("Second answer.")
        turn = await session.send("second turn")
        assert turn.text == "Second answer."
        assert [t.content for t in session.history] == ["second turn", "Second answer."]

    @pytest.mark.asyncio
    async def test_dropped_stream_releases_session(self, session, fake_generator):
        session.stream("abandoned")

        assert not session.busy
        fake_generator.queue("Fine.")
        assert (await session.send("again")).text == "Fine."

    @pytest.mark.asyncio
    async def test_closing_mid_stream_releases_session(self, session, fake_generator):
        fake_generator.queue("one two three four")
        stream = session.stream("first")
        first = await stream.__anext__()
        assert first.type == RefineEventType.STATUS

        await stream.aclose()

        assert not session.busy
        assert session.history == []
        assert [e async for e in stream] == []
        session.clear()

    @pytest.mark.asyncio
    async def test_old_stream_cannot_release_new_turn(self, session, fake_generator):
        fake_generator.queue("one two", "three four")
        old = session.stream("first")
        await collect(old)
        current = session.stream("second")

        await old.aclose()

        assert session.busy
        await collect(current)
        assert not session.busy

    @pytest.mark.asyncio
    async def test_backend_error(self, engine, sequential_plan):
        generator = FakeGenerator(["a b c"], error=RuntimeError("backend down"))
        session = RefinementSession(sequential_plan.id, engine.service, generator)

        events = await collect(session.stream("x"))
        assert events[-1].type == RefineEventType.ERROR
        assert events[-1].data == {"message": "backend down"}
        assert session.history == []
        assert session.pending_message == ""
        assert not session.busy

    @pytest.mark.asyncio
    async def test_timeout(self, engine, sequential_plan):
        generator = FakeGenerator(["a b c d e"], delay=0.2)
        session = RefinementSession(
            sequential_plan.id, engine.service, generator, timeout_seconds=0.05
        )
        with pytest.raises(RefinementFailure, match="No complete reply within 0.05 seconds"):
            await session.send("x")
        assert not session.busy

    @pytest.mark.asyncio
    async def test_missing_plan(self, engine, fake_generator):
        session = RefinementSession("plan-missing", engine.service, fake_generator)
        events = await collect(session.stream("x"))
        assert events[-1].data == {"message": "Plan not found"}
        assert fake_generator.requests == []

    @pytest.mark.asyncio
    async def test_send_reports_chunks(self, session, fake_generator):
        fake_generator.queue(reply("Renaming.", RENAME))
        chunks = []
        turn = await session.send("x", on_chunk=chunks.append)
        assert "".join(chunks).strip() == "Renaming."
        assert turn.text == "Renaming."
        assert [p.label for p in turn.proposals] == ["Rename phase"]


class TestAutoApply:
    @pytest.mark.asyncio
    async def test_applies_every_proposal(self, session, service, fake_generator, sequential_plan):
        fake_generator.queue(reply("Renaming and adding.", RENAME, ADD_TASK))

        events = await collect(session.stream("x", auto_apply=True))

        applied = next(e for e in events if e.type == RefineEventType.APPLIED)
        assert applied.data["count"] == 2
        assert applied.data["total"] == 2
        detail = service.get_plan_detail(sequential_plan.id)
        assert detail.phases[0].title == "Core"
        assert [t.title for t in detail.phases[0].tasks] == ["T1", "T2", "Lint"]
        assert session.proposals == []
        assert RefineEventType.PROPOSALS not in [e.type for e in events]

    @pytest.mark.asyncio
    async def test_no_proposals_no_apply(self, session, fake_generator):
        fake_generator.queue("Nothing to change.")
        events = await collect(session.stream("x", auto_apply=True))
        assert [e.type for e in events] == [
            RefineEventType.STATUS,
            *[RefineEventType.CHUNK] * (len(events) - 2),
            RefineEventType.DONE,
        ]


class TestReview:
    @pytest.mark.asyncio
    async def test_accept_two_reject_one(self, session, service, fake_generator, sequential_plan):
        fake_generator.queue(reply("Three changes.", RENAME, ADD_TASK, DROP_T2))
        turn = await session.send("x")
        rename, add, drop = turn.proposals

        session.set_status(rename.id, ProposalStatus.ACCEPTED)
        session.set_status(add.id, ProposalStatus.ACCEPTED)
        session.set_status(drop.id, ProposalStatus.REJECTED)
        report = session.apply()

        assert report.applied == 2
        detail = service.get_plan_detail(sequential_plan.id)
        assert detail.phases[0].title == "Core"
        assert [t.title for t in detail.phases[0].tasks] == ["T1", "T2", "Lint"]
        assert detail.total_tasks == 3
        assert [p.id for p in session.proposals] == [drop.id]

    @pytest.mark.asyncio
    async def test_apply_by_id(self, session, service, fake_generator, sequential_plan):
        fake_generator.queue(reply("Two changes.", RENAME, ADD_TASK))
        turn = await session.send("x")

        report = session.apply([turn.proposals[1].id])

        assert report.applied == 1
        assert service.get_plan_detail(sequential_plan.id).phases[0].title == "Build"
        assert [p.status for p in session.proposals] == [ProposalStatus.PENDING]

    @pytest.mark.asyncio
    async def test_accepted_survive_next_turn(self, session, fake_generator):
        fake_generator.queue(reply("One.", RENAME, ADD_TASK), reply("Two.", DROP_T2))
        first = await session.send("first")
        session.set_status(first.proposals[0].id, ProposalStatus.ACCEPTED)

        second = await session.send("second")

        assert second.proposals[0].id == 2
        assert [p.id for p in session.proposals] == [0, 2]

    def test_unknown_proposal(self, session):
        with pytest.raises(NotFoundError):
            session.set_status(42, ProposalStatus.ACCEPTED)

    @pytest.mark.asyncio
    async def test_clear_and_to_dict(self, session, fake_generator, sequential_plan):
        fake_generator.queue(reply("One.", RENAME))
        await session.send("rename")

        state = session.to_dict()
        assert state["planId"] == sequential_plan.id
        assert state["busy"] is False
        assert state["lastInstruction"] == "rename"
        assert [t["role"] for t in state["history"]] == ["user", "assistant"]
        assert state["proposals"][0]["action"] == "update_phase"

        session.clear()
        assert session.to_dict()["history"] == []
        assert session.proposals == []


class TestEngineSessions:
    def test_session_reused(self, engine, sequential_plan):
        assert engine.session(sequential_plan.id) is engine.session(sequential_plan.id)

    def test_session_for_missing_plan(self, engine):
        with pytest.raises(NotFoundError):
            engine.session("plan-missing")

    @pytest.mark.asyncio
    async def test_drop_busy_session(self, engine, sequential_plan, fake_generator):
        fake_generator.queue("a b")
        stream = engine.session(sequential_plan.id).stream("x")
        with pytest.raises(SessionBusy):
            engine.drop_session(sequential_plan.id)
        await collect(stream)
        engine.drop_session(sequential_plan.id)
        assert sequential_plan.id not in engine.sessions

    @pytest.mark.asyncio
    async def test_concurrent_turns(self, engine, sequential_plan, fake_generator):
        fake_generator.delay = 0.01
        fake_generator.queue("one two three")
        session = engine.session(sequential_plan.id)
        first = asyncio.ensure_future(collect(session.stream("first")))
        await asyncio.sleep(0)
        with pytest.raises(SessionBusy):
            session.stream("second")
        await first
