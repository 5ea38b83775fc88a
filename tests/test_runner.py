"""Tests for the generator-backed TaskRunner and its prompts."""

import asyncio

import pytest

from planloom.core.execution import (
    GeneratorTaskRunner,
    TaskOutcome,
    TaskRequest,
    TaskRunner,
    get_runner,
    list_runners,
)
from planloom.core.execution.prompts import TASK_SYSTEM_PROMPT, build_task_prompt
from planloom.core.harness.fake import FakeGenerator
from planloom.core.plans.models import Phase, Plan, Task


@pytest.fixture
def request_for():
    plan = Plan(title="Ship v2", description="Second release")
    phase = Phase(plan_id=plan.id, title="Backend", order=0)

    def _make(title="Add endpoint", **task_fields):
        task = Task(phase_id=phase.id, plan_id=plan.id, title=title, order=0, **task_fields)
        return TaskRequest(plan=plan, phase=phase, task=task, correlation_id="corr-1")

    return _make


class TestPrompt:
    def test_sections(self, request_for):
        request = request_for(description="POST /items")
        prompt = build_task_prompt(request.plan, request.phase, request.task)
        assert prompt == (
            "Plan: Ship v2\nSecond release\n\nPhase: Backend\n\nTask: Add endpoint\nPOST /items"
        )

    def test_retry_context(self, request_for):
        request = request_for(attempts=1, last_error="tests failed")
        prompt = build_task_prompt(request.plan, request.phase, request.task)
        assert prompt.startswith("Previous attempt failed. Error:\ntests failed")


class TestRegistry:
    def test_generator_runner_registered(self):
        assert "generator" in list_runners()
        runner = get_runner("generator", generator=FakeGenerator())
        assert isinstance(runner, TaskRunner)

    def test_unknown_runner(self):
        with pytest.raises(ValueError, match="not registered"):
            get_runner("nope")

    def test_needs_generator(self):
        with pytest.raises(ValueError):
            GeneratorTaskRunner()


class TestGeneratorTaskRunner:
    @pytest.mark.asyncio
    async def test_completed(self, request_for):
        generator = FakeGenerator(["Endpoint added."])
        result = await GeneratorTaskRunner(generator, model="haiku").run(request_for())

        assert result.outcome == TaskOutcome.COMPLETED
        assert result.output == "Endpoint added."
        sent = generator.requests[0]
        assert sent.system_prompt == TASK_SYSTEM_PROMPT
        assert sent.model == "haiku"
        assert "Task: Add endpoint" in sent.prompt

    @pytest.mark.asyncio
    async def test_skip_marker(self, request_for):
        generator = FakeGenerator(["Already in place.\nSKIP: endpoint exists"])
        result = await GeneratorTaskRunner(generator).run(request_for())
        assert result.outcome == TaskOutcome.SKIPPED
        assert result.output == "endpoint exists"

    @pytest.mark.asyncio
    async def test_backend_error(self, request_for):
        generator = FakeGenerator(["partial reply"], error=RuntimeError("backend down"))
        result = await GeneratorTaskRunner(generator).run(request_for())
        assert result.outcome == TaskOutcome.FAILED
        assert result.error == "backend down"
        assert result.output == "partial "

    @pytest.mark.asyncio
    async def test_cancel(self, request_for):
        generator = FakeGenerator(["a long reply"], delay=0.01)
        runner = GeneratorTaskRunner(generator)
        task = asyncio.ensure_future(runner.run(request_for()))
        while not generator.requests:
            await asyncio.sleep(0)

        runner.cancel("corr-1")
        result = await task

        assert result.outcome == TaskOutcome.FAILED
        assert result.error == "Cancelled"
        assert result.output == "a long "
        assert runner._cancelled == set()

    @pytest.mark.asyncio
    async def test_cancel_after_finish_is_dropped(self, request_for):
        runner = GeneratorTaskRunner(FakeGenerator(["done", "again"]))
        await runner.run(request_for())

        runner.cancel("corr-1")
        runner.cancel("corr-unknown")

        assert runner._cancelled == set()
        result = await runner.run(request_for())
        assert result.outcome == TaskOutcome.COMPLETED
        assert result.output == "again"

    @pytest.mark.asyncio
    async def test_resolve_on_first_use(self, request_for):
        calls = []

        def resolve():
            calls.append(1)
            return FakeGenerator(["ok"])

        runner = GeneratorTaskRunner(resolve=resolve)
        assert calls == []
        await runner.run(request_for())
        await runner.run(request_for())
        assert calls == [1]
