"""
Pytest configuration and shared fixtures.

Provides an in-memory plan store, a scripted task runner with gates for
controlling completion order, and helpers for building plans.
"""

import asyncio
import os
from typing import Any

import pytest

# Rich wraps CLI output at the terminal width; use a wide fixed width so
# long temporary paths in messages do not split the asserted text.
os.environ["COLUMNS"] = "200"

from planloom.core.config import PlanloomConfig, clear_cache
from planloom.core.engine import Engine, build_engine
from planloom.core.events import ProgressBus
from planloom.core.execution import ExecutionController, TaskRequest, TaskResult
from planloom.core.harness.fake import FakeGenerator
from planloom.core.plans.models import PlanDetail, PlanDraft, Task
from planloom.core.plans.service import PlanService
from planloom.core.store import SqlitePlanStore

# ==============================================================================
# Test doubles
# ==============================================================================


class ScriptedRunner:
    """
    TaskRunner whose results are scripted per task title.

    Tasks without a script complete immediately. ``hold(title)`` returns an
    Event the task waits on before reporting, which lets tests decide the
    completion order. ``cancel`` releases a held task, which then reports a
    failure.
    """

    def __init__(self) -> None:
        self.scripts: dict[str, list[TaskResult]] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.started: list[str] = []
        self.running: set[str] = set()
        self.max_concurrency = 0
        self.cancelled: set[str] = set()
        self._titles: dict[str, str] = {}

    @property
    def name(self) -> str:
        return "scripted"

    def script(self, title: str, *results: TaskResult) -> None:
        self.scripts.setdefault(title, []).extend(results)

    def hold(self, title: str) -> asyncio.Event:
        gate = asyncio.Event()
        self.gates[title] = gate
        return gate

    async def run(self, request: TaskRequest) -> TaskResult:
        title = request.task.title
        self._titles[request.correlation_id] = title
        self.started.append(title)
        self.running.add(title)
        self.max_concurrency = max(self.max_concurrency, len(self.running))
        try:
            gate = self.gates.get(title)
            if gate is not None:
                await gate.wait()
            else:
                await asyncio.sleep(0)
            if request.correlation_id in self.cancelled:
                return TaskResult.failed("Cancelled")
            queued = self.scripts.get(title)
            if queued:
                return queued.pop(0)
            return TaskResult.completed(f"done: {title}")
        finally:
            self.running.discard(title)

    def cancel(self, correlation_id: str) -> None:
        self.cancelled.add(correlation_id)
        title = self._titles.get(correlation_id)
        if title is not None and title in self.gates:
            self.gates[title].set()


# ==============================================================================
# Store and service fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch, tmp_path):
    """Keep user config, env overrides and the config cache out of tests."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    for name in (
        "PLANLOOM_MAX_TASK_ATTEMPTS",
        "PLANLOOM_TASK_TIMEOUT",
        "PLANLOOM_HARNESS",
        "PLANLOOM_MODEL",
        "PLANLOOM_DB_PATH",
    ):
        monkeypatch.delenv(name, raising=False)
    clear_cache()
    yield
    clear_cache()


@pytest.fixture
def store():
    """In-memory SQLite plan store."""
    plan_store = SqlitePlanStore(":memory:")
    yield plan_store
    plan_store.close()


@pytest.fixture
def service(store):
    return PlanService(store)


@pytest.fixture
def bus():
    return ProgressBus()


@pytest.fixture
def runner():
    return ScriptedRunner()


@pytest.fixture
def controller(store, runner, bus):
    return ExecutionController(store, runner, bus, max_task_attempts=3)


@pytest.fixture
def fake_generator():
    return FakeGenerator()


@pytest.fixture
def engine(store, runner, fake_generator) -> Engine:
    """Engine over the in-memory store with scripted tasks and a fake backend."""
    return build_engine(PlanloomConfig(), store=store, runner=runner, generator=fake_generator)


# ==============================================================================
# Plan builders
# ==============================================================================


@pytest.fixture
def make_plan(service):
    """
    Factory creating a plan from phase dicts (wire field names accepted).

    Usage:
        detail = make_plan({"title": "Build", "tasks": [{"title": "T1"}]}, ready=True)
    """

    def _make(*phases: dict[str, Any], title: str = "Plan", ready: bool = False) -> PlanDetail:
        detail = service.create_plan(
            PlanDraft.model_validate({"title": title, "phases": list(phases)})
        )
        if ready:
            service.mark_ready(detail.id)
            detail = service.get_plan_detail(detail.id)
        return detail

    return _make


@pytest.fixture
def find_task(service):
    """Look up a task of a plan by title."""

    def _find(plan_id: str, title: str) -> Task:
        for phase in service.get_plan_detail(plan_id).phases:
            for task in phase.tasks:
                if task.title == title:
                    return task
        raise KeyError(title)

    return _find


@pytest.fixture
def sequential_plan(make_plan) -> PlanDetail:
    """T2 depends on T1 in a sequential phase."""
    return make_plan(
        {
            "title": "Build",
            "tasks": [
                {"key": "t1", "title": "T1"},
                {"key": "t2", "title": "T2", "dependsOn": ["t1"]},
            ],
        },
        ready=True,
    )
