"""
Engine: wiring of store, bus, controller, service and refinement sessions.

Both the HTTP API and the CLI drive plans through one Engine instance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from planloom.core.config import PlanloomConfig, load_config, resolve_store_path
from planloom.core.errors import InvalidTransition, SessionBusy
from planloom.core.events import ProgressBus
from planloom.core.execution import ExecutionController, TaskRunner, get_runner
from planloom.core.harness import TextGenerator, get_generator
from planloom.core.plans.service import PlanService
from planloom.core.refine import ProposalApplier, RefinementSession
from planloom.core.store import PlanStore, SqlitePlanStore

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    """
    Everything needed to run and refine plans.

    The text-generation backend is resolved on first use, so an engine
    can be built (and plans edited) without any backend installed.
    """

    config: PlanloomConfig
    store: PlanStore
    bus: ProgressBus
    service: PlanService
    applier: ProposalApplier
    controller: ExecutionController
    generator: TextGenerator | None = None
    sessions: dict[str, RefinementSession] = field(default_factory=dict)

    def get_generator(self) -> TextGenerator:
        """
        The configured backend, resolved once.

        Raises:
            HarnessUnavailable: If no backend can be resolved
        """
        if self.generator is None:
            harness = self.config.harness
            name = None if harness.name == "auto" else harness.name
            self.generator = get_generator(name, model=harness.model)
            logger.info("Using text-generation backend %s", self.generator.name)
        return self.generator

    def session(self, plan_id: str) -> RefinementSession:
        """
        The refinement session of a plan, created on first use.

        Raises:
            NotFoundError: If the plan doesn't exist
        """
        self.service.get_plan(plan_id)
        session = self.sessions.get(plan_id)
        if session is None:
            refinement = self.config.refinement
            session = RefinementSession(
                plan_id,
                self.service,
                resolve=self.get_generator,
                applier=self.applier,
                history_window=refinement.history_window,
                timeout_seconds=refinement.timeout_seconds,
                model=self.config.harness.model,
            )
            self.sessions[plan_id] = session
        return session

    def drop_session(self, plan_id: str) -> None:
        """
        Discard a plan's refinement session.

        Raises:
            SessionBusy: If a turn is streaming
        """
        session = self.sessions.get(plan_id)
        if session is not None and session.busy:
            raise SessionBusy(plan_id)
        self.sessions.pop(plan_id, None)

    async def delete_plan(self, plan_id: str) -> None:
        """
        Delete a plan and everything it owns.

        Raises:
            NotFoundError: If the plan doesn't exist
            InvalidTransition: If a scheduling loop is live for the plan
            SessionBusy: If a refinement turn is streaming
        """
        if self.controller.is_active(plan_id):
            raise InvalidTransition(
                f"Cannot delete plan {plan_id} while it is running; pause or cancel it first"
            )
        self.service.get_plan(plan_id)
        self.drop_session(plan_id)
        self.service.delete_plan(plan_id)
        self.bus.forget(plan_id)

    async def shutdown(self) -> None:
        """Stop scheduling loops (plans end paused) and close the store."""
        await self.controller.shutdown()
        close = getattr(self.store, "close", None)
        if close is not None:
            close()


def build_engine(
    config: PlanloomConfig | None = None,
    *,
    store: PlanStore | None = None,
    runner: TaskRunner | None = None,
    generator: TextGenerator | None = None,
    project_dir: Path | None = None,
) -> Engine:
    """
    Build an Engine from configuration.

    Args:
        config: Configuration (loaded from files/env when omitted)
        store: Plan store (SQLite at ``config.store.path`` when omitted)
        runner: Task runner (the configured one when omitted)
        generator: Text-generation backend (resolved lazily when omitted)
        project_dir: Base for relative paths (defaults to cwd)

    Returns:
        A wired Engine
    """
    if config is None:
        config = load_config(project_dir)
    if store is None:
        store = SqlitePlanStore(resolve_store_path(config, project_dir))

    def resolve_generator() -> TextGenerator:
        return engine.get_generator()

    if runner is None:
        if config.execution.runner == "generator":
            runner = get_runner(
                "generator", resolve=resolve_generator, model=config.harness.model
            )
        else:
            runner = get_runner(config.execution.runner)

    bus = ProgressBus()
    controller = ExecutionController(
        store,
        runner,
        bus,
        max_task_attempts=config.execution.max_task_attempts,
        task_timeout_minutes=config.execution.task_timeout_minutes,
    )
    engine = Engine(
        config=config,
        store=store,
        bus=bus,
        service=PlanService(store),
        applier=ProposalApplier(store),
        controller=controller,
        generator=generator,
    )
    return engine
