"""
Foreground plan runs.

The CLI process owns the scheduling loop while a command follows it:
progress events are rendered as they arrive, the first Ctrl-C requests a
pause (in-flight tasks drain) and a second one forces exit.
"""

import asyncio
import logging

from rich.console import Console

from planloom.core.engine import Engine
from planloom.core.errors import PlanloomError
from planloom.core.events import Subscription
from planloom.core.execution import InterruptHandler
from planloom.core.plans.models import Plan
from planloom.cli.render import render_event

logger = logging.getLogger(__name__)


async def _render(console: Console, subscription: Subscription) -> None:
    async for event in subscription:
        render_event(console, event)


async def follow_plan(
    engine: Engine, plan_id: str, console: Console, subscription: Subscription
) -> tuple[Plan, bool]:
    """
    Render progress until the plan's scheduling loop settles.

    Args:
        engine: Engine whose controller is driving the plan
        plan_id: Plan being run
        console: Where to render events
        subscription: Bus subscription opened before the loop was launched

    Returns:
        The plan as persisted afterwards, and whether the run was interrupted
    """
    loop = asyncio.get_running_loop()
    controller = engine.controller
    pending: set[asyncio.Task] = set()

    async def request_pause() -> None:
        try:
            await controller.pause(plan_id)
        except PlanloomError as e:
            logger.debug("Pause after interrupt not applied: %s", e)

    def schedule_pause() -> None:
        def start() -> None:
            task = loop.create_task(request_pause())
            pending.add(task)
            task.add_done_callback(pending.discard)

        loop.call_soon_threadsafe(start)

    renderer = asyncio.create_task(_render(console, subscription))
    try:
        with InterruptHandler(schedule_pause) as handler:
            plan = await controller.wait(plan_id)
    finally:
        subscription.close()
        await renderer
    return plan, handler.interrupted
