"""
ProgressBus: ordered fan-out of progress events.

Publishing is synchronous and never blocks: every subscriber owns an
unbounded asyncio.Queue, so a slow observer can't stall a scheduling loop
and events reach each subscriber in publish order. A bounded per-plan
history lets late subscribers replay what they missed.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from collections.abc import AsyncIterator, Callable
from typing import Any

from planloom.core.events.models import ProgressEvent, ProgressEventType

logger = logging.getLogger(__name__)

Listener = Callable[[ProgressEvent], None]


class Subscription:
    """
    A subscriber's view of the bus.

    Iterate it with ``async for`` or call ``get()``. Use as a context
    manager (or call ``close()``) to detach from the bus.
    """

    def __init__(self, bus: ProgressBus, plan_id: str | None) -> None:
        self.plan_id = plan_id
        self._bus = bus
        self._queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()
        self.closed = False

    def _deliver(self, event: ProgressEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    async def get(self) -> ProgressEvent | None:
        """Wait for the next event; None once the subscription is closed."""
        if self.closed and self._queue.empty():
            return None
        return await self._queue.get()

    def get_nowait(self) -> ProgressEvent | None:
        """Return the next queued event, or None if nothing is queued."""
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._bus._unsubscribe(self)
        self._queue.put_nowait(None)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class ProgressBus:
    """
    Fan-out channel for ExecutionController transitions.

    Example:
        >>> bus = ProgressBus()
        >>> with bus.subscribe("plan-1") as sub:
        ...     bus.publish(ProgressEventType.PLAN_STARTED, "plan-1")
        ...     sub.get_nowait().event_type
        <ProgressEventType.PLAN_STARTED: 'plan_started'>
    """

    def __init__(self, history_size: int = 500) -> None:
        self._history_size = history_size
        self._history: dict[str, deque[ProgressEvent]] = defaultdict(
            lambda: deque(maxlen=self._history_size)
        )
        self._sequence: dict[str, int] = defaultdict(int)
        self._subscriptions: list[Subscription] = []
        self._listeners: list[Listener] = []

    def publish(
        self,
        event_type: ProgressEventType,
        plan_id: str,
        *,
        phase_id: str | None = None,
        task_id: str | None = None,
        status: str | None = None,
        reason: str | None = None,
        message: str = "",
        data: dict[str, Any] | None = None,
    ) -> ProgressEvent:
        """
        Publish an event to every matching subscriber and listener.

        Returns:
            The published event (with its sequence number)
        """
        self._sequence[plan_id] += 1
        event = ProgressEvent(
            sequence=self._sequence[plan_id],
            event_type=event_type,
            plan_id=plan_id,
            phase_id=phase_id,
            task_id=task_id,
            status=status,
            reason=reason,
            message=message,
            data=data or {},
        )
        self._history[plan_id].append(event)
        logger.debug("Event %s #%d for plan %s", event_type.value, event.sequence, plan_id)

        for sub in list(self._subscriptions):
            if sub.plan_id is None or sub.plan_id == plan_id:
                sub._deliver(event)

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                # A broken observer must not break the scheduling loop
                logger.exception("Progress listener failed on %s", event_type.value)

        return event

    def subscribe(self, plan_id: str | None = None, *, replay: bool = False) -> Subscription:
        """
        Subscribe to events of one plan (or all plans when plan_id is None).

        Args:
            plan_id: Plan to follow, or None for every plan
            replay: Queue the retained history of the plan first

        Returns:
            Subscription to iterate
        """
        sub = Subscription(self, plan_id)
        if replay and plan_id is not None:
            for event in self._history.get(plan_id, ()):
                sub._deliver(event)
        self._subscriptions.append(sub)
        return sub

    def add_listener(self, listener: Listener) -> None:
        """Register a synchronous callback invoked on every event."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def history(self, plan_id: str) -> list[ProgressEvent]:
        """Retained events of a plan, oldest first."""
        return list(self._history.get(plan_id, ()))

    def forget(self, plan_id: str) -> None:
        """Drop retained history of a deleted plan."""
        self._history.pop(plan_id, None)
        self._sequence.pop(plan_id, None)

    def _unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)
