"""
Ctrl-C handling for foreground plan runs.

The first SIGINT/SIGTERM asks the plan to pause: ``on_first`` runs from
the signal handler and must only schedule work (``follow_plan`` hands a
pause request to the event loop). A second signal exits with status 130
while in-flight tasks are still draining.

Usage:
    with InterruptHandler(request_pause) as handler:
        plan = await controller.wait(plan_id)
    if handler.interrupted:
        ...
"""

from __future__ import annotations

import logging
import signal
import sys
from collections.abc import Callable
from types import FrameType
from typing import Any

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)
FORCED_EXIT_CODE = 130


class InterruptHandler:
    """
    Two-stage interrupt handler, installed for the duration of a ``with`` block.

    Attributes:
        interrupted: True once a first signal arrived
    """

    def __init__(self, on_first: Callable[[], None] | None = None) -> None:
        self.on_first = on_first
        self.signals_seen = 0
        self._previous: dict[int, Any] = {}

    @property
    def interrupted(self) -> bool:
        return self.signals_seen > 0

    def __enter__(self) -> InterruptHandler:
        for signum in HANDLED_SIGNALS:
            self._previous[signum] = signal.signal(signum, self._handle)
        return self

    def __exit__(self, *exc_info: object) -> None:
        while self._previous:
            signum, previous = self._previous.popitem()
            signal.signal(signum, previous)

    def _handle(self, signum: int, frame: FrameType | None) -> None:
        self.signals_seen += 1
        if self.signals_seen > 1:
            _notify("\n[Exiting without waiting for in-flight tasks]\n")
            raise SystemExit(FORCED_EXIT_CODE)

        logger.info("Received %s; pausing the plan", signal.Signals(signum).name)
        _notify("\n[Pausing once in-flight tasks finish; press Ctrl-C again to exit now]\n")
        if self.on_first is not None:
            try:
                self.on_first()
            except Exception:
                logger.exception("Pause request after interrupt failed")


def _notify(message: str) -> None:
    # Rich's console isn't safe to use from a signal handler
    sys.stderr.write(message)
    sys.stderr.flush()
