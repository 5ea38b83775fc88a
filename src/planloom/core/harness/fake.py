"""
Scripted text-generation backend for tests and demos.

Replies come from a queue of scripted responses; once the queue is empty a
canned reply is chosen from the prompt (refinement prompts get a reply with
an <UPDATES> block). Replies are streamed word by word.
"""

import asyncio
import logging
import os
from collections.abc import AsyncIterator

from .backend import register_generator
from .models import GenerationRequest

logger = logging.getLogger(__name__)

CANNED_REFINEMENT = """I'll expand the first phase with more implementation detail.

<UPDATES>
[
  {"action": "update_phase", "phaseOrder": 1, "updates": {"description": "Enhanced description with specific implementation details and technical requirements."}, "label": "Expand phase 1 description"}
]
</UPDATES>"""

CANNED_TASK = "Task completed. This is a simulated response; no files were changed."


@register_generator("fake")
class FakeGenerator:
    """
    Scripted generator.

    Args:
        responses: Replies to return, in order
        delay: Seconds to sleep between chunks (defaults to
            PLANLOOM_FAKE_DELAY or 0)
        error: Raise this instead of replying (after the first chunk)

    Attributes:
        requests: Every request received, for assertions
    """

    def __init__(
        self,
        responses: list[str] | None = None,
        delay: float | None = None,
        error: Exception | None = None,
        model: str | None = None,
    ) -> None:
        self._responses = list(responses or [])
        if delay is None:
            delay = float(os.environ.get("PLANLOOM_FAKE_DELAY", "0") or 0)
        self.delay = delay
        self.error = error
        self.model = model
        self.requests: list[GenerationRequest] = []

    @property
    def name(self) -> str:
        return "fake"

    def is_available(self) -> bool:
        return True

    def queue(self, *responses: str) -> None:
        """Append scripted replies."""
        self._responses.extend(responses)

    def _next_reply(self, request: GenerationRequest) -> str:
        if self._responses:
            return self._responses.pop(0)
        if "<UPDATES>" in (request.system_prompt or "") or "<UPDATES>" in request.prompt:
            return CANNED_REFINEMENT
        return CANNED_TASK

    async def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        self.requests.append(request)
        reply = self._next_reply(request)
        logger.debug("Fake generator replying with %d chars", len(reply))

        words = reply.split(" ")
        for index, word in enumerate(words):
            yield word if index == len(words) - 1 else word + " "
            if self.error is not None:
                raise self.error
            if self.delay:
                await asyncio.sleep(self.delay)
            else:
                await asyncio.sleep(0)
