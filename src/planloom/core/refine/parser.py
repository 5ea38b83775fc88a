"""
Parsing of refinement replies.

A reply is prose with an embedded ``<UPDATES>[...]</UPDATES>`` block. While
the reply streams in, ReplyBuffer exposes only the prose: complete blocks
are removed, an unclosed block is hidden, and a trailing fragment that
could be the start of the opening tag is held back until the next chunk
decides it. The block itself is parsed once, after the stream ends.

A missing or malformed block means zero proposals, never an error.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from planloom.core.refine.models import Proposal

logger = logging.getLogger(__name__)

OPEN_TAG = "<UPDATES>"
CLOSE_TAG = "</UPDATES>"

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*\n?(.*?)\n?```$", re.DOTALL)


@dataclass(frozen=True)
class ParsedReply:
    """A finished reply split into prose and structured block."""

    text: str
    raw: str
    block: str | None


def _partial_tag_length(text: str) -> int:
    """Length of the longest suffix of text that is a proper prefix of OPEN_TAG."""
    for size in range(min(len(text), len(OPEN_TAG) - 1), 0, -1):
        if OPEN_TAG.startswith(text[-size:]):
            return size
    return 0


class ReplyBuffer:
    """
    Incremental buffer for a streaming reply.

    Example:
        >>> buffer = ReplyBuffer()
        >>> buffer.feed("Renaming phase 1. <UPD")
        'Renaming phase 1. '
        >>> buffer.feed('ATES>[]</UPDATES>')
        ''
        >>> buffer.finish().block
        '[]'
    """

    def __init__(self) -> None:
        self._chunks: list[str] = []
        self._emitted = 0

    @property
    def raw(self) -> str:
        return "".join(self._chunks)

    def feed(self, chunk: str) -> str:
        """
        Add a chunk.

        Returns:
            The newly visible prose (possibly empty)
        """
        self._chunks.append(chunk)
        return self._advance(final=False)

    def flush(self) -> str:
        """Release any held-back text once the stream has ended."""
        return self._advance(final=True)

    def visible_text(self, final: bool = False) -> str:
        """Prose seen so far with every structured block removed."""
        raw = self.raw
        parts = []
        pos = 0
        while True:
            start = raw.find(OPEN_TAG, pos)
            if start == -1:
                tail = raw[pos:]
                if not final:
                    tail = tail[: len(tail) - _partial_tag_length(tail)]
                parts.append(tail)
                break
            parts.append(raw[pos:start])
            end = raw.find(CLOSE_TAG, start + len(OPEN_TAG))
            if end == -1:
                break
            pos = end + len(CLOSE_TAG)
        return "".join(parts)

    def finish(self) -> ParsedReply:
        """Split the complete reply into prose and the first structured block."""
        raw = self.raw
        block = None
        start = raw.find(OPEN_TAG)
        if start != -1:
            end = raw.find(CLOSE_TAG, start + len(OPEN_TAG))
            if end != -1:
                block = raw[start + len(OPEN_TAG):end]
            else:
                logger.warning("Reply has an unterminated %s block; ignoring it", OPEN_TAG)
        return ParsedReply(text=self.visible_text(final=True).strip(), raw=raw, block=block)

    def _advance(self, final: bool) -> str:
        visible = self.visible_text(final=final)
        delta = visible[self._emitted:]
        self._emitted = len(visible)
        return delta


def parse_updates(block: str | None) -> list[dict[str, Any]]:
    """
    Decode the contents of an ``<UPDATES>`` block.

    Accepts a JSON list, or an object with an ``updates`` list, optionally
    wrapped in a markdown code fence. Never raises.

    Returns:
        The update objects (non-object entries dropped)
    """
    if block is None:
        return []

    text = block.strip()
    if match := _FENCE_RE.match(text):
        text = match.group(1).strip()
    if not text:
        return []

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning("Malformed %s block ignored: %s", OPEN_TAG, e)
        return []

    if isinstance(data, dict):
        data = data.get("updates", [])
    if not isinstance(data, list):
        logger.warning("%s block is not a list; ignoring it", OPEN_TAG)
        return []
    return [item for item in data if isinstance(item, dict)]


def build_proposals(updates: list[dict[str, Any]], start_id: int = 0) -> list[Proposal]:
    """
    Turn decoded updates into pending proposals with consecutive ids.

    Entries that don't describe a valid proposal are skipped with a warning.
    """
    proposals: list[Proposal] = []
    for index, update in enumerate(updates):
        payload = {k: v for k, v in update.items() if k not in ("id", "status", "before")}
        try:
            proposal = Proposal.model_validate({**payload, "id": start_id + len(proposals)})
        except ValidationError as e:
            logger.warning("Skipping update #%d: %s", index + 1, e.errors()[0].get("msg", e))
            continue
        proposals.append(proposal)
    return proposals
