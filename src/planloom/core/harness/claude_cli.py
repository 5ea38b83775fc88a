"""
Claude CLI text-generation backend.

Shells out to the `claude` CLI with ``--output-format stream-json`` and
streams text as events arrive on stdout, using an asyncio subprocess so the
event loop (and every other plan's scheduling loop) keeps running.
"""

import asyncio
import json
import logging
import os
import shutil
from collections.abc import AsyncIterator
from typing import Any

from .backend import register_generator
from .models import GenerationRequest

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024


def extract_text(event: dict[str, Any]) -> list[str]:
    """
    Extract text chunks from one stream-json event.

    Handles assistant/message events (content blocks) and
    content_block_delta events (text deltas). Other events carry no text.
    """
    event_type = event.get("type", "")
    chunks: list[str] = []

    if event_type in ("assistant", "message"):
        message = event.get("message") or {}
        for block in message.get("content") or []:
            if isinstance(block, dict) and block.get("type") == "text":
                text = block.get("text", "")
                if text:
                    chunks.append(text)

    elif event_type == "content_block_delta":
        delta = event.get("delta", {})
        if delta.get("type") == "text_delta":
            text = delta.get("text", "")
            if text:
                chunks.append(text)

    return chunks


async def read_lines(stream: Any, chunk_size: int = READ_CHUNK_SIZE) -> AsyncIterator[bytes]:
    """
    Split a byte stream into lines of any length.

    ``StreamReader.readline`` refuses lines over its 64 KiB limit, and
    stream-json puts a whole assistant message on one line.
    """
    pending = bytearray()
    while True:
        data = await stream.read(chunk_size)
        if not data:
            break
        pending.extend(data)
        if b"\n" not in data:
            continue
        *lines, rest = pending.split(b"\n")
        pending = bytearray(rest)
        for line in lines:
            yield bytes(line)
    if pending:
        yield bytes(pending)


@register_generator("claude-cli")
class ClaudeCLIGenerator:
    """
    `claude` CLI backend (shell-out).

    Features:
    - Streaming via --output-format stream-json
    - System prompt via --append-system-prompt
    - Model selection via --model (or PLANLOOM_MODEL)
    - Extra flags from CLAUDE_FLAGS
    """

    def __init__(self, model: str | None = None, binary: str = "claude") -> None:
        self.model = model
        self.binary = binary

    @property
    def name(self) -> str:
        return "claude-cli"

    def is_available(self) -> bool:
        """True if the claude binary is on PATH."""
        return shutil.which(self.binary) is not None

    def build_command(self, request: GenerationRequest) -> list[str]:
        flags = ["-p", "--verbose", "--output-format", "stream-json"]

        if request.system_prompt:
            flags.extend(["--append-system-prompt", request.system_prompt])

        model = request.model or self.model or os.environ.get("PLANLOOM_MODEL")
        if model:
            flags.extend(["--model", model])

        extra_flags = os.environ.get("CLAUDE_FLAGS", "").strip()
        if extra_flags:
            flags.extend(extra_flags.split())

        return [self.binary, *flags]

    async def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        command = self.build_command(request)
        logger.debug("Running %s", " ".join(command[:4]))

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise RuntimeError(f"Failed to invoke claude: {e}") from e

        assert process.stdin is not None
        assert process.stdout is not None
        assert process.stderr is not None
        # stderr is drained alongside stdout so a chatty CLI can't block on a full pipe
        stderr_task = asyncio.ensure_future(process.stderr.read())

        finished = False
        try:
            try:
                process.stdin.write(request.render_prompt().encode())
                await process.stdin.drain()
                process.stdin.close()
                async for raw_line in read_lines(process.stdout):
                    line = raw_line.decode(errors="replace").strip()
                    if not line:
                        continue
                    try:
                        event = json.loads(line)
                    except json.JSONDecodeError:
                        # Skip malformed JSON lines
                        continue
                    if not isinstance(event, dict):
                        continue
                    for chunk in extract_text(event):
                        yield chunk
            except (OSError, ValueError) as e:
                raise RuntimeError(f"Reading claude output failed: {e}") from e
            finished = True
        finally:
            # Consumer stopped early, the pipe broke, or we were cancelled
            if not finished:
                stderr_task.cancel()
                if process.returncode is None:
                    try:
                        process.terminate()
                    except ProcessLookupError:
                        pass

        returncode = await process.wait()
        stderr = await stderr_task
        if returncode != 0:
            raise RuntimeError(
                f"Claude command failed (exit {returncode}): {stderr.decode(errors='replace')}"
            )
