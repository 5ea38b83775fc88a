"""
Anthropic Messages API backend over httpx.

Streams the reply with server-sent events and yields the text deltas.
Requires ANTHROPIC_API_KEY.
"""

import json
import logging
import os
from collections.abc import AsyncIterator
from typing import Any

import httpx

from .backend import register_generator
from .models import ChatRole, GenerationRequest

logger = logging.getLogger(__name__)

API_URL = "https://api.anthropic.com/v1/messages"
API_VERSION = "2023-06-01"
DEFAULT_MODEL = "claude-sonnet-4-5"


@register_generator("anthropic")
class AnthropicGenerator:
    """
    Messages API backend.

    Args:
        model: Model id (defaults to PLANLOOM_MODEL, then DEFAULT_MODEL)
        api_key: API key (defaults to ANTHROPIC_API_KEY)
        timeout: Request timeout in seconds
        transport: Custom httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model = model or os.environ.get("PLANLOOM_MODEL") or DEFAULT_MODEL
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        self.timeout = timeout
        self._transport = transport

    @property
    def name(self) -> str:
        return "anthropic"

    def is_available(self) -> bool:
        return bool(self.api_key)

    def build_payload(self, request: GenerationRequest) -> dict[str, Any]:
        messages = [
            {"role": "user" if turn.role == ChatRole.USER else "assistant", "content": turn.content}
            for turn in request.history
        ]
        messages.append({"role": "user", "content": request.prompt})
        payload: dict[str, Any] = {
            "model": request.model or self.model,
            "max_tokens": request.max_tokens,
            "messages": messages,
            "stream": True,
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt
        return payload

    async def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        if not self.api_key:
            raise RuntimeError("ANTHROPIC_API_KEY is not set")

        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": API_VERSION,
            "content-type": "application/json",
        }
        payload = self.build_payload(request)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                async with client.stream("POST", API_URL, headers=headers, json=payload) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode(errors="replace")
                        raise RuntimeError(
                            f"Anthropic API returned {response.status_code}: {body[:500]}"
                        )
                    async for line in response.aiter_lines():
                        text = parse_sse_line(line)
                        if text:
                            yield text
        except httpx.TimeoutException as e:
            raise RuntimeError(f"Anthropic API request timed out: {e}") from e
        except httpx.RequestError as e:
            raise RuntimeError(f"Anthropic API request failed: {e}") from e


def parse_sse_line(line: str) -> str | None:
    """
    Extract text from one SSE line of a Messages stream.

    Returns:
        Text delta, or None for non-text lines

    Raises:
        RuntimeError: If the line is an ``error`` event
    """
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if not data:
        return None
    try:
        event = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed SSE data: %s", data[:100])
        return None

    event_type = event.get("type")
    if event_type == "content_block_delta":
        delta = event.get("delta") or {}
        if delta.get("type") == "text_delta":
            return delta.get("text") or None
    elif event_type == "error":
        error = event.get("error") or {}
        raise RuntimeError(f"Anthropic API error: {error.get('message', 'unknown error')}")
    return None
