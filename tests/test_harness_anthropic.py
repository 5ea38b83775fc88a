"""
Tests for the Anthropic Messages API backend.
"""

import json

import httpx
import pytest

from planloom.core.harness.anthropic import API_URL, AnthropicGenerator, parse_sse_line
from planloom.core.harness.models import ChatRole, ChatTurn, GenerationRequest


def sse(*events):
    return "".join(f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events)


def text_delta(text):
    return {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}}


class TestParseSseLine:
    def test_text_delta(self):
        assert parse_sse_line(f"data: {json.dumps(text_delta('hi'))}") == "hi"

    def test_non_data_lines(self):
        assert parse_sse_line("event: ping") is None
        assert parse_sse_line("") is None
        assert parse_sse_line("data: ") is None

    def test_malformed_json(self):
        assert parse_sse_line("data: {oops") is None

    def test_other_events(self):
        assert parse_sse_line('data: {"type": "message_stop"}') is None

    def test_error_event(self):
        line = 'data: {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}'
        with pytest.raises(RuntimeError, match="Overloaded"):
            parse_sse_line(line)


class TestAnthropicGenerator:
    def test_availability_follows_api_key(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        assert AnthropicGenerator().is_available() is False
        assert AnthropicGenerator(api_key="sk-test").is_available() is True

    def test_payload(self):
        generator = AnthropicGenerator(model="claude-test", api_key="sk-test")
        payload = generator.build_payload(
            GenerationRequest(
                prompt="Now add docs",
                system_prompt="Be brief",
                history=[
                    ChatTurn(role=ChatRole.USER, content="Add tests"),
                    ChatTurn(role=ChatRole.ASSISTANT, content="Added"),
                ],
            )
        )
        assert payload["model"] == "claude-test"
        assert payload["system"] == "Be brief"
        assert payload["stream"] is True
        assert [m["role"] for m in payload["messages"]] == ["user", "assistant", "user"]
        assert payload["messages"][-1]["content"] == "Now add docs"

    @pytest.mark.asyncio
    async def test_stream(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            body = sse(
                {"type": "message_start", "message": {}},
                text_delta("Hello"),
                text_delta(" there"),
                {"type": "message_stop"},
            )
            return httpx.Response(200, text=body)

        generator = AnthropicGenerator(api_key="sk-test", transport=httpx.MockTransport(handler))
        chunks = [c async for c in generator.stream(GenerationRequest(prompt="hi"))]

        assert chunks == ["Hello", " there"]
        assert str(seen[0].url) == API_URL
        assert seen[0].headers["x-api-key"] == "sk-test"
        assert json.loads(seen[0].content)["messages"][0]["content"] == "hi"

    @pytest.mark.asyncio
    async def test_http_error(self):
        def handler(request):
            return httpx.Response(401, text='{"error": "invalid x-api-key"}')

        generator = AnthropicGenerator(api_key="sk-bad", transport=httpx.MockTransport(handler))
        with pytest.raises(RuntimeError, match="returned 401"):
            async for _ in generator.stream(GenerationRequest(prompt="hi")):
                pass

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        generator = AnthropicGenerator(api_key="sk-test", transport=httpx.MockTransport(handler))
        with pytest.raises(RuntimeError, match="request failed"):
            async for _ in generator.stream(GenerationRequest(prompt="hi")):
                pass

    @pytest.mark.asyncio
    async def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        with pytest.raises(RuntimeError, match="ANTHROPIC_API_KEY"):
            async for _ in AnthropicGenerator().stream(GenerationRequest(prompt="hi")):
                pass
