"""
Tests for the text-generation backend registry and auto-detection.
"""

import pytest

from planloom.core.errors import HarnessUnavailable
from planloom.core.harness import (
    TextGenerator,
    detect_generator,
    get_generator,
    list_generators,
    register_generator,
)
from planloom.core.harness import backend as harness_backend
from planloom.core.harness.fake import FakeGenerator
from planloom.core.harness.models import ChatRole, ChatTurn, GenerationRequest


@pytest.fixture
def no_backends(monkeypatch):
    """Make the real backends unavailable."""
    monkeypatch.setattr("planloom.core.harness.claude_cli.shutil.which", lambda name: None)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)


class TestRegistry:
    """Test backend registration and retrieval."""

    def test_builtin_backends_registered(self):
        """Importing the package registers the built-in backends."""
        names = list_generators()
        assert {"fake", "claude-cli", "anthropic"} <= set(names)

    def test_register_generator(self, monkeypatch):
        """A decorated class becomes resolvable by name."""
        monkeypatch.setattr(harness_backend, "_generators", dict(harness_backend._generators))

        @register_generator("echo")
        class EchoGenerator:
            @property
            def name(self) -> str:
                return "echo"

            def is_available(self) -> bool:
                return True

            async def stream(self, request):
                yield request.prompt

        generator = get_generator("echo")
        assert isinstance(generator, EchoGenerator)
        assert isinstance(generator, TextGenerator)

    def test_unknown_name(self):
        with pytest.raises(HarnessUnavailable, match="not registered"):
            get_generator("nope")

    def test_kwargs_passed_to_constructor(self):
        generator = get_generator("fake", model="haiku")
        assert generator.model == "haiku"


class TestDetection:
    """Test auto-detection order."""

    def test_env_choice_wins(self, monkeypatch):
        monkeypatch.setenv("PLANLOOM_HARNESS", "fake")
        assert detect_generator() == "fake"

    def test_fake_never_auto_detected(self, no_backends):
        assert detect_generator() is None

    def test_priority_list(self, no_backends):
        assert detect_generator(["fake"]) == "fake"

    def test_api_key_enables_anthropic(self, no_backends, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        assert detect_generator() == "anthropic"

    def test_cli_preferred(self, monkeypatch):
        monkeypatch.setattr(
            "planloom.core.harness.claude_cli.shutil.which", lambda name: "/usr/bin/claude"
        )
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        assert detect_generator() == "claude-cli"

    def test_auto_without_backend(self, no_backends):
        """Auto-detection with nothing available raises HarnessUnavailable."""
        with pytest.raises(HarnessUnavailable, match="No text-generation backend"):
            get_generator("auto")


class TestGenerationRequest:
    def test_render_without_history(self):
        assert GenerationRequest(prompt="hi").render_prompt() == "hi"

    def test_render_with_history(self):
        request = GenerationRequest(
            prompt="and now?",
            history=[
                ChatTurn(role=ChatRole.USER, content="add tests"),
                ChatTurn(role=ChatRole.ASSISTANT, content="done"),
            ],
        )
        rendered = request.render_prompt()
        assert rendered.startswith("Previous conversation:\nUser: add tests\n\nAssistant: done")
        assert rendered.endswith("and now?")


class TestFakeGenerator:
    """Test the scripted backend."""

    @pytest.mark.asyncio
    async def test_streams_queued_reply(self):
        generator = FakeGenerator(["one two three"])
        chunks = [c async for c in generator.stream(GenerationRequest(prompt="x"))]
        assert chunks == ["one ", "two ", "three"]
        assert generator.requests[0].prompt == "x"

    @pytest.mark.asyncio
    async def test_canned_refinement_reply(self):
        generator = FakeGenerator()
        request = GenerationRequest(prompt="Use an <UPDATES> block")
        reply = "".join([c async for c in generator.stream(request)])
        assert "<UPDATES>" in reply
        assert "update_phase" in reply

    @pytest.mark.asyncio
    async def test_error_after_first_chunk(self):
        generator = FakeGenerator(["a b"], error=RuntimeError("down"))
        chunks = []
        with pytest.raises(RuntimeError, match="down"):
            async for chunk in generator.stream(GenerationRequest(prompt="x")):
                chunks.append(chunk)
        assert chunks == ["a "]
