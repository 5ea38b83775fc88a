"""
Data models for text-generation backends.
"""

from enum import Enum

from pydantic import BaseModel, Field


class ChatRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ChatTurn(BaseModel):
    """One prior message of a conversation."""

    role: ChatRole = Field(..., description="Who said it")
    content: str = Field(..., description="Message text")


class GenerationRequest(BaseModel):
    """
    Input to a text-generation backend.

    Backends that can't take structured history (CLI tools) render it into
    the prompt text with ``render_prompt()``.
    """

    prompt: str = Field(..., description="The new user message")
    history: list[ChatTurn] = Field(default_factory=list, description="Prior turns, oldest first")
    system_prompt: str | None = Field(None, description="System instructions")
    model: str | None = Field(None, description="Model override (e.g., 'sonnet')")
    max_tokens: int = Field(4096, ge=1, description="Output token limit (API backends)")

    def render_prompt(self) -> str:
        """Flatten history and prompt into a single text prompt."""
        if not self.history:
            return self.prompt
        lines = []
        for turn in self.history:
            speaker = "User" if turn.role == ChatRole.USER else "Assistant"
            lines.append(f"{speaker}: {turn.content}")
        conversation = "\n\n".join(lines)
        return f"Previous conversation:\n{conversation}\n\n{self.prompt}"
