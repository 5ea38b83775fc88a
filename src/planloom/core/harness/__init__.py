"""
Text-generation backends.

Importing this package registers the built-in backends (fake, claude-cli,
anthropic).
"""

from .backend import (
    TextGenerator,
    detect_generator,
    get_generator,
    list_generators,
    register_generator,
)
from .models import ChatRole, ChatTurn, GenerationRequest

# Register built-in backends
from . import anthropic, claude_cli, fake  # noqa: E402, F401, I001

__all__ = [
    "ChatRole",
    "ChatTurn",
    "GenerationRequest",
    "TextGenerator",
    "detect_generator",
    "get_generator",
    "list_generators",
    "register_generator",
]
