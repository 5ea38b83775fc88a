"""
Text-generation backend protocol and registry.

Backends stream text chunks for a GenerationRequest. They are registered by
name with ``@register_generator`` and resolved with ``get_generator`` (which
auto-detects when asked for "auto").
"""

import logging
import os
from collections.abc import AsyncIterator, Callable
from typing import Any, Protocol, TypeVar, runtime_checkable

from planloom.core.errors import HarnessUnavailable

from .models import GenerationRequest

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


@runtime_checkable
class TextGenerator(Protocol):
    """
    Protocol for text-generation backends.

    Implementations stream the reply as text chunks and end the iteration
    at end-of-stream. Extracting structure from the reply is the caller's
    job.
    """

    @property
    def name(self) -> str:
        """Backend name (e.g., 'claude-cli')."""
        ...

    def is_available(self) -> bool:
        """Check if the backend can be used (CLI installed, API key set, ...)."""
        ...

    def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        """
        Stream the reply to a request.

        Yields:
            Text chunks in order

        Raises:
            RuntimeError: If the backend invocation fails
        """
        ...


# Backend registry
_generators: dict[str, type[Any]] = {}

# Auto-detection order. "fake" is never auto-detected.
DEFAULT_PRIORITY = ["claude-cli", "anthropic"]


def register_generator(name: str) -> Callable[[type[_T]], type[_T]]:
    """
    Decorator to register a text-generation backend.

    Usage:
        @register_generator("claude-cli")
        class ClaudeCLIGenerator:
            ...
    """

    def decorator(generator_class: type[_T]) -> type[_T]:
        _generators[name] = generator_class
        return generator_class

    return decorator


def detect_generator(priority_list: list[str] | None = None) -> str | None:
    """
    Auto-detect which backend to use.

    Detection order:
    1. PLANLOOM_HARNESS environment variable (if set and not 'auto')
    2. Priority list (if provided)
    3. DEFAULT_PRIORITY

    Returns:
        Backend name, or None if nothing is available
    """
    candidates: list[str] = []
    env_choice = os.environ.get("PLANLOOM_HARNESS", "").lower()
    if env_choice and env_choice != "auto":
        candidates.append(env_choice)
    candidates.extend(priority_list or [])
    candidates.extend(DEFAULT_PRIORITY)

    for name in candidates:
        generator_class = _generators.get(name)
        if generator_class is None:
            continue
        try:
            if generator_class().is_available():
                return name
        except Exception:
            logger.debug("Generator %s failed availability check", name, exc_info=True)
            continue
    return None


def get_generator(name: str | None = None, **kwargs: Any) -> TextGenerator:
    """
    Get a text-generation backend by name or auto-detect.

    Args:
        name: Backend name, or None/"auto" to auto-detect
        **kwargs: Passed to the backend constructor

    Returns:
        Backend instance

    Raises:
        HarnessUnavailable: If the name is unknown or nothing is available
    """
    if name is None or name == "auto":
        detected = detect_generator()
        if detected is None:
            raise HarnessUnavailable(
                "No text-generation backend available. Install the claude CLI "
                "or set ANTHROPIC_API_KEY."
            )
        name = detected

    generator_class = _generators.get(name)
    if generator_class is None:
        raise HarnessUnavailable(
            f"Generator '{name}' not registered. "
            f"Available generators: {', '.join(sorted(_generators))}"
        )
    generator: TextGenerator = generator_class(**kwargs)
    return generator


def list_generators() -> list[str]:
    """List all registered backend names."""
    return list(_generators.keys())
