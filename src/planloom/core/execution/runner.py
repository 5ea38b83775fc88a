"""
TaskRunner protocol, registry and the generator-backed runner.

A TaskRunner performs the work of one task and reports a terminal
TaskResult. The engine treats it as an opaque async operation; ``cancel``
is a cooperative signal, not a kill.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Protocol, TypeVar, runtime_checkable

from planloom.core.errors import PlanloomError
from planloom.core.execution.models import TaskRequest, TaskResult
from planloom.core.execution.prompts import SKIP_MARKER, TASK_SYSTEM_PROMPT, build_task_prompt
from planloom.core.harness import GenerationRequest, TextGenerator

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


@runtime_checkable
class TaskRunner(Protocol):
    """Protocol for task runner implementations."""

    @property
    def name(self) -> str:
        ...

    async def run(self, request: TaskRequest) -> TaskResult:
        """
        Perform one task.

        Returns:
            Terminal result. Implementations should report failures as
            ``TaskResult.failed`` rather than raise; the controller turns
            any exception into a failure anyway.
        """
        ...

    def cancel(self, correlation_id: str) -> None:
        """Ask the run with this correlation id to stop. Must not block."""
        ...


# Runner registry
_runners: dict[str, type[Any]] = {}


def register_runner(name: str) -> Callable[[type[_T]], type[_T]]:
    """
    Decorator to register a TaskRunner implementation.

    Usage:
        @register_runner("generator")
        class GeneratorTaskRunner:
            ...
    """

    def decorator(runner_class: type[_T]) -> type[_T]:
        _runners[name] = runner_class
        return runner_class

    return decorator


def get_runner(name: str, **kwargs: Any) -> TaskRunner:
    """
    Instantiate a registered runner.

    Raises:
        ValueError: If no runner is registered under ``name``
    """
    runner_class = _runners.get(name)
    if runner_class is None:
        raise ValueError(
            f"Task runner '{name}' not registered. Available runners: {', '.join(_runners)}"
        )
    runner: TaskRunner = runner_class(**kwargs)
    return runner


def list_runners() -> list[str]:
    return list(_runners.keys())


@register_runner("generator")
class GeneratorTaskRunner:
    """
    Runs a task by streaming a prompt through a text-generation backend.

    The reply becomes the task output. A reply whose last non-empty line
    starts with ``SKIP:`` reports the task as skipped. Cancellation is
    checked between chunks.

    Args:
        generator: Backend to use
        resolve: Zero-argument callable returning the backend, called on
            first use (lets an engine start without a harness installed)
        model: Model override passed with every request
    """

    def __init__(
        self,
        generator: TextGenerator | None = None,
        *,
        resolve: Callable[[], TextGenerator] | None = None,
        model: str | None = None,
    ) -> None:
        if generator is None and resolve is None:
            raise ValueError("GeneratorTaskRunner needs a generator or a resolve callable")
        self._generator = generator
        self._resolve = resolve
        self.model = model
        self._running: set[str] = set()
        self._cancelled: set[str] = set()

    @property
    def name(self) -> str:
        return "generator"

    @property
    def generator(self) -> TextGenerator:
        if self._generator is None:
            assert self._resolve is not None
            self._generator = self._resolve()
        return self._generator

    def cancel(self, correlation_id: str) -> None:
        # Ids that aren't streaming have nothing left to stop
        if correlation_id in self._running:
            self._cancelled.add(correlation_id)

    async def run(self, request: TaskRequest) -> TaskResult:
        correlation_id = request.correlation_id
        prompt = build_task_prompt(request.plan, request.phase, request.task)
        generation = GenerationRequest(
            prompt=prompt,
            system_prompt=TASK_SYSTEM_PROMPT,
            model=self.model,
        )

        chunks: list[str] = []
        self._running.add(correlation_id)
        try:
            generator = self.generator
            async for chunk in generator.stream(generation):
                chunks.append(chunk)
                if correlation_id in self._cancelled:
                    logger.info("Task %s cancelled mid-stream", request.task.id)
                    return TaskResult.failed("Cancelled", output="".join(chunks) or None)
        except (RuntimeError, PlanloomError) as e:
            return TaskResult.failed(str(e), output="".join(chunks) or None)
        finally:
            self._running.discard(correlation_id)
            self._cancelled.discard(correlation_id)

        output = "".join(chunks).strip()
        lines = [line.strip() for line in output.splitlines() if line.strip()]
        if lines and lines[-1].startswith(SKIP_MARKER):
            return TaskResult.skipped(lines[-1][len(SKIP_MARKER):].strip() or None)
        return TaskResult.completed(output or None)
