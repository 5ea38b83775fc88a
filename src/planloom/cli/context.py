"""
Engine access for CLI commands.

Each command opens the engine for the current project (configuration and
store resolved from the working directory). Commands that drive a
scheduling loop shut the engine down when they finish.
"""

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

from planloom.core.engine import Engine, build_engine

_T = TypeVar("_T")


def open_engine(project_dir: Path | None = None) -> Engine:
    """Build the engine for the project in ``project_dir`` (defaults to cwd)."""
    return build_engine(project_dir=project_dir)


def run_async(func: Callable[..., Awaitable[_T]], *args: Any) -> _T:
    """
    Run an async function from Typer's sync command context.

    Example:
        plan = run_async(engine.controller.pause, plan_id)
    """

    async def _call() -> _T:
        return await func(*args)

    return asyncio.run(_call())
