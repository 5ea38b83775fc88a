"""
.env loading for planloom.

Layers, highest first: variables already exported in the process, the
project's ``.env.local`` and ``.env``, then ``$XDG_CONFIG_HOME/planloom/.env``.
Only keys the process doesn't already have are written to ``os.environ``,
so ``PLANLOOM_HARNESS=fake planloom plan run ...`` always wins.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from pathlib import Path

from dotenv import dotenv_values

logger = logging.getLogger(__name__)


def user_env_file() -> Path:
    xdg_home = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(xdg_home) / "planloom" / ".env"


def project_env_files(project_dir: Path) -> list[Path]:
    """Project .env files, lowest precedence first."""
    return [project_dir / ".env", project_dir / ".env.local"]


def _merge_env_files(paths: Iterable[Path]) -> dict[str, str]:
    merged: dict[str, str] = {}
    for path in paths:
        path = Path(path)
        if not path.is_file():
            continue
        values = {k: v for k, v in dotenv_values(path).items() if k and v is not None}
        logger.debug("Read %d variable(s) from %s", len(values), path)
        merged.update(values)
    return merged


def load_layered_env(
    *,
    project_dir: Path | None = None,
    user_env_paths: Iterable[Path] | None = None,
    project_env_paths: Iterable[Path] | None = None,
) -> dict[str, str]:
    """
    Export variables from the user and project .env files.

    Args:
        project_dir: Base for the project .env files (defaults to cwd)
        user_env_paths: User files to read instead of the XDG default
        project_env_paths: Project files to read instead of ``.env``/``.env.local``

    Returns:
        The variables this call exported
    """
    if user_env_paths is None:
        user_env_paths = [user_env_file()]
    if project_env_paths is None:
        project_env_paths = project_env_files(project_dir or Path.cwd())

    layered = _merge_env_files([*user_env_paths, *project_env_paths])
    exported = {k: v for k, v in layered.items() if k not in os.environ}
    os.environ.update(exported)
    return exported
