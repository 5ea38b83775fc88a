"""
Configuration loading with multi-layer merging.

Implements the configuration precedence chain:
    defaults < user config < project config < env vars
"""

import json
import logging
import os
from pathlib import Path
from typing import Any

from .models import PlanloomConfig

logger = logging.getLogger(__name__)

# Global cache to avoid reloading config multiple times per process
_config_cache: PlanloomConfig | None = None


def get_xdg_config_home() -> Path:
    """
    Get XDG config home directory.

    Returns:
        Path to config directory (defaults to ~/.config)
    """
    if xdg_home := os.environ.get("XDG_CONFIG_HOME"):
        return Path(xdg_home)
    return Path.home() / ".config"


def get_user_config_path() -> Path:
    """
    Get path to user configuration file.

    Returns:
        Path to ~/.config/planloom/config.json (or XDG equivalent)
    """
    return get_xdg_config_home() / "planloom" / "config.json"


def get_project_config_path(cwd: Path | None = None) -> Path:
    """
    Get path to project configuration file.

    Args:
        cwd: Project directory (defaults to current directory)

    Returns:
        Path to .planloom.json in the project root
    """
    if cwd is None:
        cwd = Path.cwd()
    return cwd / ".planloom.json"


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Values in `override` take precedence over values in `base`. Nested dicts
    are merged, not replaced.

    Example:
        >>> base = {"a": 1, "b": {"x": 10, "y": 20}}
        >>> override = {"b": {"y": 30, "z": 40}, "c": 3}
        >>> deep_merge(base, override)
        {'a': 1, 'b': {'x': 10, 'y': 30, 'z': 40}, 'c': 3}
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def load_json_file(path: Path) -> dict[str, Any] | None:
    """
    Load a JSON file, returning None if it doesn't exist or is invalid.

    Args:
        path: Path to JSON file

    Returns:
        Parsed JSON object, or None if the file is missing or unusable
    """
    if not path.exists():
        return None

    try:
        with path.open() as f:
            data = json.load(f)
            if isinstance(data, dict):
                return data
            logger.warning("Ignoring config at %s: top level is not an object", path)
            return None
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Failed to parse config at %s: %s", path, e)
        return None


def _set(config_dict: dict[str, Any], section: str, key: str, value: Any) -> None:
    config_dict.setdefault(section, {})
    config_dict[section][key] = value


def _positive_int(name: str, raw: str) -> int | None:
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid %s value '%s', ignoring", name, raw)
        return None
    if value < 1:
        logger.warning("%s must be >= 1, got %d, ignoring", name, value)
        return None
    return value


def apply_env_overrides(config_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Apply environment variable overrides to configuration.

    Env vars have the highest precedence and override all config files.

    Supported env vars:
        PLANLOOM_MAX_TASK_ATTEMPTS - overrides execution.max_task_attempts
        PLANLOOM_TASK_TIMEOUT - overrides execution.task_timeout_minutes
        PLANLOOM_HARNESS - overrides harness.name
        PLANLOOM_MODEL - overrides harness.model
        PLANLOOM_DB_PATH - overrides store.path

    Args:
        config_dict: Configuration dictionary to override

    Returns:
        Configuration dictionary with env var overrides applied
    """
    result = {
        key: dict(value) if isinstance(value, dict) else value
        for key, value in config_dict.items()
    }

    if raw := os.environ.get("PLANLOOM_MAX_TASK_ATTEMPTS"):
        if (attempts := _positive_int("PLANLOOM_MAX_TASK_ATTEMPTS", raw)) is not None:
            _set(result, "execution", "max_task_attempts", attempts)

    if raw := os.environ.get("PLANLOOM_TASK_TIMEOUT"):
        if (timeout := _positive_int("PLANLOOM_TASK_TIMEOUT", raw)) is not None:
            _set(result, "execution", "task_timeout_minutes", timeout)

    if harness := os.environ.get("PLANLOOM_HARNESS"):
        _set(result, "harness", "name", harness)

    if model := os.environ.get("PLANLOOM_MODEL"):
        _set(result, "harness", "model", model)

    if db_path := os.environ.get("PLANLOOM_DB_PATH"):
        _set(result, "store", "path", db_path)

    return result


def get_default_config() -> dict[str, Any]:
    """
    Get hardcoded default configuration.

    Returns:
        Dictionary with default configuration values
    """
    return {
        "execution": {
            "max_task_attempts": 3,
            "task_timeout_minutes": 30,
            "runner": "generator",
        },
        "refinement": {"history_window": 6, "timeout_seconds": 120, "auto_apply": False},
        "harness": {"name": "auto", "model": None},
        "store": {"path": ".planloom/plans.db"},
        "server": {"host": "127.0.0.1", "port": 8420},
    }


def load_config(project_dir: Path | None = None, use_cache: bool = True) -> PlanloomConfig:
    """
    Load configuration with multi-layer merging.

    Configuration precedence (highest to lowest):
        1. Environment variables (PLANLOOM_*)
        2. Project config (.planloom.json)
        3. User config (~/.config/planloom/config.json)
        4. Hardcoded defaults

    Args:
        project_dir: Project directory to load .planloom.json from (defaults to cwd)
        use_cache: If True, return cached config from previous load

    Returns:
        Validated PlanloomConfig instance

    Raises:
        ValidationError: If the merged config fails Pydantic validation

    Example:
        >>> config = load_config()
        >>> config.execution.max_task_attempts
        3
    """
    global _config_cache

    if use_cache and _config_cache is not None:
        return _config_cache

    merged = get_default_config()

    if user_config := load_json_file(get_user_config_path()):
        merged = deep_merge(merged, user_config)

    if project_config := load_json_file(get_project_config_path(project_dir)):
        merged = deep_merge(merged, project_config)

    merged = apply_env_overrides(merged)

    config = PlanloomConfig(**merged)
    _config_cache = config
    return config


def clear_cache() -> None:
    """
    Clear the cached configuration.

    Useful for testing or when config files change during execution.
    """
    global _config_cache
    _config_cache = None


def resolve_store_path(config: PlanloomConfig, project_dir: Path | None = None) -> Path:
    """Absolute SQLite path: relative store paths are taken from the project dir."""
    path = Path(config.store.path).expanduser()
    if path.is_absolute() or str(path) == ":memory:":
        return path
    return (project_dir or Path.cwd()) / path
