"""
Configuration data models for planloom.

These models define the structure of .planloom.json and
~/.config/planloom/config.json files, with validation via Pydantic.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ExecutionConfig(BaseModel):
    """
    Scheduling loop settings.

    The retry ceiling is what separates a recoverable task failure (plan
    pauses) from an exhausted one (plan fails).
    """
    max_task_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per task before the plan fails instead of pausing"
    )
    task_timeout_minutes: int = Field(
        default=30,
        ge=1,
        description="Wall-clock limit for a single task run"
    )
    runner: str = Field(
        default="generator",
        description="Registered TaskRunner name"
    )


class RefinementConfig(BaseModel):
    """Refinement session settings."""
    history_window: int = Field(
        default=6,
        ge=0,
        description="Prior conversation turns included in a refinement prompt"
    )
    timeout_seconds: float = Field(
        default=120,
        gt=0,
        description="Give up on a refinement reply after this many seconds"
    )
    auto_apply: bool = Field(
        default=False,
        description="Apply every parsed proposal as soon as the reply ends"
    )


class HarnessConfig(BaseModel):
    """
    Text-generation backend selection.

    Example:
        >>> config = HarnessConfig(name="claude-cli", model="sonnet")
    """
    name: str = Field(
        default="auto",
        description="Backend name, or 'auto' to detect an available one"
    )
    model: Optional[str] = Field(
        default=None,
        description="Model override passed to the backend"
    )


class StoreConfig(BaseModel):
    """Plan store location."""
    path: str = Field(
        default=".planloom/plans.db",
        description="SQLite file, relative to the project directory"
    )


class ServerConfig(BaseModel):
    """HTTP server binding for `planloom serve`."""
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8420, ge=1, le=65535)


class PlanloomConfig(BaseModel):
    """
    Top-level planloom configuration.

    Loaded from defaults, user config, project config, and env vars.

    Example:
        >>> config = PlanloomConfig(
        ...     execution=ExecutionConfig(max_task_attempts=5),
        ...     harness=HarnessConfig(name="fake"),
        ... )
        >>> config.execution.max_task_attempts
        5
    """
    execution: ExecutionConfig = Field(
        default_factory=ExecutionConfig,
        description="Scheduling loop settings"
    )
    refinement: RefinementConfig = Field(
        default_factory=RefinementConfig,
        description="Refinement session settings"
    )
    harness: HarnessConfig = Field(
        default_factory=HarnessConfig,
        description="Text-generation backend"
    )
    store: StoreConfig = Field(
        default_factory=StoreConfig,
        description="Plan store location"
    )
    server: ServerConfig = Field(
        default_factory=ServerConfig,
        description="HTTP server binding"
    )

    model_config = ConfigDict(
        extra="ignore",  # tolerate keys from newer versions
    )
