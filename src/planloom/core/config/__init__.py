"""
Configuration models and loading.

Pydantic models for planloom configuration with multi-layer merging:
defaults < user < project < env vars.
"""

from .env import load_layered_env
from .loader import (
    clear_cache,
    deep_merge,
    get_project_config_path,
    get_user_config_path,
    get_xdg_config_home,
    load_config,
    resolve_store_path,
)
from .models import (
    ExecutionConfig,
    HarnessConfig,
    PlanloomConfig,
    RefinementConfig,
    ServerConfig,
    StoreConfig,
)

__all__ = [
    # Models
    "ExecutionConfig",
    "HarnessConfig",
    "PlanloomConfig",
    "RefinementConfig",
    "ServerConfig",
    "StoreConfig",
    # Loader functions
    "clear_cache",
    "deep_merge",
    "get_project_config_path",
    "get_user_config_path",
    "get_xdg_config_home",
    "load_config",
    "load_layered_env",
    "resolve_store_path",
]
