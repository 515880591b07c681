"""
Configuration module.

Provides:
- settings: environment-driven global settings
- ExecutionConfig / CompactionConfig: runtime configuration models
- load_config: YAML configuration loader
"""

from .settings import KeelSettings, settings
from .schema import CompactionConfig, ExecutionConfig, KeelConfig, QueueMode
from .loader import load_config, resolve_env_vars

__all__ = [
    "KeelSettings",
    "settings",
    "CompactionConfig",
    "ExecutionConfig",
    "KeelConfig",
    "QueueMode",
    "load_config",
    "resolve_env_vars",
]
