"""
YAML configuration loader.

Loads a ``KeelConfig`` document from YAML with environment substitution.
"""

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from keel.config.schema import KeelConfig
from keel.errors import ConfigError
from keel.utils.logging import get_logger

logger = get_logger(__name__)

# ${VAR_NAME} or ${VAR_NAME:default}
_ENV_PATTERN = re.compile(r"\$\{([^}:]+)(?::([^}]*))?\}")


def resolve_env_vars(data: Any) -> Any:
    """
    Recursively resolve environment variables in configuration values.

    Supported formats:
    - ${VAR_NAME}
    - ${VAR_NAME:default_value}
    """
    if isinstance(data, str):

        def replacer(match: re.Match) -> str:
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else ""
            return os.getenv(var_name, default_value)

        return _ENV_PATTERN.sub(replacer, data)
    elif isinstance(data, dict):
        return {k: resolve_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [resolve_env_vars(item) for item in data]
    return data


def load_config(path: str | Path) -> KeelConfig:
    """
    Load a KeelConfig from a YAML file.

    Missing sections fall back to defaults; an empty file yields the default
    configuration.

    Raises:
        ConfigError: unreadable file, invalid YAML or failed validation.
    """
    file_path = Path(path).expanduser()
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Failed to read {file_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {file_path}: {e}") from e

    if data is None:
        logger.warning("empty_config_file", path=str(file_path))
        return KeelConfig()

    if not isinstance(data, dict):
        raise ConfigError(f"Config root must be a mapping in {file_path}")

    try:
        config = KeelConfig.model_validate(resolve_env_vars(data))
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {file_path}: {e}") from e

    logger.info(
        "config_loaded",
        path=str(file_path),
        context_window=config.compaction.context_window,
        max_turns=config.execution.max_turns,
    )
    return config


__all__ = ["load_config", "resolve_env_vars"]
