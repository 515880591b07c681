"""
Process-wide settings read from KEEL_* environment variables and .env.
"""

from typing import Literal

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class KeelSettings(BaseSettings):
    """
    Logging, session storage and model credentials.

    Example: KEEL_DEBUG=true KEEL_SESSIONS_DIR=~/.keel/sessions
    """

    model_config = SettingsConfigDict(
        env_prefix="KEEL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        protected_namespaces=(),
    )

    # Core settings
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool = False

    # Session storage
    sessions_dir: str = "~/.keel/sessions"

    # Model Provider Settings
    default_model: str = "gpt-4o-mini"
    openai_api_key: SecretStr | None = None
    openai_base_url: str | None = None


settings = KeelSettings()


__all__ = ["KeelSettings", "settings"]
