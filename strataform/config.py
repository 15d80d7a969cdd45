"""Runtime configuration — env-driven.

Centralized settings using pydantic-settings. Reads from a .env file and
STRATAFORM_* environment variables.
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class StrataSettings(BaseSettings):
    """Process-wide settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export STRATAFORM_LOG_LEVEL=DEBUG
        export STRATAFORM_STATE_PATH=/data/state.db
        export STRATAFORM_PARALLELISM=4

    Or via .env file::

        STRATAFORM_DEBUG=true
        STRATAFORM_PROVIDER_TIMEOUT_SECONDS=60
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="STRATAFORM_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Diagnostics
    log_level: str = "INFO"
    debug: bool = False

    # Storage paths
    state_path: Path = Path(".strataform/state.db")
    cloud_path: Path = Path(".strataform/cloud.json")

    # Apply behaviour
    parallelism: int = 10
    provider_timeout_seconds: float = 300.0
    refresh: bool = True

    # Recorded as the holder of the state lock during apply
    lock_owner: str = "strataform"


# Module-level singleton: import as `from strataform.config import settings`
settings = StrataSettings()
