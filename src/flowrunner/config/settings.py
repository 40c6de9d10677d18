"""Central settings — loads from environment variables and an optional .env file."""

from __future__ import annotations

import logging
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Union

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from flowrunner.config.constants import (
    DEFAULT_SCRIPT_NAME,
    DEFAULT_STOP_TIMEOUT,
    FLOWRUNNER_HOME,
    JOBS_DIR,
)

# Host callbacks may be plain functions or coroutine functions
Callback = Callable[..., Union[None, Awaitable[None]]]


class Settings(BaseSettings):
    """Process-wide orchestrator configuration.

    Priority (highest → lowest):
      1. Environment variables (FLOWRUNNER_ prefix)
      2. .env file
      3. Defaults defined here
    """

    model_config = SettingsConfigDict(
        env_prefix="FLOWRUNNER_",
        env_file=(".env", str(FLOWRUNNER_HOME / ".env")),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    encrypt_key: SecretStr = SecretStr("")
    path_jobs: Path = JOBS_DIR
    python_path: str = Field(default_factory=lambda: sys.executable)
    script_name: str = DEFAULT_SCRIPT_NAME
    stop_timeout: float = DEFAULT_STOP_TIMEOUT
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()


@dataclass
class SchedulerConfig:
    """Everything an Orchestrator needs from its host.

    All four callbacks are optional; a missing callback is skipped silently.
    """

    encrypt_key: str
    path_jobs: Path
    python_path: str = sys.executable
    script_name: str = DEFAULT_SCRIPT_NAME
    logger: logging.Logger | None = None
    error_handler: Callback | None = None
    worker_message_handler: Callback | None = None
    on_worker_created: Callback | None = None
    on_worker_deleted: Callback | None = None
    stop_timeout: float = DEFAULT_STOP_TIMEOUT

    def __post_init__(self) -> None:
        self.path_jobs = Path(self.path_jobs)

    @classmethod
    def from_settings(cls, settings: Settings, **callbacks: Any) -> SchedulerConfig:
        """Build a config from loaded settings plus host callbacks."""
        return cls(
            encrypt_key=settings.encrypt_key.get_secret_value(),
            path_jobs=settings.path_jobs,
            python_path=settings.python_path,
            script_name=settings.script_name,
            stop_timeout=settings.stop_timeout,
            **callbacks,
        )
