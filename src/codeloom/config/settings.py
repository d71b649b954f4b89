# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""Process-wide settings for CodeLoom.

Settings load from environment variables prefixed with `CODELOOM_`. Nested
models use `__` as the delimiter, e.g. `CODELOOM_CONCURRENCY__MAX_CONCURRENT_TASKS=4`
or `CODELOOM_VECTOR_STORE__URL=http://localhost:6333`.
"""

from __future__ import annotations

import logging

from functools import cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, PositiveFloat, PositiveInt, SecretStr
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from codeloom.common.paths import get_user_data_dir
from codeloom.config.concurrency import ConcurrencySettings
from codeloom.core.models import BasedModel
from codeloom.exceptions import ConfigurationError


logger = logging.getLogger(__name__)


class HealthSettings(BasedModel):
    """Vector store connection monitoring."""

    check_interval: PositiveFloat = 30.0
    """Seconds between background probes."""
    probe_timeout: PositiveFloat = 5.0
    wait_timeout: PositiveFloat = 300.0
    """How long a task waits for the store to come back before failing."""


class WatcherSettings(BasedModel):
    """File watching and debounce."""

    enabled: bool = True
    debounce_delay: PositiveFloat = 0.5
    refresh_interval: PositiveFloat = 300.0
    """Seconds between watcher reconciliation passes."""
    restart_delay: PositiveFloat = 5.0


class SchedulerSettings(BasedModel):
    """Task retention and cleanup."""

    task_retention_days: PositiveInt = 7
    cleanup_interval: PositiveFloat = 3600.0


class VectorStoreSettings(BasedModel):
    """Connection settings for the Qdrant-backed vector store."""

    location: str | None = None
    """`:memory:` for an in-process store."""
    url: str | None = None
    path: Path | None = None
    """Local on-disk storage directory."""
    api_key: SecretStr | None = None
    timeout: PositiveInt = 30

    def client_options(self) -> dict[str, Any]:
        """Keyword arguments for `AsyncQdrantClient`, empty when nothing is configured."""
        if self.url:
            options: dict[str, Any] = {"url": self.url, "timeout": self.timeout}
            if self.api_key:
                options["api_key"] = self.api_key.get_secret_value()
            return options
        if self.path:
            return {"path": str(self.path)}
        if self.location:
            return {"location": self.location}
        return {}


class EmbeddingSettings(BasedModel):
    """Settings for the local FastEmbed provider."""

    model_name: str = "BAAI/bge-small-en-v1.5"
    max_batch_size: PositiveInt = 32
    max_token_length: PositiveInt = 512
    threads: PositiveInt | None = None
    """ONNX runtime threads. Defaults to the CPU count."""
    cache_dir: Path | None = None
    """Where models are downloaded. Defaults to `<data_dir>/models`."""


class ParserSettings(BasedModel):
    """Settings for the whole-file parser."""

    max_lines_per_snippet: PositiveInt = 120


class CodeLoomSettings(BaseSettings):
    """Main configuration model following pydantic-settings patterns.

    Configuration precedence (highest to lowest):
    1. Keyword arguments
    2. Environment variables (CODELOOM_*)
    3. A `.env` file in the working directory
    4. Defaults
    """

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        env_nested_delimiter="__",
        env_prefix="CODELOOM_",
        extra="ignore",
        nested_model_default_partial_update=True,
        str_strip_whitespace=True,
        title="CodeLoom Settings",
        use_attribute_docstrings=True,
        validate_default=True,
    )

    data_dir: Path = Field(
        default_factory=get_user_data_dir,
        description="Directory holding persisted tasks and libraries",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    concurrency: ConcurrencySettings = Field(default_factory=ConcurrencySettings)
    health: HealthSettings = Field(default_factory=HealthSettings)
    watcher: WatcherSettings = Field(default_factory=WatcherSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    vector_store: VectorStoreSettings = Field(default_factory=VectorStoreSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    parser: ParserSettings = Field(default_factory=ParserSettings)

    @property
    def tasks_dir(self) -> Path:
        return self.data_dir / "tasks"

    @property
    def libraries_dir(self) -> Path:
        return self.data_dir / "libraries"

    @property
    def vectors_dir(self) -> Path:
        return self.data_dir / "qdrant"

    @property
    def models_dir(self) -> Path:
        return self.embedding.cache_dir or self.data_dir / "models"


def load_settings(**overrides: Any) -> CodeLoomSettings:
    """Build settings, converting validation failures into a `ConfigurationError`."""
    try:
        return CodeLoomSettings(**overrides)
    except PydanticValidationError as e:
        logger.debug("Settings validation failed", exc_info=True)
        raise ConfigurationError(
            "Invalid CodeLoom configuration",
            details={"errors": e.errors(include_url=False)},
            suggestions=["Check CODELOOM_* environment variables and your .env file"],
        ) from e


@cache
def get_settings() -> CodeLoomSettings:
    """Process-wide settings, loaded once."""
    return load_settings()


__all__ = (
    "CodeLoomSettings",
    "EmbeddingSettings",
    "HealthSettings",
    "ParserSettings",
    "SchedulerSettings",
    "VectorStoreSettings",
    "WatcherSettings",
    "get_settings",
    "load_settings",
)
