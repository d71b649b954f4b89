# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""Concurrency and retry tuning for indexing.

Out-of-range values are a configuration error raised at construction, so a
misconfigured process refuses to start instead of misbehaving under load.
"""

from __future__ import annotations

import os

from typing import Annotated, Any, Self

from pydantic import Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from codeloom.core.models import FROZEN_BASEDMODEL_CONFIG, BasedModel
from codeloom.exceptions import ConfigurationError


MAX_BACKOFF_MS = 30_000


class ConcurrencySettings(BasedModel):
    """Immutable tuning for task, file and embedding-batch concurrency."""

    model_config = FROZEN_BASEDMODEL_CONFIG

    max_concurrent_embedding_requests: Annotated[int, Field(ge=1, le=20)] = 4
    """Embedding batches in flight at once, per coordinator."""
    max_concurrent_file_batches: Annotated[int, Field(ge=1, le=10)] = 2
    """Files processed per progress group during an indexing run."""
    embedding_batch_size_optimal: Annotated[int, Field(ge=1, le=100)] = 10
    network_timeout_ms: Annotated[int, Field(ge=1_000)] = 30_000
    enable_dynamic_batch_sizing: bool = True
    enable_failure_fallback: bool = True
    """Substitute zero-vectors for batches that exhaust their retries."""
    max_retry_attempts: Annotated[int, Field(ge=0, le=10)] = 3
    retry_delay_ms: Annotated[int, Field(ge=100, le=10_000)] = 1_000
    """Base delay for exponential backoff between batch attempts."""
    enable_concurrency_logging: bool = True
    max_queued_tasks: Annotated[int, Field(ge=1)] = 100
    max_concurrent_tasks: Annotated[int, Field(ge=1, le=32)] = 2

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except PydanticValidationError as e:
            raise ConfigurationError(
                "Invalid concurrency settings",
                details={"errors": e.errors(include_url=False)},
                suggestions=["Check the CODELOOM_CONCURRENCY__* environment variables"],
            ) from e

    @model_validator(mode="after")
    def _check_caps(self) -> Self:
        if self.max_concurrent_tasks > self.max_queued_tasks:
            raise ValueError("max_concurrent_tasks cannot exceed max_queued_tasks")
        return self

    @classmethod
    def for_environment(cls, cpu_count: int | None = None, **overrides: Any) -> ConcurrencySettings:
        """Derive concurrency caps from the number of available CPUs."""
        cpus = max(1, cpu_count or os.cpu_count() or 1)
        values: dict[str, Any] = {
            "max_concurrent_embedding_requests": min(cpus * 2, 20),
            "max_concurrent_file_batches": min(cpus, 10),
            "max_concurrent_tasks": min(cpus, 32),
        }
        return cls(**(values | overrides))

    def backoff_delay_ms(self, attempt: int) -> int:
        """Delay before retrying after failed `attempt` (1-based), capped at 30 seconds."""
        return min(self.retry_delay_ms * 2 ** max(attempt - 1, 0), MAX_BACKOFF_MS)


__all__ = ("MAX_BACKOFF_MS", "ConcurrencySettings")
