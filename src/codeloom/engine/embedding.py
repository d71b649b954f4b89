# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""Concurrent, retrying embedding of text batches.

`EmbeddingBatchCoordinator.embed` splits its input into provider-sized batches,
embeds them concurrently under a semaphore, retries failing batches with capped
exponential backoff, and reassembles the vectors in input order. When a batch
exhausts its retries and fallback is enabled, that batch gets zero-vectors of
the provider's dimension and is reported as degraded instead of failing the
whole call.
"""

from __future__ import annotations

import asyncio
import logging
import time

from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pydantic import Field, NonNegativeInt
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_not_exception_type,
    stop_after_attempt,
)

from codeloom.core.models import BasedModel, utc_now
from codeloom.exceptions import BatchSizeMismatchError, EmbeddingError, TaskCancelledError


if TYPE_CHECKING:
    from codeloom.config.concurrency import ConcurrencySettings
    from codeloom.engine.cancellation import CancellationToken
    from codeloom.providers.embedding import EmbeddingProvider


logger = logging.getLogger(__name__)

PROCESSING_LOG_LIMIT = 1000


def _first_failure(group: ExceptionGroup) -> Exception:
    """Pick the batch failure to surface once a task group has cancelled its siblings."""
    for error in group.exceptions:
        if isinstance(error, (EmbeddingError, TaskCancelledError)):
            return error
    return group.exceptions[0]


class BatchLogEntry(BasedModel):
    """Outcome of one batch."""

    batch_index: NonNegativeInt
    size: NonNegativeInt
    attempts: NonNegativeInt
    succeeded: bool
    fallback: bool = False
    duration_seconds: float = 0.0
    error: str | None = None
    finished_at: datetime = Field(default_factory=utc_now)


class EmbeddingStatistics(BasedModel):
    """Running counters across all `embed` calls."""

    total_requests: NonNegativeInt = 0
    total_texts: NonNegativeInt = 0
    total_batches: NonNegativeInt = 0
    successful_batches: NonNegativeInt = 0
    failed_batches: NonNegativeInt = 0
    fallback_batches: NonNegativeInt = 0
    retry_attempts: NonNegativeInt = 0
    peak_concurrency: NonNegativeInt = 0
    total_batch_seconds: float = 0.0

    @property
    def average_batch_seconds(self) -> float:
        finished = self.successful_batches + self.failed_batches
        return self.total_batch_seconds / finished if finished else 0.0


class EmbeddingResult(BasedModel):
    """Vectors for every input text plus the indices that hold fallback vectors."""

    vectors: list[list[float]]
    degraded_indices: frozenset[int] = frozenset()

    @property
    def degraded(self) -> bool:
        return bool(self.degraded_indices)


class EmbeddingBatchCoordinator:
    """Bounded-concurrency batch embedding with retry, backoff and fallback."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        settings: ConcurrencySettings,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        provider.ensure_valid()
        self.provider = provider
        self.settings = settings
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(settings.max_concurrent_embedding_requests)
        self._in_flight = 0
        self.statistics = EmbeddingStatistics()
        self.processing_log: deque[BatchLogEntry] = deque(maxlen=PROCESSING_LOG_LIMIT)

    @property
    def batch_size(self) -> int:
        """Texts per provider call."""
        provider_max = max(1, self.provider.max_batch_size)
        optimal = self.settings.embedding_batch_size_optimal
        size = min(provider_max, optimal) if self.settings.enable_dynamic_batch_sizing else optimal
        return max(1, min(size, provider_max))

    def partition(self, texts: Sequence[str]) -> list[list[str]]:
        size = self.batch_size
        return [list(texts[i : i + size]) for i in range(0, len(texts), size)]

    async def embed(
        self, texts: Sequence[str], *, cancel_token: CancellationToken | None = None
    ) -> list[list[float]]:
        """Embed `texts`, returning one vector per text in input order."""
        return (await self.embed_with_report(texts, cancel_token=cancel_token)).vectors

    async def embed_with_report(
        self, texts: Sequence[str], *, cancel_token: CancellationToken | None = None
    ) -> EmbeddingResult:
        """Like `embed`, also reporting which positions received fallback vectors.

        Raises:
            EmbeddingError: A batch exhausted its retries and fallback is disabled.
            TaskCancelledError: `cancel_token` was set before a batch attempt.
        """
        if not texts:
            return EmbeddingResult(vectors=[])
        self.statistics.total_requests += 1
        self.statistics.total_texts += len(texts)
        batches = self.partition(texts)
        self.statistics.total_batches += len(batches)
        if self.settings.enable_concurrency_logging:
            logger.debug(
                "Embedding %d texts in %d batches of up to %d (concurrency %d)",
                len(texts),
                len(batches),
                self.batch_size,
                self.settings.max_concurrent_embedding_requests,
            )
        try:
            async with asyncio.TaskGroup() as group:
                running = [
                    group.create_task(self._run_batch(index, batch, cancel_token))
                    for index, batch in enumerate(batches)
                ]
        except ExceptionGroup as failures:
            raise _first_failure(failures)
        results = [task.result() for task in running]
        vectors: list[list[float]] = []
        degraded: set[int] = set()
        for batch_vectors, fallback in results:
            if fallback:
                degraded.update(range(len(vectors), len(vectors) + len(batch_vectors)))
            vectors.extend(batch_vectors)
        return EmbeddingResult(vectors=vectors, degraded_indices=frozenset(degraded))

    def _backoff(self, retry_state: RetryCallState) -> float:
        return self.settings.backoff_delay_ms(retry_state.attempt_number) / 1000

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        self.statistics.retry_attempts += 1
        if self.settings.enable_concurrency_logging:
            outcome = retry_state.outcome
            logger.debug(
                "Embedding attempt %d failed (%s), retrying in %.2fs",
                retry_state.attempt_number,
                outcome.exception() if outcome else "unknown error",
                retry_state.upcoming_sleep,
            )

    async def _call_provider(self, batch: list[str]) -> list[list[float]]:
        async with self._semaphore:
            self._in_flight += 1
            self.statistics.peak_concurrency = max(
                self.statistics.peak_concurrency, self._in_flight
            )
            try:
                vectors = await asyncio.wait_for(
                    self.provider.get_embeddings(batch),
                    timeout=self.settings.network_timeout_ms / 1000,
                )
            finally:
                self._in_flight -= 1
        if len(vectors) != len(batch):
            raise BatchSizeMismatchError(
                "Embedding provider returned the wrong number of vectors",
                details={"expected": len(batch), "actual": len(vectors)},
            )
        return [list(vector) for vector in vectors]

    async def _run_batch(
        self, index: int, batch: list[str], cancel_token: CancellationToken | None
    ) -> tuple[list[list[float]], bool]:
        started = time.perf_counter()
        attempts = 0
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.max_retry_attempts + 1),
            wait=self._backoff,
            retry=retry_if_not_exception_type((TaskCancelledError, asyncio.CancelledError)),
            before_sleep=self._before_sleep,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if cancel_token is not None:
                        cancel_token.raise_if_cancelled()
                    vectors = await self._call_provider(batch)
        except TaskCancelledError:
            raise
        except Exception as e:
            return self._handle_exhausted(index, batch, attempts, started, e)
        duration = time.perf_counter() - started
        self.statistics.successful_batches += 1
        self.statistics.total_batch_seconds += duration
        self.processing_log.append(
            BatchLogEntry(
                batch_index=index,
                size=len(batch),
                attempts=attempts,
                succeeded=True,
                duration_seconds=duration,
            )
        )
        return vectors, False

    def _handle_exhausted(
        self, index: int, batch: list[str], attempts: int, started: float, error: Exception
    ) -> tuple[list[list[float]], bool]:
        duration = time.perf_counter() - started
        self.statistics.failed_batches += 1
        self.statistics.total_batch_seconds += duration
        fallback = self.settings.enable_failure_fallback
        self.processing_log.append(
            BatchLogEntry(
                batch_index=index,
                size=len(batch),
                attempts=attempts,
                succeeded=False,
                fallback=fallback,
                duration_seconds=duration,
                error=f"{type(error).__name__}: {error}",
            )
        )
        if not fallback:
            logger.error("Embedding batch %d failed after %d attempts: %s", index, attempts, error)
            raise EmbeddingError(
                f"Embedding batch failed after {attempts} attempts: {error}",
                details={"attempts": attempts, "batch_index": index},
                suggestions=["Check the embedding provider's availability and credentials"],
            ) from error
        self.statistics.fallback_batches += 1
        logger.warning(
            "Embedding batch %d failed after %d attempts, using %d zero-vectors: %s",
            index,
            attempts,
            len(batch),
            error,
        )
        dimension = self.provider.dimension
        return [[0.0] * dimension for _ in batch], True

    def recent_batches(self, limit: int = 50) -> list[BatchLogEntry]:
        return list(self.processing_log)[-limit:]


__all__ = (
    "BatchLogEntry",
    "EmbeddingBatchCoordinator",
    "EmbeddingResult",
    "EmbeddingStatistics",
)
