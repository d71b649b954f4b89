# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""Embedding provider capability.

Vendor integrations implement `EmbeddingProvider`; the batch coordinator only
depends on this contract. `FastEmbedProvider` runs a FastEmbed ONNX model
locally. It needs no credentials, which makes it the default.
"""

from __future__ import annotations

import asyncio
import logging
import multiprocessing

from abc import ABC, abstractmethod
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from fastembed import TextEmbedding

from codeloom.exceptions import ConfigurationError


logger = logging.getLogger(__name__)

DEFAULT_FASTEMBED_MODEL = "BAAI/bge-small-en-v1.5"


class EmbeddingProvider(ABC):
    """Abstract embedding provider."""

    name: str = "embedding"

    @abstractmethod
    async def get_embeddings(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed a batch of texts, returning one vector per text in the same order."""

    @property
    @abstractmethod
    def max_batch_size(self) -> int:
        """Largest number of texts accepted in one call."""

    @property
    @abstractmethod
    def max_token_length(self) -> int:
        """Longest input the provider accepts, in tokens."""

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Length of every returned vector."""

    def validate_configuration(self) -> bool:
        """Whether the provider has everything it needs to make calls."""
        return self.dimension > 0 and self.max_batch_size > 0

    def ensure_valid(self) -> None:
        """Raise `ConfigurationError` when `validate_configuration` fails."""
        if not self.validate_configuration():
            raise ConfigurationError(
                f"Embedding provider {self.name!r} is not configured correctly",
                suggestions=["Check the provider's credentials and model settings"],
            )


class FastEmbedProvider(EmbeddingProvider):
    """Dense embeddings from a local `fastembed.TextEmbedding` model.

    The model is loaded on first use, in a worker thread, so constructing the
    provider never downloads or loads anything.
    """

    name = "fastembed"

    def __init__(
        self,
        model_name: str = DEFAULT_FASTEMBED_MODEL,
        *,
        max_batch_size: int = 32,
        max_token_length: int = 512,
        threads: int | None = None,
        cache_dir: Path | None = None,
        client: TextEmbedding | None = None,
    ) -> None:
        self.model_name = model_name
        self._max_batch_size = max_batch_size
        self._max_token_length = max_token_length
        self._client_kwargs: dict[str, Any] = {
            "model_name": model_name,
            "threads": threads or multiprocessing.cpu_count(),
            "lazy_load": True,
        }
        if cache_dir is not None:
            self._client_kwargs["cache_dir"] = str(cache_dir)
        self._client = client
        self._dimension: int | None = None

    @property
    def client(self) -> TextEmbedding:
        if self._client is None:
            logger.info("Loading FastEmbed model %s", self.model_name)
            self._client = TextEmbedding(**self._client_kwargs)
        return self._client

    @property
    def max_batch_size(self) -> int:
        return self._max_batch_size

    @property
    def max_token_length(self) -> int:
        return self._max_token_length

    @property
    def dimension(self) -> int:
        """Vector size, read from FastEmbed's model catalogue without loading the model."""
        if self._dimension is None:
            described = next(
                (
                    model
                    for model in TextEmbedding.list_supported_models()
                    if model["model"].lower() == self.model_name.lower()
                ),
                None,
            )
            if described is None:
                raise ConfigurationError(
                    f"Unknown FastEmbed model {self.model_name!r}",
                    suggestions=["Pick a model from `TextEmbedding.list_supported_models()`"],
                )
            self._dimension = int(described["dim"])
        return self._dimension

    def _embed_sync(self, texts: list[str]) -> list[list[float]]:
        return [
            vector.tolist()
            for vector in self.client.passage_embed(texts, batch_size=self._max_batch_size)
        ]

    async def get_embeddings(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._embed_sync, list(texts))


__all__ = ("DEFAULT_FASTEMBED_MODEL", "EmbeddingProvider", "FastEmbedProvider")
