# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Global pytest configuration and fixtures for CodeLoom tests."""

import asyncio
import hashlib
import math
import re

from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest

from codeloom.common.paths import normalize_path
from codeloom.config.concurrency import ConcurrencySettings
from codeloom.core.library import IndexLibrary, WatchConfiguration
from codeloom.persistence.libraries import InMemoryLibraryRepository
from codeloom.persistence.tasks import InMemoryTaskRepository
from codeloom.providers.embedding import EmbeddingProvider
from codeloom.providers.vector_store import SearchHit, VectorPoint, VectorStore


# ===========================================================================
# *                    Fake providers
# ===========================================================================


class FakeEmbeddingProvider(EmbeddingProvider):
    """Deterministic provider that records every call.

    Each vector is derived from its text alone, so tests can check which text
    produced which vector. `failures` lists exceptions to raise on
    successive calls before behaving normally; `fail_always` never recovers.
    """

    name = "fake"

    def __init__(
        self,
        *,
        dimension: int = 4,
        max_batch_size: int = 8,
        delay: float = 0.0,
        failures: Sequence[Exception] = (),
        fail_always: Exception | None = None,
        fail_texts: Sequence[str] = (),
    ) -> None:
        self._dimension = dimension
        self._max_batch_size = max_batch_size
        self.delay = delay
        self.failures = list(failures)
        self.fail_always = fail_always
        self.fail_texts = set(fail_texts)
        self.calls: list[list[str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def max_batch_size(self) -> int:
        return self._max_batch_size

    @property
    def max_token_length(self) -> int:
        return 1024

    @property
    def dimension(self) -> int:
        return self._dimension

    @staticmethod
    def vector_for(text: str) -> list[float]:
        return [float(len(text)), float(sum(map(ord, text)) % 97), 1.0, 0.5]

    async def get_embeddings(self, texts: Sequence[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_always is not None:
                raise self.fail_always
            if self.failures:
                raise self.failures.pop(0)
            if self.fail_texts.intersection(texts):
                raise ConnectionError("provider rejected the batch")
            return [self.vector_for(text)[: self._dimension] for text in texts]
        finally:
            self.in_flight -= 1


class HashEmbeddingProvider(EmbeddingProvider):
    """Offline feature-hashing provider for end-to-end tests.

    Vectors only capture token overlap, which is enough to check that a query
    finds the file that contains its identifiers.
    """

    name = "hash"

    def __init__(self, dimension: int = 64) -> None:
        self._dimension = dimension

    @property
    def max_batch_size(self) -> int:
        return 32

    @property
    def max_token_length(self) -> int:
        return 8192

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed_one(self, text: str) -> list[float]:
        vector = [0.0] * self._dimension
        for token in re.findall(r"[a-z0-9]+", text.lower()):
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=4).digest()
            vector[int.from_bytes(digest, "little") % self._dimension] += 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        return [v / norm for v in vector] if norm else vector

    async def get_embeddings(self, texts: Sequence[str]) -> list[list[float]]:
        return [self.embed_one(text) for text in texts]


class FakeVectorStore(VectorStore):
    """Dict-backed store with a switchable health probe."""

    def __init__(self) -> None:
        self.collections: dict[str, dict[str, VectorPoint]] = {}
        self.healthy = True
        self.health_checks = 0
        self.closed = False

    async def ensure_collection(self, name: str, dimension: int) -> bool:
        if name in self.collections:
            return False
        self.collections[name] = {}
        return True

    async def upsert(self, collection: str, points: Sequence[VectorPoint]) -> None:
        store = self.collections.setdefault(collection, {})
        for point in points:
            store[point.id] = point

    async def search(
        self, collection: str, query_vector: Sequence[float], limit: int = 10
    ) -> list[SearchHit]:
        points = list(self.collections.get(collection, {}).values())[:limit]
        return [SearchHit(id=p.id, score=1.0, payload=p.payload) for p in points]

    async def delete_by_filter(self, collection: str, field: str, value: Any) -> None:
        store = self.collections.get(collection, {})
        for point_id in [pid for pid, p in store.items() if p.payload.get(field) == value]:
            del store[point_id]

    async def delete_collection(self, name: str) -> bool:
        return self.collections.pop(name, None) is not None

    async def health_check(self) -> bool:
        self.health_checks += 1
        if not self.healthy:
            raise ConnectionError("vector store is down")
        return True

    async def close(self) -> None:
        self.closed = True

    def points_for(self, collection: str, file_path: str | Path) -> list[VectorPoint]:
        key = normalize_path(file_path)
        return [
            p for p in self.collections.get(collection, {}).values() if p.payload["file_path"] == key
        ]


# ===========================================================================
# *                    Fixtures
# ===========================================================================


@pytest.fixture
def fake_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def provider_factory() -> type[FakeEmbeddingProvider]:
    """The fake provider class, for tests that need a custom configuration."""
    return FakeEmbeddingProvider


@pytest.fixture
def hash_provider() -> HashEmbeddingProvider:
    return HashEmbeddingProvider()


@pytest.fixture
def fake_store() -> FakeVectorStore:
    return FakeVectorStore()


@pytest.fixture
def task_repository() -> InMemoryTaskRepository:
    return InMemoryTaskRepository()


@pytest.fixture
def library_repository() -> InMemoryLibraryRepository:
    return InMemoryLibraryRepository()


@pytest.fixture
def fast_settings() -> ConcurrencySettings:
    """Concurrency settings with the smallest legal retry delay."""
    return ConcurrencySettings(retry_delay_ms=100, network_timeout_ms=5_000)


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """A small source tree with an excluded directory."""
    root = tmp_path / "project"
    (root / "pkg").mkdir(parents=True)
    (root / "node_modules" / "dep").mkdir(parents=True)
    (root / "main.py").write_text("def main():\n    return parse_config()\n")
    (root / "pkg" / "config.py").write_text("def parse_config():\n    return {}\n")
    (root / "README.md").write_text("# project\n")
    (root / "node_modules" / "dep" / "index.js").write_text("module.exports = {}\n")
    return root


@pytest.fixture
def library(project_dir: Path) -> IndexLibrary:
    return IndexLibrary(
        name="project",
        codebase_path=project_dir,
        watch=WatchConfiguration(file_patterns=[".py", ".md"]),
    )
