# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""Vector store capability and its Qdrant adapter.

Workloads only talk to `VectorStore`. `QdrantVectorStore` wraps
`qdrant_client.AsyncQdrantClient`; with `location=":memory:"` it runs fully
in-process, which is what the tests and the default settings use.
"""

from __future__ import annotations

import logging

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from pydantic import Field
from qdrant_client import AsyncQdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    FilterSelector,
    MatchValue,
    PayloadSchemaType,
    PointStruct,
    VectorParams,
)
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from codeloom.common.paths import normalize_path
from codeloom.core.models import BasedModel
from codeloom.exceptions import VectorStoreError


if TYPE_CHECKING:
    from pathlib import Path

    from codeloom.config.settings import VectorStoreSettings


logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (ConnectionError, TimeoutError, OSError)


class VectorPoint(BasedModel):
    """A vector with its id and payload, ready for upsert."""

    id: str
    vector: list[float]
    payload: dict[str, Any] = Field(default_factory=dict)


class SearchHit(BasedModel):
    """One search result."""

    id: str
    score: float
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def file_path(self) -> str | None:
        return self.payload.get("display_path") or self.payload.get("file_path")


class VectorStore(ABC):
    """Abstract vector store.

    Points carry a `file_path` payload field holding the normalized path of
    their source file, which `delete_by_file` filters on.
    """

    @abstractmethod
    async def ensure_collection(self, name: str, dimension: int) -> bool:
        """Create the collection if missing. Returns True when it was created."""

    @abstractmethod
    async def upsert(self, collection: str, points: Sequence[VectorPoint]) -> None:
        """Insert or overwrite points by id."""

    @abstractmethod
    async def search(
        self, collection: str, query_vector: Sequence[float], limit: int = 10
    ) -> list[SearchHit]:
        """Return the closest points to `query_vector`."""

    @abstractmethod
    async def delete_by_filter(self, collection: str, field: str, value: str) -> None:
        """Delete every point whose payload `field` equals `value`."""

    @abstractmethod
    async def delete_collection(self, name: str) -> bool:
        """Drop a collection. Returns False if it did not exist."""

    @abstractmethod
    async def health_check(self) -> bool:
        """Cheap connectivity probe. Raises or returns False when unreachable."""

    async def delete_by_file(self, collection: str, file_path: str) -> None:
        """Delete all points that came from one file."""
        await self.delete_by_filter(collection, "file_path", normalize_path(file_path))

    async def close(self) -> None:  # noqa: B027
        """Release client resources."""


class QdrantVectorStore(VectorStore):
    """`VectorStore` backed by an `AsyncQdrantClient`.

    The client is created on first use, so a store that is never touched never
    opens (or locks) local storage.
    """

    def __init__(self, client: AsyncQdrantClient | None = None, **client_options: Any) -> None:
        self._client = client
        self._owns_client = client is None
        self._client_options = client_options or {"location": ":memory:"}
        self._is_remote = bool(client_options.get("url"))
        self._known_collections: set[str] = set()

    @classmethod
    def from_settings(
        cls, settings: VectorStoreSettings, *, default_path: Path | None = None
    ) -> QdrantVectorStore:
        """Build a store from settings, falling back to on-disk storage at `default_path`."""
        options = settings.client_options()
        if not options and default_path is not None:
            default_path.mkdir(parents=True, exist_ok=True)
            options = {"path": str(default_path)}
        return cls(**options)

    @property
    def client(self) -> AsyncQdrantClient:
        if self._client is None:
            self._client = AsyncQdrantClient(**self._client_options)
        return self._client

    async def ensure_collection(self, name: str, dimension: int) -> bool:
        if name in self._known_collections:
            return False
        try:
            if await self.client.collection_exists(name):
                self._known_collections.add(name)
                return False
            await self.client.create_collection(
                collection_name=name,
                vectors_config=VectorParams(size=dimension, distance=Distance.COSINE),
            )
            if self._is_remote:
                await self.client.create_payload_index(
                    collection_name=name,
                    field_name="file_path",
                    field_schema=PayloadSchemaType.KEYWORD,
                )
        except Exception as e:
            raise VectorStoreError(
                f"Failed to ensure collection '{name}'", details={"error": str(e)}
            ) from e
        self._known_collections.add(name)
        logger.info("Created collection '%s' (dimension %d)", name, dimension)
        return True

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type(_TRANSIENT_ERRORS),
        reraise=True,
    )
    async def _upsert_with_retry(self, collection: str, points: list[PointStruct]) -> None:
        await self.client.upsert(collection_name=collection, points=points, wait=True)

    async def upsert(self, collection: str, points: Sequence[VectorPoint]) -> None:
        if not points:
            return
        structs = [PointStruct(id=p.id, vector=p.vector, payload=p.payload) for p in points]
        try:
            await self._upsert_with_retry(collection, structs)
        except Exception as e:
            raise VectorStoreError(
                f"Failed to upsert {len(structs)} points into '{collection}'",
                details={"error": str(e)},
            ) from e

    async def search(
        self, collection: str, query_vector: Sequence[float], limit: int = 10
    ) -> list[SearchHit]:
        try:
            response = await self.client.query_points(
                collection_name=collection,
                query=list(query_vector),
                limit=limit,
                with_payload=True,
            )
        except Exception as e:
            raise VectorStoreError(
                f"Search in '{collection}' failed", details={"error": str(e)}
            ) from e
        return [
            SearchHit(id=str(point.id), score=point.score, payload=point.payload or {})
            for point in response.points
        ]

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type(_TRANSIENT_ERRORS),
        reraise=True,
    )
    async def _delete_with_retry(self, collection: str, selector: FilterSelector) -> None:
        await self.client.delete(collection_name=collection, points_selector=selector, wait=True)

    async def delete_by_filter(self, collection: str, field: str, value: str) -> None:
        selector = FilterSelector(
            filter=Filter(must=[FieldCondition(key=field, match=MatchValue(value=value))])
        )
        try:
            if not await self.client.collection_exists(collection):
                logger.debug("Collection '%s' does not exist, nothing to delete", collection)
                return
            await self._delete_with_retry(collection, selector)
        except Exception as e:
            raise VectorStoreError(
                f"Failed to delete points where {field}={value!r} from '{collection}'",
                details={"error": str(e)},
            ) from e

    async def delete_collection(self, name: str) -> bool:
        self._known_collections.discard(name)
        try:
            if not await self.client.collection_exists(name):
                logger.info("Collection '%s' does not exist, nothing to delete", name)
                return False
            await self.client.delete_collection(collection_name=name)
        except Exception as e:
            raise VectorStoreError(
                f"Failed to delete collection '{name}'", details={"error": str(e)}
            ) from e
        logger.info("Deleted collection '%s'", name)
        return True

    async def health_check(self) -> bool:
        await self.client.get_collections()
        return True

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            if self._owns_client:
                self._client = None
        self._known_collections.clear()


__all__ = ("QdrantVectorStore", "SearchHit", "VectorPoint", "VectorStore")
