# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Tests for the FastEmbed and Qdrant adapters."""


import uuid

import numpy as np
import pytest

from codeloom.common.paths import normalize_path
from codeloom.config.settings import VectorStoreSettings
from codeloom.exceptions import ConfigurationError
from codeloom.providers.embedding import FastEmbedProvider
from codeloom.providers.vector_store import QdrantVectorStore, SearchHit, VectorPoint


pytestmark = [pytest.mark.unit]


class TestFastEmbedProvider:
    def test_construction_loads_nothing(self, mocker):
        text_embedding = mocker.patch("codeloom.providers.embedding.TextEmbedding")
        text_embedding.list_supported_models.return_value = [
            {"model": "BAAI/bge-small-en-v1.5", "dim": 384}
        ]

        provider = FastEmbedProvider(max_batch_size=16)
        provider.ensure_valid()

        assert provider.dimension == 384
        assert provider.max_batch_size == 16
        text_embedding.assert_not_called()

    def test_unknown_model_is_a_configuration_error(self, mocker):
        text_embedding = mocker.patch("codeloom.providers.embedding.TextEmbedding")
        text_embedding.list_supported_models.return_value = [
            {"model": "BAAI/bge-small-en-v1.5", "dim": 384}
        ]

        with pytest.raises(ConfigurationError):
            FastEmbedProvider("acme/not-a-model").ensure_valid()

    @pytest.mark.asyncio
    async def test_passage_embeddings_are_converted_to_lists(self, mocker):
        client = mocker.MagicMock()
        client.passage_embed.return_value = iter([np.array([0.5, 0.5]), np.array([1.0, 0.0])])
        provider = FastEmbedProvider(client=client, max_batch_size=8)

        vectors = await provider.get_embeddings(["def a(): ...", "def b(): ..."])

        assert vectors == [[0.5, 0.5], [1.0, 0.0]]
        client.passage_embed.assert_called_once_with(["def a(): ...", "def b(): ..."], batch_size=8)

    @pytest.mark.asyncio
    async def test_empty_input_skips_the_model(self, mocker):
        client = mocker.MagicMock()

        assert await FastEmbedProvider(client=client).get_embeddings([]) == []
        client.passage_embed.assert_not_called()

    def test_client_created_once_with_cache_dir(self, mocker, tmp_path):
        text_embedding = mocker.patch("codeloom.providers.embedding.TextEmbedding")
        provider = FastEmbedProvider(threads=2, cache_dir=tmp_path)

        assert provider.client is provider.client
        text_embedding.assert_called_once_with(
            model_name="BAAI/bge-small-en-v1.5", threads=2, lazy_load=True, cache_dir=str(tmp_path)
        )


def _point(path: str, vector: list[float]) -> VectorPoint:
    return VectorPoint(
        id=str(uuid.uuid4()),
        vector=vector,
        payload={"file_path": normalize_path(path), "display_path": path},
    )


class TestQdrantVectorStore:
    @pytest.mark.asyncio
    async def test_client_is_created_lazily(self):
        store = QdrantVectorStore(location=":memory:")

        assert store._client is None
        assert await store.health_check()
        assert store._client is not None
        await store.close()
        assert store._client is None

    @pytest.mark.asyncio
    async def test_ensure_collection_is_idempotent(self):
        store = QdrantVectorStore()

        assert await store.ensure_collection("lib_a", 4)
        assert not await store.ensure_collection("lib_a", 4)
        await store.close()

    @pytest.mark.asyncio
    async def test_upsert_search_and_delete_by_file(self):
        store = QdrantVectorStore()
        await store.ensure_collection("lib_a", 4)
        await store.upsert(
            "lib_a",
            [
                _point("/repo/a.py", [1.0, 0.0, 0.0, 0.0]),
                _point("/repo/a.py", [0.9, 0.1, 0.0, 0.0]),
                _point("/repo/b.py", [0.0, 1.0, 0.0, 0.0]),
            ],
        )

        hits = await store.search("lib_a", [1.0, 0.0, 0.0, 0.0], limit=2)
        await store.delete_by_file("lib_a", "/repo/a.py")
        remaining = await store.search("lib_a", [1.0, 0.0, 0.0, 0.0], limit=10)

        assert all(isinstance(hit, SearchHit) for hit in hits)
        assert [hit.file_path for hit in hits] == ["/repo/a.py", "/repo/a.py"]
        assert [hit.file_path for hit in remaining] == ["/repo/b.py"]
        await store.close()

    @pytest.mark.asyncio
    async def test_delete_from_missing_collection_is_a_no_op(self):
        store = QdrantVectorStore()

        await store.delete_by_file("missing", "/repo/a.py")

        assert not await store.delete_collection("missing")
        await store.close()

    @pytest.mark.asyncio
    async def test_delete_collection(self):
        store = QdrantVectorStore()
        await store.ensure_collection("lib_a", 4)

        assert await store.delete_collection("lib_a")
        assert await store.ensure_collection("lib_a", 4)
        await store.close()

    @pytest.mark.asyncio
    async def test_injected_client_is_not_dropped_on_close(self, mocker):
        client = mocker.AsyncMock()
        store = QdrantVectorStore(client)

        await store.close()

        client.close.assert_awaited_once()
        assert store.client is client

    def test_from_settings_defaults_to_on_disk_storage(self, tmp_path):
        target = tmp_path / "qdrant"

        store = QdrantVectorStore.from_settings(VectorStoreSettings(), default_path=target)

        assert target.is_dir()
        assert store._client_options == {"path": str(target)}

    def test_from_settings_prefers_configured_location(self, tmp_path):
        store = QdrantVectorStore.from_settings(
            VectorStoreSettings(url="http://qdrant:6333"), default_path=tmp_path / "unused"
        )

        assert store._client_options["url"] == "http://qdrant:6333"
        assert not (tmp_path / "unused").exists()
