# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""Capabilities consumed by the indexing engine: embeddings and vector storage."""

from codeloom.providers.embedding import EmbeddingProvider, FastEmbedProvider
from codeloom.providers.vector_store import QdrantVectorStore, SearchHit, VectorPoint, VectorStore


__all__ = (
    "EmbeddingProvider",
    "FastEmbedProvider",
    "QdrantVectorStore",
    "SearchHit",
    "VectorPoint",
    "VectorStore",
)
