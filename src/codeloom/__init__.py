# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""CodeLoom: background indexing orchestration for semantic code search."""

from codeloom.exceptions import (
    CodeLoomError,
    ConfigurationError,
    ConnectionTimeoutError,
    DuplicateTaskError,
    EmbeddingError,
    IndexingError,
    LibraryNotFoundError,
    PersistenceError,
    ProviderError,
    TaskCancelledError,
    TaskNotFoundError,
    VectorStoreError,
)


__version__ = "0.1.0"


__all__ = (
    "CodeLoomError",
    "ConfigurationError",
    "ConnectionTimeoutError",
    "DuplicateTaskError",
    "EmbeddingError",
    "IndexingError",
    "LibraryNotFoundError",
    "PersistenceError",
    "ProviderError",
    "TaskCancelledError",
    "TaskNotFoundError",
    "VectorStoreError",
    "__version__",
)
