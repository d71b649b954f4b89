# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""Unified exception hierarchy for CodeLoom.

All CodeLoom exceptions inherit from `CodeLoomError`, which carries structured
details and suggestions alongside the message. Callers at component boundaries
(the task workers, the CLI) rely on that structure when recording or printing
failures.
"""

from __future__ import annotations

from typing import Any, ClassVar


class CodeLoomError(Exception):
    """Base exception for all CodeLoom errors.

    Provides structured error information including details and suggestions
    for resolution.
    """

    _detail_keys: ClassVar[tuple[str, ...]] = (
        "task_id",
        "library_id",
        "file_path",
        "attempts",
        "timeout_seconds",
        "expected",
        "actual",
    )

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        suggestions: list[str] | None = None,
    ) -> None:
        """Initialize CodeLoom error.

        Args:
            message: Human-readable error message
            details: Additional context about the error
            suggestions: Actionable suggestions for resolving the error
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.suggestions = suggestions or []

    def __str__(self) -> str:
        """Return descriptive error message with context details."""
        parts = [self.message]
        if detail_parts := [
            f"{key.replace('_', ' ')}: {self.details[key]}"
            for key in self._detail_keys
            if key in self.details
        ]:
            parts.append(f"({', '.join(detail_parts)})")
        return " ".join(parts)


class ConfigurationError(CodeLoomError):
    """Configuration and settings errors.

    Raised at construction time when settings are out of range or a provider
    is missing what it needs. Components refuse to start rather than fail
    intermittently at runtime.
    """


class ProviderError(CodeLoomError):
    """Provider integration errors.

    Raised when there are issues with embedding providers, vector stores,
    or other external service integrations.
    """


class EmbeddingError(ProviderError):
    """Embedding generation failed after all retry attempts."""


class BatchSizeMismatchError(ProviderError):
    """The embedding provider returned a different number of vectors than texts sent."""


class VectorStoreError(ProviderError):
    """A vector store operation failed."""


class ConnectionTimeoutError(CodeLoomError):
    """Timed out waiting for the vector store to become reachable again."""


class IndexingError(CodeLoomError):
    """File indexing and processing errors.

    Raised when an indexing workload cannot reach its goal, for example when
    the library's root directory no longer exists.
    """


class PersistenceError(CodeLoomError):
    """Reading or writing a persisted task or library failed."""


class LibraryNotFoundError(CodeLoomError):
    """The referenced library does not exist."""


class TaskError(CodeLoomError):
    """Base class for task lifecycle errors."""


class TaskStateError(TaskError):
    """An invalid task state transition was requested."""


class TaskCancelledError(TaskError):
    """Raised at a cancellation checkpoint when a task has been asked to stop."""


class TaskNotFoundError(TaskError):
    """The referenced task does not exist."""


class DuplicateTaskError(TaskError):
    """An equivalent task is already queued or running."""


__all__ = (
    "BatchSizeMismatchError",
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
    "TaskError",
    "TaskNotFoundError",
    "TaskStateError",
    "VectorStoreError",
)
