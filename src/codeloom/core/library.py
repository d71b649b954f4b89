# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""Indexed libraries, their watch configuration, and per-file index records."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Annotated

from pydantic import Field, NonNegativeInt, PositiveInt, model_validator

from codeloom.common.paths import collection_name_for, new_id, normalize_path
from codeloom.core.models import BasedModel, utc_now


DEFAULT_EXCLUDE_PATTERNS: tuple[str, ...] = (
    ".git",
    "node_modules",
    "__pycache__",
    ".venv",
    "bin",
    "obj",
)

DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024


class LibraryStatus(StrEnum):
    """Indexing state of a library."""

    PENDING = "pending"
    INDEXING = "indexing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WatchConfiguration(BasedModel):
    """Which files of a library are indexed and watched."""

    file_patterns: list[str] = Field(default_factory=list)
    """Suffix patterns such as `.py` or `*.py`. Empty means every file."""
    exclude_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS))
    include_subdirectories: bool = True
    enabled: bool = True
    max_file_size: PositiveInt = DEFAULT_MAX_FILE_SIZE


class FileIndexRecord(BasedModel):
    """Index bookkeeping for one file of a library."""

    relative_path: str
    normalized_path: str
    last_indexed_at: datetime = Field(default_factory=utc_now)
    content_hash: str | None = None
    """Reserved for content-based change detection; stored but not consulted."""
    snippet_count: NonNegativeInt = 0
    degraded: bool = False
    """True when at least one of the file's vectors is a fallback zero-vector."""

    @classmethod
    def for_file(
        cls,
        path: Path,
        root: Path,
        *,
        snippet_count: int = 0,
        content_hash: str | None = None,
        degraded: bool = False,
    ) -> FileIndexRecord:
        """Create a record for an absolute file path under `root`."""
        try:
            relative = path.relative_to(root).as_posix()
        except ValueError:
            relative = path.as_posix()
        return cls(
            relative_path=relative,
            normalized_path=normalize_path(path),
            snippet_count=snippet_count,
            content_hash=content_hash,
            degraded=degraded,
        )


class LibraryStatistics(BasedModel):
    """Counters from the last indexing run."""

    files_new: NonNegativeInt = 0
    files_modified: NonNegativeInt = 0
    files_deleted: NonNegativeInt = 0
    files_unchanged: NonNegativeInt = 0
    files_failed: NonNegativeInt = 0
    snippets_indexed: NonNegativeInt = 0
    degraded_files: NonNegativeInt = 0
    duration_seconds: float = 0.0


class IndexLibrary(BasedModel):
    """A source repository registered for indexing."""

    id: Annotated[str, Field(default_factory=new_id)]
    name: str
    codebase_path: Path
    collection_name: str = ""
    status: LibraryStatus = LibraryStatus.PENDING
    watch: WatchConfiguration = Field(default_factory=WatchConfiguration)
    records: dict[str, FileIndexRecord] = Field(default_factory=dict)
    """File records keyed by normalized path."""
    statistics: LibraryStatistics = Field(default_factory=LibraryStatistics)
    last_indexed_at: datetime | None = None
    total_files: NonNegativeInt = 0
    indexed_snippets: NonNegativeInt = 0
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _fill_collection_name(self) -> IndexLibrary:
        if not self.collection_name:
            # object.__setattr__ avoids re-entering validate_assignment
            object.__setattr__(self, "collection_name", collection_name_for(self.codebase_path))
        return self

    @property
    def normalized_path(self) -> str:
        return normalize_path(self.codebase_path)

    @property
    def is_eligible_for_watching(self) -> bool:
        """Whether a file watcher should exist for this library right now."""
        return (
            self.is_active
            and self.watch.enabled
            and self.status in {LibraryStatus.COMPLETED, LibraryStatus.PENDING}
            and self.codebase_path.is_dir()
        )

    def upsert_record(self, record: FileIndexRecord) -> None:
        self.records[record.normalized_path] = record
        self.total_files = len(self.records)

    def remove_record(self, path: str | Path) -> FileIndexRecord | None:
        record = self.records.pop(normalize_path(path), None)
        self.total_files = len(self.records)
        return record

    def get_record(self, path: str | Path) -> FileIndexRecord | None:
        return self.records.get(normalize_path(path))

    def touch(self) -> None:
        self.updated_at = utc_now()


__all__ = (
    "DEFAULT_EXCLUDE_PATTERNS",
    "DEFAULT_MAX_FILE_SIZE",
    "FileIndexRecord",
    "IndexLibrary",
    "LibraryStatistics",
    "LibraryStatus",
    "WatchConfiguration",
)
