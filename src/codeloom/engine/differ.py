# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""File-granularity diff between the filesystem and a library's index records.

Given the files currently on disk and the records from the last run, every
path lands in exactly one of four buckets:

- new: on disk, no record
- modified: on disk and recorded, last write strictly after `last_indexed_at`
- unchanged: on disk and recorded, not written since it was indexed
- deleted: recorded, no longer on disk

Equal timestamps count as unchanged. Records flagged `degraded` (indexed with
fallback vectors) count as modified so the next run replaces them with real
embeddings.
"""

from __future__ import annotations

import logging

from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from pathlib import Path

from pydantic import Field

from codeloom.common.paths import normalize_path
from codeloom.core.library import FileIndexRecord
from codeloom.core.models import BasedModel


logger = logging.getLogger(__name__)


def file_mtime(path: Path) -> datetime:
    """Last write time of `path` as an aware UTC datetime."""
    return datetime.fromtimestamp(path.stat().st_mtime, tz=UTC)


class FileDiff(BasedModel):
    """Classification of a library's files against its records."""

    new: list[Path] = Field(default_factory=list)
    modified: list[Path] = Field(default_factory=list)
    unchanged: list[Path] = Field(default_factory=list)
    deleted: list[FileIndexRecord] = Field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.new or self.modified or self.deleted)

    @property
    def to_process(self) -> list[Path]:
        """Files that need parsing and embedding, new ones first."""
        return [*self.new, *self.modified]

    def to_summary(self) -> dict[str, int]:
        return {
            "new": len(self.new),
            "modified": len(self.modified),
            "unchanged": len(self.unchanged),
            "deleted": len(self.deleted),
        }


def diff_files(
    current_files: Iterable[Path],
    known_records: Mapping[str, FileIndexRecord] | Iterable[FileIndexRecord],
    *,
    mtime: Callable[[Path], datetime] = file_mtime,
) -> FileDiff:
    """Classify `current_files` against `known_records`.

    Args:
        current_files: Freshly enumerated, pattern-filtered absolute paths.
        known_records: The library's records, keyed by normalized path or as a plain iterable.
        mtime: Last-write-time lookup, injectable for tests.

    Returns:
        A `FileDiff` whose buckets partition the union of files and records.
    """
    records = (
        dict(known_records)
        if isinstance(known_records, Mapping)
        else {record.normalized_path: record for record in known_records}
    )
    diff = FileDiff()
    seen: set[str] = set()
    for path in current_files:
        key = normalize_path(path)
        if key in seen:
            continue
        seen.add(key)
        record = records.get(key)
        if record is None:
            diff.new.append(path)
            continue
        try:
            written_at = mtime(path)
        except FileNotFoundError:
            # vanished between enumeration and diff
            seen.discard(key)
            continue
        if record.degraded or written_at > record.last_indexed_at:
            diff.modified.append(path)
        else:
            diff.unchanged.append(path)
    diff.deleted = [record for key, record in records.items() if key not in seen]
    logger.debug("Diff result: %s", diff.to_summary())
    return diff


__all__ = ("FileDiff", "diff_files", "file_mtime")
