# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""Enumerate the indexable files of a library."""

from __future__ import annotations

import logging

from collections.abc import Iterable, Iterator
from pathlib import Path

import rignore

from codeloom.common.paths import is_excluded_path, is_relative_to, matches_file_patterns
from codeloom.core.library import WatchConfiguration
from codeloom.exceptions import IndexingError


logger = logging.getLogger(__name__)


def is_indexable(
    path: Path,
    watch: WatchConfiguration,
    *,
    root: Path | None = None,
    exclude_roots: Iterable[Path] = (),
) -> bool:
    """Whether an existing file passes the library's filters."""
    if is_excluded_path(path, watch.exclude_patterns, root):
        return False
    if any(is_relative_to(path, excluded) for excluded in exclude_roots):
        return False
    if not matches_file_patterns(path, watch.file_patterns):
        return False
    try:
        size = path.stat().st_size
    except OSError:
        return False
    if size > watch.max_file_size:
        logger.debug("Skipping %s: %d bytes exceeds max file size", path, size)
        return False
    return path.is_file()


def iter_library_files(
    root: Path, watch: WatchConfiguration, *, exclude_roots: Iterable[Path] = ()
) -> Iterator[Path]:
    """Walk `root` with rignore, pruning excluded entries, yielding indexable files.

    Ignore files (`.gitignore` and friends) are not consulted: the watcher
    classifies events with the same exclude patterns, so both agree on what
    belongs to a library.
    """
    excluded_roots = tuple(exclude_roots)

    def should_exclude(entry: Path) -> bool:
        return is_excluded_path(entry, watch.exclude_patterns, root) or any(
            is_relative_to(entry, excluded) for excluded in excluded_roots
        )

    try:
        walker = rignore.walk(
            root,
            ignore_hidden=False,
            read_ignore_files=False,
            read_parents_ignores=False,
            read_git_ignore=False,
            read_global_git_ignore=False,
            read_git_exclude=False,
            max_depth=None if watch.include_subdirectories else 1,
            max_filesize=watch.max_file_size,
            should_exclude_entry=should_exclude,
        )
        paths = sorted(Path(entry) for entry in walker)
    except Exception as e:
        raise IndexingError(
            f"Failed to discover files in {root}",
            details={"file_path": str(root), "error": str(e)},
            suggestions=["Check that the library root exists and is readable"],
        ) from e
    for path in paths:
        if is_indexable(path, watch, root=root, exclude_roots=excluded_roots):
            yield path


def discover_files(
    root: Path, watch: WatchConfiguration, *, exclude_roots: Iterable[Path] = ()
) -> list[Path]:
    return list(iter_library_files(root, watch, exclude_roots=exclude_roots))


__all__ = ("discover_files", "is_indexable", "iter_library_files")
