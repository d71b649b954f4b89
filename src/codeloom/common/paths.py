# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""Path helpers shared by discovery, diffing and the file watcher.

Index bookkeeping compares paths through `normalize_path`, so a file enumerated
by discovery and the one stored in a `FileIndexRecord` resolve to the same key.
The watcher's debounce timers key on the absolute path instead, which keeps
case-distinct files apart.
"""

from __future__ import annotations

import hashlib
import os
import sys

from collections.abc import Iterable
from fnmatch import fnmatch
from functools import cache
from pathlib import Path
from uuid import UUID


if sys.version_info < (3, 14):
    from uuid_extensions import uuid7 as uuid7_gen
else:
    from uuid import uuid7 as uuid7_gen


COLLECTION_PREFIX = "code_index_"
_GLOB_CHARS = frozenset("*?[")


def uuid7() -> UUID:
    """Generate a new UUID7."""
    return uuid7_gen()


def new_id() -> str:
    """Return a new time-ordered identifier as a hex string."""
    return uuid7().hex


def normalize_path(path: str | os.PathLike[str]) -> str:
    """Return the comparison key for a path: absolute, forward slashes, lower case.

    Symlinks are not resolved, so a path that no longer exists normalises the
    same way it did while it existed.
    """
    absolute = os.path.normpath(os.path.abspath(os.path.expanduser(os.fspath(path))))
    return absolute.replace("\\", "/").lower()


def collection_name_for(path: str | os.PathLike[str]) -> str:
    """Derive a stable vector store collection name from a library root."""
    digest = hashlib.sha256(normalize_path(path).encode("utf-8")).hexdigest()
    return f"{COLLECTION_PREFIX}{digest[:8]}"


def is_excluded_path(
    path: str | os.PathLike[str],
    exclude_patterns: Iterable[str],
    root: str | os.PathLike[str] | None = None,
) -> bool:
    """Check a path against exclude patterns.

    Plain patterns (``node_modules``, ``build/generated``) are substring
    matches against the normalized path, so they also catch any containing
    directory: ``bin`` excludes ``bin/tool.sh`` as well as ``binary.py``.
    Patterns with glob characters (``*.min.js``) are matched against the file
    name and the full path.

    When `root` is given, only the part of the path below `root` is matched,
    so a library living under e.g. ``~/bin/`` is not excluded wholesale.
    """
    normalized = normalize_path(path)
    if root is not None and is_relative_to(normalized, root):
        normalized = normalized[len(normalize_path(root).rstrip("/")) :].lstrip("/")
        if not normalized:
            return False
    name = normalized.rsplit("/", 1)[-1]
    for raw_pattern in exclude_patterns:
        pattern = raw_pattern.strip().replace("\\", "/").lower().strip("/")
        if not pattern:
            continue
        if _GLOB_CHARS.intersection(pattern):
            if fnmatch(name, pattern) or fnmatch(normalized, pattern):
                return True
        elif pattern in normalized:
            return True
    return False


def matches_file_patterns(path: str | os.PathLike[str], file_patterns: Iterable[str]) -> bool:
    """Check whether a file name ends with one of the include suffixes.

    An empty pattern list matches everything. Leading ``*`` wildcards are
    ignored, so ``*.py`` and ``.py`` are equivalent.
    """
    suffixes = [p.strip().lstrip("*").lower() for p in file_patterns if p.strip().lstrip("*")]
    if not suffixes:
        return True
    name = Path(path).name.lower()
    return any(name.endswith(suffix) for suffix in suffixes)


def is_relative_to(path: str | os.PathLike[str], root: str | os.PathLike[str]) -> bool:
    """Normalized containment check that works for paths that no longer exist."""
    normalized = normalize_path(path)
    normalized_root = normalize_path(root).rstrip("/")
    return normalized == normalized_root or normalized.startswith(f"{normalized_root}/")


@cache
def get_user_data_dir() -> Path:
    """Get the per-user data directory based on the operating system."""
    import platform

    if (system := platform.system()) == "Windows":
        base = Path(os.getenv("APPDATA", Path("~\\AppData\\Roaming").expanduser()))
    elif system == "Darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.getenv("XDG_DATA_HOME", Path.home() / ".local" / "share"))
    return base / "codeloom"


__all__ = (
    "COLLECTION_PREFIX",
    "collection_name_for",
    "get_user_data_dir",
    "is_excluded_path",
    "is_relative_to",
    "matches_file_patterns",
    "new_id",
    "normalize_path",
    "uuid7",
)
