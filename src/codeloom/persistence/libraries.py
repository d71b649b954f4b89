# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""Storage for indexed libraries and their per-file records."""

from __future__ import annotations

import asyncio
import logging
import os

from abc import ABC, abstractmethod
from pathlib import Path

from pydantic_core import from_json

from codeloom.common.paths import normalize_path
from codeloom.core.library import IndexLibrary
from codeloom.exceptions import LibraryNotFoundError, PersistenceError


logger = logging.getLogger(__name__)


class IndexLibraryRepository(ABC):
    """Abstract library storage."""

    @abstractmethod
    async def create(self, library: IndexLibrary) -> IndexLibrary: ...

    @abstractmethod
    async def get(self, library_id: str) -> IndexLibrary | None: ...

    @abstractmethod
    async def update(self, library: IndexLibrary) -> IndexLibrary: ...

    @abstractmethod
    async def delete(self, library_id: str) -> bool: ...

    @abstractmethod
    async def list_all(self) -> list[IndexLibrary]: ...

    async def get_by_path(self, path: str | Path) -> IndexLibrary | None:
        key = normalize_path(path)
        return next((lib for lib in await self.list_all() if lib.normalized_path == key), None)

    async def list_eligible(self) -> list[IndexLibrary]:
        """Libraries that should currently have a file watcher."""
        return [lib for lib in await self.list_all() if lib.is_eligible_for_watching]

    async def require(self, library_id: str) -> IndexLibrary:
        if (library := await self.get(library_id)) is None:
            raise LibraryNotFoundError(
                "Library not found", details={"library_id": library_id}
            )
        return library


class InMemoryLibraryRepository(IndexLibraryRepository):
    """Process-local library storage."""

    def __init__(self) -> None:
        self._libraries: dict[str, IndexLibrary] = {}

    async def create(self, library: IndexLibrary) -> IndexLibrary:
        self._libraries[library.id] = library.model_copy(deep=True)
        return library

    async def get(self, library_id: str) -> IndexLibrary | None:
        library = self._libraries.get(library_id)
        return library.model_copy(deep=True) if library else None

    async def update(self, library: IndexLibrary) -> IndexLibrary:
        if library.id not in self._libraries:
            raise LibraryNotFoundError(
                "Cannot update unknown library", details={"library_id": library.id}
            )
        library.touch()
        self._libraries[library.id] = library.model_copy(deep=True)
        return library

    async def delete(self, library_id: str) -> bool:
        return self._libraries.pop(library_id, None) is not None

    async def list_all(self) -> list[IndexLibrary]:
        return [library.model_copy(deep=True) for library in self._libraries.values()]


class JsonLibraryRepository(IndexLibraryRepository):
    """One JSON document per library, records included."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory.resolve()
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _path_for(self, library_id: str) -> Path:
        return self.directory / f"{library_id}.json"

    def _write(self, library: IndexLibrary) -> None:
        target = self._path_for(library.id)
        temp = target.with_suffix(".json.tmp")
        try:
            _ = temp.write_text(library.model_dump_json(indent=2), encoding="utf-8")
            os.replace(temp, target)
        except OSError as e:
            raise PersistenceError(
                "Failed to persist library", details={"library_id": library.id, "error": str(e)}
            ) from e

    def _read(self, path: Path) -> IndexLibrary | None:
        try:
            return IndexLibrary.model_validate(from_json(path.read_bytes()))
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            logger.warning("Ignoring unreadable library file %s", path)
            return None

    async def create(self, library: IndexLibrary) -> IndexLibrary:
        async with self._lock:
            self._write(library)
        logger.info("Registered library %s at %s", library.name, library.codebase_path)
        return library

    async def get(self, library_id: str) -> IndexLibrary | None:
        return self._read(self._path_for(library_id))

    async def update(self, library: IndexLibrary) -> IndexLibrary:
        async with self._lock:
            if not self._path_for(library.id).exists():
                raise LibraryNotFoundError(
                    "Cannot update unknown library", details={"library_id": library.id}
                )
            library.touch()
            self._write(library)
        return library

    async def delete(self, library_id: str) -> bool:
        async with self._lock:
            try:
                self._path_for(library_id).unlink()
            except FileNotFoundError:
                return False
        logger.info("Deleted library %s", library_id)
        return True

    async def list_all(self) -> list[IndexLibrary]:
        return [
            library
            for path in sorted(self.directory.glob("*.json"))
            if (library := self._read(path)) is not None
        ]


__all__ = ("InMemoryLibraryRepository", "IndexLibraryRepository", "JsonLibraryRepository")
