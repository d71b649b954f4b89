# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""Task workloads: full (incremental) indexing, single-file update, single-file delete.

Every step is idempotent at the granularity of one file: vectors get
deterministic ids and a file's old vectors are removed before its new ones are
written, so re-running a step after a crash converges on the same index.
Record changes are applied to a freshly loaded library under a per-library
lock, so an indexing run and watcher-triggered updates for the same library
never overwrite each other's records.
"""

from __future__ import annotations

import asyncio
import logging
import time

from collections.abc import Callable, Iterable
from pathlib import Path
from typing import TYPE_CHECKING, Any

from codeloom.common.paths import normalize_path
from codeloom.core.library import FileIndexRecord, IndexLibrary, LibraryStatistics, LibraryStatus
from codeloom.core.models import utc_now
from codeloom.core.tasks import TaskType
from codeloom.engine.differ import diff_files
from codeloom.engine.discovery import discover_files, is_indexable
from codeloom.exceptions import ConnectionTimeoutError, IndexingError, TaskCancelledError
from codeloom.providers.vector_store import VectorPoint


if TYPE_CHECKING:
    from codeloom.config.concurrency import ConcurrencySettings
    from codeloom.engine.embedding import EmbeddingBatchCoordinator
    from codeloom.engine.health import ConnectionHealthMonitor
    from codeloom.engine.scheduler import TaskContext, Workload
    from codeloom.parsers import ParserRegistry
    from codeloom.persistence.libraries import IndexLibraryRepository
    from codeloom.providers.vector_store import VectorStore


logger = logging.getLogger(__name__)


class IndexingWorkloads:
    """The work behind each `TaskType`."""

    def __init__(
        self,
        *,
        libraries: IndexLibraryRepository,
        store: VectorStore,
        coordinator: EmbeddingBatchCoordinator,
        parsers: ParserRegistry,
        monitor: ConnectionHealthMonitor,
        settings: ConcurrencySettings,
        wait_timeout: float = 300.0,
        exclude_roots: Iterable[Path] = (),
    ) -> None:
        self.libraries = libraries
        self.store = store
        self.coordinator = coordinator
        self.parsers = parsers
        self.monitor = monitor
        self.settings = settings
        self.wait_timeout = wait_timeout
        self.exclude_roots = tuple(exclude_roots)
        self._library_locks: dict[str, asyncio.Lock] = {}

    def handlers(self) -> dict[TaskType, Workload]:
        return {
            TaskType.INDEXING: self.run_indexing,
            TaskType.FILE_UPDATE: self.run_file_update,
            TaskType.FILE_DELETE: self.run_file_delete,
        }

    # ------------------------------------------------------------------
    # shared steps
    # ------------------------------------------------------------------

    def _lock_for(self, library_id: str) -> asyncio.Lock:
        return self._library_locks.setdefault(library_id, asyncio.Lock())

    async def _require_library(self, library_id: str | None) -> IndexLibrary:
        if library_id is None:
            raise IndexingError("Task has no library")
        return await self.libraries.require(library_id)

    async def _connected(self, ctx: TaskContext) -> None:
        """Park until the vector store is reachable, or fail the task on timeout."""
        if await self.monitor.wait_for_connection(
            ctx.task.id, timeout=self.wait_timeout, cancel_token=ctx.token
        ):
            return
        raise ConnectionTimeoutError(
            "Timed out waiting for vector store connection",
            details={"task_id": ctx.task.id, "timeout_seconds": self.wait_timeout},
            suggestions=["Check that the vector store is running and reachable"],
        )

    async def _commit(
        self,
        library_id: str,
        *,
        upserts: Iterable[FileIndexRecord] = (),
        removals: Iterable[str] = (),
        mutate: Callable[[IndexLibrary], None] | None = None,
    ) -> IndexLibrary:
        async with self._lock_for(library_id):
            library = await self.libraries.require(library_id)
            for record in upserts:
                library.records[record.normalized_path] = record
            for key in removals:
                library.records.pop(key, None)
            if mutate is not None:
                mutate(library)
            library.total_files = len(library.records)
            library.indexed_snippets = sum(r.snippet_count for r in library.records.values())
            return await self.libraries.update(library)

    async def _index_file(
        self, library: IndexLibrary, path: Path, ctx: TaskContext
    ) -> FileIndexRecord | None:
        """Parse, embed and store one file. Returns None if the file vanished."""
        try:
            snippets = await asyncio.to_thread(self.parsers.parse, path)
        except FileNotFoundError:
            return None
        ctx.token.raise_if_cancelled()
        result = await self.coordinator.embed_with_report(
            [snippet.embedding_text() for snippet in snippets], cancel_token=ctx.token
        )
        points = [
            VectorPoint(
                id=snippet.point_id(library.id),
                vector=vector,
                payload=snippet.to_payload(
                    library_id=library.id, degraded=index in result.degraded_indices
                ),
            )
            for index, (snippet, vector) in enumerate(zip(snippets, result.vectors, strict=True))
        ]
        await self._connected(ctx)
        await self.store.delete_by_file(library.collection_name, str(path))
        await self.store.upsert(library.collection_name, points)
        return FileIndexRecord.for_file(
            path, library.codebase_path, snippet_count=len(points), degraded=result.degraded
        )

    # ------------------------------------------------------------------
    # workloads
    # ------------------------------------------------------------------

    async def run_indexing(self, ctx: TaskContext) -> dict[str, Any]:
        """Bring a library's index in line with its files, touching only what changed."""
        library = await self._require_library(ctx.task.library_id)
        root = library.codebase_path
        if not root.is_dir():
            await self._commit(library.id, mutate=_set_status(LibraryStatus.FAILED))
            raise IndexingError(
                "Library root directory does not exist",
                details={"library_id": library.id, "file_path": str(root)},
            )
        await self._commit(library.id, mutate=_set_status(LibraryStatus.INDEXING))
        started = time.perf_counter()
        try:
            stats = await self._run_indexing(library, ctx)
        except TaskCancelledError:
            await self._commit(library.id, mutate=_set_status(LibraryStatus.CANCELLED))
            raise
        except Exception:
            await self._commit(library.id, mutate=_set_status(LibraryStatus.FAILED))
            raise
        stats.duration_seconds = round(time.perf_counter() - started, 3)

        def _finish(lib: IndexLibrary) -> None:
            lib.status = LibraryStatus.COMPLETED
            lib.statistics = stats
            lib.last_indexed_at = utc_now()

        await self._commit(library.id, mutate=_finish)
        logger.info(
            "Indexed library %s: %d new, %d modified, %d deleted, %d unchanged in %.2fs",
            library.name,
            stats.files_new,
            stats.files_modified,
            stats.files_deleted,
            stats.files_unchanged,
            stats.duration_seconds,
        )
        return stats.model_dump(mode="json")

    async def _run_indexing(self, library: IndexLibrary, ctx: TaskContext) -> LibraryStatistics:
        await ctx.report(1, "Enumerating files")
        files = await asyncio.to_thread(
            discover_files, library.codebase_path, library.watch, exclude_roots=self.exclude_roots
        )
        diff = diff_files(files, library.records)
        stats = LibraryStatistics(
            files_new=len(diff.new),
            files_modified=len(diff.modified),
            files_deleted=len(diff.deleted),
            files_unchanged=len(diff.unchanged),
        )
        await ctx.report(
            5, f"{len(diff.to_process)} files to index, {len(diff.deleted)} to remove"
        )
        await self._connected(ctx)
        await self.store.ensure_collection(library.collection_name, self.coordinator.provider.dimension)

        for record in diff.deleted:
            ctx.token.raise_if_cancelled()
            await self._connected(ctx)
            await self.store.delete_by_file(library.collection_name, record.normalized_path)
        if diff.deleted:
            await self._commit(library.id, removals=[r.normalized_path for r in diff.deleted])

        to_process = diff.to_process
        total = len(to_process)
        group_size = self.settings.max_concurrent_file_batches
        for group_start in range(0, total, group_size):
            upserts: list[FileIndexRecord] = []
            vanished: list[str] = []
            for offset, path in enumerate(to_process[group_start : group_start + group_size]):
                ctx.token.raise_if_cancelled()
                done = group_start + offset
                await ctx.report(5 + (90 * done) // total, _display(path, library.codebase_path))
                try:
                    record = await self._index_file(library, path, ctx)
                except OSError:
                    logger.warning("Could not index %s", path, exc_info=True)
                    stats.files_failed += 1
                    continue
                if record is None:
                    vanished.append(normalize_path(path))
                    await self._connected(ctx)
                    await self.store.delete_by_file(library.collection_name, str(path))
                    continue
                upserts.append(record)
                stats.snippets_indexed += record.snippet_count
                stats.degraded_files += int(record.degraded)
            await self._commit(library.id, upserts=upserts, removals=vanished)
        await ctx.report(99, "Finalizing")
        return stats

    async def run_file_update(self, ctx: TaskContext) -> dict[str, Any]:
        """Re-index a single file after a watcher event."""
        library = await self._require_library(ctx.task.library_id)
        if not ctx.task.file_path:
            raise IndexingError("File update task has no file path", details={"task_id": ctx.task.id})
        path = Path(ctx.task.file_path)
        if not path.exists():
            logger.debug("Skipping update for %s, file no longer exists", path)
            return {"skipped": True, "reason": "file no longer exists"}
        if not is_indexable(
            path, library.watch, root=library.codebase_path, exclude_roots=self.exclude_roots
        ):
            return {"skipped": True, "reason": "file is filtered out"}
        await ctx.report(10, _display(path, library.codebase_path))
        await self._connected(ctx)
        await self.store.ensure_collection(library.collection_name, self.coordinator.provider.dimension)
        record = await self._index_file(library, path, ctx)
        if record is None:
            return {"skipped": True, "reason": "file no longer exists"}
        await self._commit(library.id, upserts=[record])
        return {"snippets": record.snippet_count, "degraded": record.degraded}

    async def run_file_delete(self, ctx: TaskContext) -> dict[str, Any]:
        """Remove a deleted file's vectors and record.

        A deleted directory removes every record below it.
        """
        library = await self._require_library(ctx.task.library_id)
        if not ctx.task.file_path:
            raise IndexingError("File delete task has no file path", details={"task_id": ctx.task.id})
        await ctx.report(10, _display(Path(ctx.task.file_path), library.codebase_path))
        key = normalize_path(ctx.task.file_path)
        keys = [key, *(k for k in library.records if k.startswith(f"{key}/"))]
        for record_key in keys:
            ctx.token.raise_if_cancelled()
            await self._connected(ctx)
            await self.store.delete_by_file(library.collection_name, record_key)
        removed = [k for k in keys if k in library.records]
        await self._commit(library.id, removals=keys)
        return {"removed_records": len(removed)}


def _set_status(status: LibraryStatus) -> Callable[[IndexLibrary], None]:
    def _apply(library: IndexLibrary) -> None:
        library.status = status

    return _apply


def _display(path: Path, root: Path) -> str:
    try:
        return path.relative_to(root).as_posix()
    except ValueError:
        return str(path)


__all__ = ("IndexingWorkloads",)
