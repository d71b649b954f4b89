# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""The indexing service: wires the engine together and exposes its entry points.

`IndexingService` owns one instance of each component: task and library
repositories, the embedding provider and vector store, the batch coordinator,
the health monitor, the scheduler with its workloads, and the file watcher.
Everything a caller (the CLI, an API layer, a test) needs goes through it.
"""

from __future__ import annotations

import logging

from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Self

from codeloom.config.settings import CodeLoomSettings, get_settings
from codeloom.core.library import IndexLibrary, WatchConfiguration
from codeloom.core.tasks import Task, TaskPriority, TaskStatus, TaskType
from codeloom.engine.embedding import EmbeddingBatchCoordinator
from codeloom.engine.health import ConnectionHealthMonitor
from codeloom.engine.scheduler import TaskScheduler
from codeloom.engine.watcher import FileWatchReconciler
from codeloom.engine.workloads import IndexingWorkloads
from codeloom.exceptions import ConnectionTimeoutError, DuplicateTaskError, IndexingError
from codeloom.parsers import ParserRegistry, WholeFileParser
from codeloom.persistence.libraries import IndexLibraryRepository, JsonLibraryRepository
from codeloom.persistence.tasks import JsonTaskRepository, TaskRepository
from codeloom.providers.embedding import EmbeddingProvider, FastEmbedProvider
from codeloom.providers.vector_store import QdrantVectorStore, SearchHit, VectorStore


if TYPE_CHECKING:
    from types import TracebackType


logger = logging.getLogger(__name__)


class IndexingService:
    """Facade over the indexing engine."""

    def __init__(
        self,
        settings: CodeLoomSettings | None = None,
        *,
        embedding_provider: EmbeddingProvider | None = None,
        vector_store: VectorStore | None = None,
        parsers: ParserRegistry | None = None,
        task_repository: TaskRepository | None = None,
        library_repository: IndexLibraryRepository | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        concurrency = self.settings.concurrency
        self.tasks = task_repository or JsonTaskRepository(self.settings.tasks_dir)
        self.libraries = library_repository or JsonLibraryRepository(self.settings.libraries_dir)
        self.provider = embedding_provider or FastEmbedProvider(
            self.settings.embedding.model_name,
            max_batch_size=self.settings.embedding.max_batch_size,
            max_token_length=self.settings.embedding.max_token_length,
            threads=self.settings.embedding.threads,
            cache_dir=self.settings.models_dir,
        )
        self.store = vector_store or QdrantVectorStore.from_settings(
            self.settings.vector_store, default_path=self.settings.vectors_dir
        )
        self.parsers = parsers or ParserRegistry([
            WholeFileParser(max_lines=self.settings.parser.max_lines_per_snippet)
        ])
        self.coordinator = EmbeddingBatchCoordinator(self.provider, concurrency)
        self.monitor = ConnectionHealthMonitor(
            self.store,
            check_interval=self.settings.health.check_interval,
            probe_timeout=self.settings.health.probe_timeout,
            default_wait_timeout=self.settings.health.wait_timeout,
        )
        exclude_roots = (self.settings.data_dir,)
        self.workloads = IndexingWorkloads(
            libraries=self.libraries,
            store=self.store,
            coordinator=self.coordinator,
            parsers=self.parsers,
            monitor=self.monitor,
            settings=concurrency,
            wait_timeout=self.settings.health.wait_timeout,
            exclude_roots=exclude_roots,
        )
        self.scheduler = TaskScheduler(
            self.tasks,
            self.workloads.handlers(),
            max_queued_tasks=concurrency.max_queued_tasks,
            max_concurrent_tasks=concurrency.max_concurrent_tasks,
            task_retention=timedelta(days=self.settings.scheduler.task_retention_days),
            cleanup_interval=self.settings.scheduler.cleanup_interval,
        )
        self.reconciler = FileWatchReconciler(
            self.libraries,
            self._on_file_change,
            debounce_delay=self.settings.watcher.debounce_delay,
            refresh_interval=self.settings.watcher.refresh_interval,
            restart_delay=self.settings.watcher.restart_delay,
            exclude_roots=exclude_roots,
        )
        self._started = False
        self._watching = False

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.stop()

    async def start(self, *, watch: bool | None = None) -> list[str]:
        """Start monitoring, workers and (optionally) file watching.

        Returns:
            Ids of tasks recovered from a previous run.
        """
        if self._started:
            return []
        await self.monitor.start()
        recovered = await self.scheduler.start()
        if self.settings.watcher.enabled if watch is None else watch:
            await self.reconciler.start()
            self._watching = True
        self._started = True
        logger.info("Indexing service started")
        return recovered

    async def stop(self) -> None:
        if not self._started:
            return
        if self._watching:
            await self.reconciler.stop()
            self._watching = False
        await self.scheduler.stop()
        await self.monitor.stop()
        await self.store.close()
        self._started = False
        logger.info("Indexing service stopped")

    # ------------------------------------------------------------------
    # libraries
    # ------------------------------------------------------------------

    async def add_library(
        self, path: Path, *, name: str | None = None, watch: WatchConfiguration | None = None
    ) -> IndexLibrary:
        """Register a directory for indexing. Returns the existing library if already registered."""
        root = path.expanduser().resolve()
        if not root.is_dir():
            raise IndexingError(
                "Library path is not a directory", details={"file_path": str(root)}
            )
        if existing := await self.libraries.get_by_path(root):
            return existing
        library = IndexLibrary(
            name=name or root.name, codebase_path=root, watch=watch or WatchConfiguration()
        )
        await self.libraries.create(library)
        if self._watching:
            await self.reconciler.create_watcher(library)
        return library

    async def remove_library(self, library_id: str) -> bool:
        """Stop watching, cancel queued work, drop the collection and the library."""
        library = await self.libraries.require(library_id)
        await self.reconciler.stop_watcher(library_id)
        for task in await self.tasks.get_in_flight_for_library(library_id):
            await self.scheduler.cancel(task.id)
        await self.store.delete_collection(library.collection_name)
        return await self.libraries.delete(library_id)

    async def list_libraries(self) -> list[IndexLibrary]:
        return await self.libraries.list_all()

    # ------------------------------------------------------------------
    # tasks
    # ------------------------------------------------------------------

    async def queue_indexing_task(
        self, library_id: str, priority: TaskPriority = TaskPriority.NORMAL
    ) -> str:
        """Queue an incremental (re)index of a library.

        Raises:
            DuplicateTaskError: An indexing task for this library is already queued or running.
        """
        library = await self.libraries.require(library_id)
        if in_flight := await self.tasks.get_in_flight_for_library(library_id, TaskType.INDEXING):
            raise DuplicateTaskError(
                "An indexing task for this library is already in progress",
                details={"library_id": library_id, "task_id": in_flight[0].id},
            )
        task = Task(
            type=TaskType.INDEXING,
            library_id=library.id,
            priority=priority,
            current_file=f"Queued indexing of {library.name}",
        )
        return await self.scheduler.enqueue(task)

    async def queue_file_update_task(self, library_id: str, path: Path | str) -> str:
        return await self._queue_file_task(TaskType.FILE_UPDATE, library_id, Path(path))

    async def queue_file_delete_task(self, library_id: str, path: Path | str) -> str:
        return await self._queue_file_task(TaskType.FILE_DELETE, library_id, Path(path))

    async def _queue_file_task(self, task_type: TaskType, library_id: str, path: Path) -> str:
        library = await self.libraries.require(library_id)
        file_path = str(path if path.is_absolute() else library.codebase_path / path)
        for task in await self.tasks.get_in_flight_for_library(library_id, task_type):
            # coalesce into the pending task for the same file
            if task.status is TaskStatus.PENDING and task.file_path == file_path:
                logger.debug("Coalesced %s for %s into task %s", task_type, file_path, task.id)
                return task.id
        task = Task(type=task_type, library_id=library.id, file_path=file_path)
        return await self.scheduler.enqueue(task)

    async def _on_file_change(self, library_id: str, task_type: TaskType, path: Path) -> None:
        if task_type is TaskType.FILE_DELETE:
            await self.queue_file_delete_task(library_id, path)
        else:
            await self.queue_file_update_task(library_id, path)

    async def get_task(self, task_id: str) -> Task | None:
        return await self.scheduler.get_task(task_id)

    async def cancel_task(self, task_id: str) -> bool:
        return await self.scheduler.cancel(task_id)

    async def list_tasks(self, status: TaskStatus | None = None) -> list[Task]:
        return await self.scheduler.list_tasks(status)

    # ------------------------------------------------------------------
    # watchers
    # ------------------------------------------------------------------

    async def create_watcher(self, library: IndexLibrary) -> bool:
        return await self.reconciler.create_watcher(library)

    async def stop_watcher(self, library_id: str) -> bool:
        return await self.reconciler.stop_watcher(library_id)

    async def refresh_watchers(self) -> dict[str, list[str]]:
        return await self.reconciler.refresh_watchers()

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    async def search(self, library_id: str, query: str, limit: int = 10) -> list[SearchHit]:
        library = await self.libraries.require(library_id)
        if not self.monitor.is_connected and not await self.monitor.force_check():
            raise ConnectionTimeoutError(
                "Vector store is not reachable", details={"library_id": library_id}
            )
        [vector] = await self.coordinator.embed([query])
        return await self.store.search(library.collection_name, vector, limit)

    async def status(self) -> dict[str, Any]:
        return {
            "tasks": await self.scheduler.statistics(),
            "connection": self.monitor.statistics(),
            "embedding": self.coordinator.statistics.model_dump(mode="json"),
            "watched_libraries": self.reconciler.watched_library_ids,
        }


__all__ = ("IndexingService",)
