# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""Filesystem watching with per-path debounce and periodic watcher reconciliation.

`FileWatchReconciler` runs one `watchfiles.awatch` loop per eligible library.
Every raw event for a path (re)starts that path's single-shot timer; when a
timer fires without further events the reconciler looks at the path as it is
now and decides:

- excluded by pattern, or inside the service's own data directory: ignore
- exists and matches the library's include suffixes: queue a file update
- no longer exists: queue a file delete

watchfiles reports a rename as a delete of the old path plus an add of the new
one, which yields two independent timers and so two independent decisions.

The set of watchers is reconciled against the libraries eligible for watching
on a fixed interval, so libraries added, removed or edited elsewhere are picked
up without any direct coupling.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os

from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import watchfiles

from codeloom.common.paths import (
    is_excluded_path,
    is_relative_to,
    matches_file_patterns,
)
from codeloom.core.library import IndexLibrary
from codeloom.core.tasks import TaskType
from codeloom.persistence.libraries import IndexLibraryRepository


logger = logging.getLogger(__name__)

type ChangeSink = Callable[[str, TaskType, Path], Awaitable[Any]]
type WatchFactory = Callable[..., AsyncIterator[set[tuple[watchfiles.Change, str]]]]


@dataclass
class LibraryWatcher:
    """A running watch loop for one library."""

    library: IndexLibrary
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None

    @property
    def root(self) -> Path:
        return self.library.codebase_path


class FileWatchReconciler:
    """Owns the library watchers and the per-path debounce timers."""

    def __init__(
        self,
        libraries: IndexLibraryRepository,
        on_change: ChangeSink,
        *,
        debounce_delay: float = 0.5,
        refresh_interval: float = 300.0,
        restart_delay: float = 5.0,
        exclude_roots: Iterable[Path] = (),
        watch_factory: WatchFactory = watchfiles.awatch,
    ) -> None:
        self.libraries = libraries
        self._on_change = on_change
        self.debounce_delay = debounce_delay
        self.refresh_interval = refresh_interval
        self.restart_delay = restart_delay
        self.exclude_roots = tuple(exclude_roots)
        self._watch_factory = watch_factory
        self._watchers: dict[str, LibraryWatcher] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._pending: dict[str, tuple[str, Path]] = {}
        self._dispatches: set[asyncio.Task[None]] = set()
        self._refresh_task: asyncio.Task[None] | None = None

    @property
    def watched_library_ids(self) -> list[str]:
        return list(self._watchers)

    @property
    def pending_paths(self) -> list[Path]:
        return [path for _, path in self._pending.values()]

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.refresh_watchers()
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(
                self._refresh_loop(), name="watcher_reconciliation"
            )

    async def stop(self) -> None:
        if self._refresh_task:
            self._refresh_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._refresh_task
            self._refresh_task = None
        for library_id in list(self._watchers):
            await self.stop_watcher(library_id)
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._pending.clear()
        if self._dispatches:
            await asyncio.gather(*self._dispatches, return_exceptions=True)

    async def _refresh_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.refresh_interval)
                await self.refresh_watchers()
            except asyncio.CancelledError:
                logger.debug("Watcher reconciliation task cancelled")
                break
            except Exception:
                logger.exception("Error reconciling file watchers")

    async def refresh_watchers(self) -> dict[str, list[str]]:
        """Stop watchers for ineligible libraries and create watchers for new eligible ones."""
        eligible = {library.id: library for library in await self.libraries.list_eligible()}
        stopped: list[str] = []
        created: list[str] = []
        for library_id, watcher in list(self._watchers.items()):
            library = eligible.get(library_id)
            if (
                library is None
                or library.normalized_path != watcher.library.normalized_path
                or library.watch.include_subdirectories
                != watcher.library.watch.include_subdirectories
            ):
                await self.stop_watcher(library_id)
                stopped.append(library_id)
            else:
                watcher.library = library
        for library_id, library in eligible.items():
            if library_id not in self._watchers and await self.create_watcher(library):
                created.append(library_id)
        if stopped or created:
            logger.info(
                "Reconciled watchers: %d created, %d stopped, %d active",
                len(created),
                len(stopped),
                len(self._watchers),
            )
        return {"created": created, "stopped": stopped, "active": list(self._watchers)}

    async def create_watcher(self, library: IndexLibrary) -> bool:
        """Start watching `library`. Returns False if it is ineligible or already watched."""
        if library.id in self._watchers:
            return False
        if not library.is_eligible_for_watching:
            logger.debug("Library %s is not eligible for watching", library.id)
            return False
        watcher = LibraryWatcher(library=library)
        watcher.task = asyncio.create_task(
            self._watch_library(watcher), name=f"file_watcher_{library.id}"
        )
        self._watchers[library.id] = watcher
        logger.info("Watching library %s at %s", library.name, library.codebase_path)
        return True

    async def stop_watcher(self, library_id: str) -> bool:
        """Stop and dispose the watcher for `library_id`, dropping its pending timers."""
        watcher = self._watchers.pop(library_id, None)
        if watcher is None:
            return False
        watcher.stop_event.set()
        if watcher.task:
            watcher.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher.task
        for key, (owner, _) in list(self._pending.items()):
            if owner == library_id:
                self._drop_timer(key)
        logger.info("Stopped watching library %s", library_id)
        return True

    async def _watch_library(self, watcher: LibraryWatcher) -> None:
        library_id = watcher.library.id
        while not watcher.stop_event.is_set():
            try:
                async for changes in self._watch_factory(
                    watcher.root,
                    stop_event=watcher.stop_event,
                    recursive=watcher.library.watch.include_subdirectories,
                    debounce=50,
                    step=50,
                    ignore_permission_denied=True,
                ):
                    for change, raw_path in changes:
                        self.on_raw_event(library_id, change, Path(raw_path))
                return
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "Watcher for library %s failed, restarting in %.1fs",
                    library_id,
                    self.restart_delay,
                )
            await asyncio.sleep(self.restart_delay)
            library = await self.libraries.get(library_id)
            if library is None or not library.is_eligible_for_watching:
                logger.info("Library %s is no longer eligible, not restarting watcher", library_id)
                self._watchers.pop(library_id, None)
                return
            watcher.library = library

    # ------------------------------------------------------------------
    # debounce
    # ------------------------------------------------------------------

    def on_raw_event(self, library_id: str, change: watchfiles.Change, path: Path) -> None:
        """Record a raw filesystem event and (re)start the path's debounce timer."""
        key = os.path.abspath(path)
        if existing := self._timers.pop(key, None):
            existing.cancel()
        self._pending[key] = (library_id, path)
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(self.debounce_delay, self._fire, key)
        logger.debug("Change %s for %s, settling in %.2fs", change.name, path, self.debounce_delay)

    def _drop_timer(self, key: str) -> None:
        if handle := self._timers.pop(key, None):
            handle.cancel()
        self._pending.pop(key, None)

    def _fire(self, key: str) -> None:
        self._timers.pop(key, None)
        if (pending := self._pending.pop(key, None)) is None:
            return
        task = asyncio.create_task(self._settle(*pending), name=f"settle_{key}")
        self._dispatches.add(task)
        task.add_done_callback(self._dispatches.discard)

    async def _settle(self, library_id: str, path: Path) -> None:
        watcher = self._watchers.get(library_id)
        if watcher is None:
            return
        if (decision := self.classify(watcher.library, path)) is None:
            return
        try:
            await self._on_change(library_id, decision, path)
        except Exception:
            logger.exception("Failed to queue %s for %s", decision, path)

    def classify(self, library: IndexLibrary, path: Path) -> TaskType | None:
        """Decide what a settled change means for `library`, or None to ignore it."""
        if is_excluded_path(path, library.watch.exclude_patterns, library.codebase_path):
            return None
        if any(is_relative_to(path, root) for root in self.exclude_roots):
            return None
        if not path.exists():
            return TaskType.FILE_DELETE
        if not path.is_file() or not matches_file_patterns(path, library.watch.file_patterns):
            return None
        try:
            if path.stat().st_size > library.watch.max_file_size:
                logger.debug("Ignoring change to %s, file exceeds max size", path)
                return None
        except FileNotFoundError:
            return TaskType.FILE_DELETE
        return TaskType.FILE_UPDATE


__all__ = ("ChangeSink", "FileWatchReconciler", "LibraryWatcher")
