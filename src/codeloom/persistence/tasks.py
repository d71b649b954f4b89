# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""Durable task storage.

The repository is the single source of truth for task state. The scheduler
persists every state transition here before acting on it, so after a crash the
last persisted state is what gets resumed.
"""

from __future__ import annotations

import asyncio
import logging
import os

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import timedelta
from pathlib import Path
from typing import Any

from pydantic_core import from_json

from codeloom.core.models import utc_now
from codeloom.core.tasks import Task, TaskStatus, TaskType
from codeloom.exceptions import PersistenceError, TaskNotFoundError


logger = logging.getLogger(__name__)


class TaskRepository(ABC):
    """Abstract CRUD and status queries over tasks."""

    @abstractmethod
    async def create(self, task: Task) -> Task: ...

    @abstractmethod
    async def get(self, task_id: str) -> Task | None: ...

    @abstractmethod
    async def update(self, task: Task) -> Task: ...

    @abstractmethod
    async def delete(self, task_id: str) -> bool: ...

    @abstractmethod
    async def list_all(self) -> list[Task]: ...

    async def get_by_status(self, *statuses: TaskStatus) -> list[Task]:
        wanted = set(statuses)
        tasks = [task for task in await self.list_all() if task.status in wanted]
        return sorted(tasks, key=lambda t: t.created_at)

    async def get_pending(self, limit: int = 50) -> list[Task]:
        """Pending tasks, highest priority first, then oldest first."""
        pending = await self.get_by_status(TaskStatus.PENDING)
        pending.sort(key=lambda t: (-t.priority, t.created_at))
        return pending[:limit]

    async def get_in_flight_for_library(
        self, library_id: str, task_type: TaskType | None = None
    ) -> list[Task]:
        return [
            task
            for task in await self.get_by_status(TaskStatus.PENDING, TaskStatus.RUNNING)
            if task.library_id == library_id and (task_type is None or task.type == task_type)
        ]

    async def cleanup_older_than(self, age: timedelta) -> int:
        """Delete terminal tasks that finished more than `age` ago."""
        cutoff = utc_now() - age
        removed = 0
        for task in await self.list_all():
            finished = task.completed_at or task.updated_at
            if task.is_terminal and finished < cutoff and await self.delete(task.id):
                removed += 1
        if removed:
            logger.info("Cleaned up %d finished tasks older than %s", removed, age)
        return removed

    async def statistics(self) -> dict[str, Any]:
        tasks = await self.list_all()
        counts = {status.value: 0 for status in TaskStatus}
        for task in tasks:
            counts[task.status.value] += 1
        return {"total": len(tasks), "by_status": counts}


class InMemoryTaskRepository(TaskRepository):
    """Process-local repository. Stores copies so callers cannot mutate stored state."""

    def __init__(self, tasks: Iterable[Task] = ()) -> None:
        self._tasks: dict[str, Task] = {t.id: t.model_copy(deep=True) for t in tasks}

    async def create(self, task: Task) -> Task:
        self._tasks[task.id] = task.model_copy(deep=True)
        return task

    async def get(self, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def update(self, task: Task) -> Task:
        if task.id not in self._tasks:
            raise TaskNotFoundError("Cannot update unknown task", details={"task_id": task.id})
        task.updated_at = utc_now()
        self._tasks[task.id] = task.model_copy(deep=True)
        return task

    async def delete(self, task_id: str) -> bool:
        return self._tasks.pop(task_id, None) is not None

    async def list_all(self) -> list[Task]:
        return [task.model_copy(deep=True) for task in self._tasks.values()]


class JsonTaskRepository(TaskRepository):
    """One JSON document per task under a directory."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory.resolve()
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _path_for(self, task_id: str) -> Path:
        return self.directory / f"{task_id}.json"

    def _write(self, task: Task) -> None:
        target = self._path_for(task.id)
        temp = target.with_suffix(".json.tmp")
        try:
            _ = temp.write_text(task.model_dump_json(indent=2), encoding="utf-8")
            os.replace(temp, target)
        except OSError as e:
            raise PersistenceError(
                "Failed to persist task", details={"task_id": task.id, "error": str(e)}
            ) from e

    def _read(self, path: Path) -> Task | None:
        try:
            return Task.model_validate(from_json(path.read_bytes()))
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            logger.warning("Ignoring unreadable task file %s", path)
            return None

    async def create(self, task: Task) -> Task:
        async with self._lock:
            self._write(task)
        logger.debug("Created task %s (%s)", task.id, task.type)
        return task

    async def get(self, task_id: str) -> Task | None:
        return self._read(self._path_for(task_id))

    async def update(self, task: Task) -> Task:
        async with self._lock:
            if not self._path_for(task.id).exists():
                raise TaskNotFoundError("Cannot update unknown task", details={"task_id": task.id})
            task.updated_at = utc_now()
            self._write(task)
        return task

    async def delete(self, task_id: str) -> bool:
        async with self._lock:
            try:
                self._path_for(task_id).unlink()
            except FileNotFoundError:
                return False
            except OSError as e:
                raise PersistenceError(
                    "Failed to delete task", details={"task_id": task_id, "error": str(e)}
                ) from e
        return True

    async def list_all(self) -> list[Task]:
        return [
            task
            for path in sorted(self.directory.glob("*.json"))
            if (task := self._read(path)) is not None
        ]

    async def statistics(self) -> dict[str, Any]:
        stats = await super().statistics()
        stats["storage_bytes"] = sum(p.stat().st_size for p in self.directory.glob("*.json"))
        stats["directory"] = str(self.directory)
        return stats


__all__ = ("InMemoryTaskRepository", "JsonTaskRepository", "TaskRepository")
