# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""Bounded task queue with a fixed worker pool and durable task state.

`TaskScheduler.enqueue` persists a task as pending and puts its id on a bounded
priority queue, blocking while the queue is full. A fixed number of worker
coroutines each take one task at a time, mark it running, run the workload
registered for its type, and persist the terminal state. A task's failure is
recorded on the task and never takes a worker down.

On start, `recover` re-queues everything the repository still has as pending
or running: running tasks from a previous process are demoted to pending since
their work cannot be assumed complete.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from codeloom.core.tasks import Task, TaskStatus, TaskType
from codeloom.engine.cancellation import CancellationToken
from codeloom.exceptions import (
    CodeLoomError,
    DuplicateTaskError,
    TaskCancelledError,
    TaskNotFoundError,
    TaskStateError,
)
from codeloom.persistence.tasks import TaskRepository


logger = logging.getLogger(__name__)

RECOVERY_MESSAGE = "service restarted, re-queued"

type Workload = Callable[[TaskContext], Awaitable[dict[str, Any] | None]]


@dataclass
class TaskContext:
    """What a running workload gets: its task, a cancel token, and a progress reporter."""

    task: Task
    token: CancellationToken
    repository: TaskRepository = field(repr=False)

    async def report(self, progress: int, current_file: str | None = None) -> None:
        """Record and persist progress."""
        self.task.update_progress(progress, current_file)
        await self.repository.update(self.task)


class TaskScheduler:
    """Bounded-queue, fixed-pool executor for background tasks."""

    def __init__(
        self,
        repository: TaskRepository,
        workloads: Mapping[TaskType, Workload],
        *,
        max_queued_tasks: int = 100,
        max_concurrent_tasks: int = 2,
        task_retention: timedelta = timedelta(days=7),
        cleanup_interval: float = 3600.0,
    ) -> None:
        self.repository = repository
        self.workloads = dict(workloads)
        self.max_concurrent_tasks = max_concurrent_tasks
        self.task_retention = task_retention
        self.cleanup_interval = cleanup_interval
        self._queue: asyncio.PriorityQueue[tuple[int, int, str]] = asyncio.PriorityQueue(
            maxsize=max_queued_tasks
        )
        self._sequence = itertools.count()
        self._workers: list[asyncio.Task[None]] = []
        self._cleanup_task: asyncio.Task[None] | None = None
        self._tokens: dict[str, CancellationToken] = {}
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    @property
    def active_task_ids(self) -> list[str]:
        return list(self._tokens)

    async def start(self, *, recover: bool = True) -> list[str]:
        """Start the worker pool. Returns the ids of recovered tasks."""
        if self._running:
            return []
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"task_worker_{n}")
            for n in range(self.max_concurrent_tasks)
        ]
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="task_cleanup")
        logger.info("Task scheduler started with %d workers", self.max_concurrent_tasks)
        return await self.recover() if recover else []

    async def stop(self) -> None:
        """Stop workers. Tasks still running stay `running` in the store for recovery."""
        self._running = False
        tasks = [*self._workers, *([self._cleanup_task] if self._cleanup_task else [])]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._workers = []
        self._cleanup_task = None
        logger.info("Task scheduler stopped")

    async def recover(self) -> list[str]:
        """Re-queue tasks left pending or running by a previous process."""
        interrupted = await self.repository.get_by_status(TaskStatus.PENDING, TaskStatus.RUNNING)
        interrupted.sort(key=lambda t: (-t.priority, t.created_at))
        recovered: list[str] = []
        for task in interrupted:
            if task.status is TaskStatus.RUNNING:
                task.demote_to_pending(RECOVERY_MESSAGE)
                await self.repository.update(task)
                logger.info("Re-queued interrupted task %s (%s)", task.id, task.type)
            await self._put(task)
            recovered.append(task.id)
        if recovered:
            logger.info("Recovered %d unfinished tasks", len(recovered))
        return recovered

    async def enqueue(self, task: Task) -> str:
        """Persist `task` as pending and queue it. Blocks while the queue is full."""
        if task.status is not TaskStatus.PENDING:
            raise TaskStateError(
                f"Only pending tasks can be queued, task is {task.status}",
                details={"task_id": task.id},
            )
        if await self.repository.get(task.id) is not None:
            raise DuplicateTaskError("Task is already queued", details={"task_id": task.id})
        await self.repository.create(task)
        await self._put(task)
        logger.debug("Queued task %s (%s, priority %s)", task.id, task.type, task.priority.name)
        return task.id

    async def _put(self, task: Task) -> None:
        await self._queue.put((-int(task.priority), next(self._sequence), task.id))

    async def get_task(self, task_id: str) -> Task | None:
        return await self.repository.get(task_id)

    async def list_tasks(self, status: TaskStatus | None = None) -> list[Task]:
        if status is None:
            return sorted(await self.repository.list_all(), key=lambda t: t.created_at)
        return await self.repository.get_by_status(status)

    async def cancel(self, task_id: str) -> bool:
        """Request cancellation.

        Pending tasks are cancelled immediately. Running tasks are signalled
        and stop at their next checkpoint. Returns False for finished tasks.

        Raises:
            TaskNotFoundError: No task has this id.
        """
        if token := self._tokens.get(task_id):
            token.cancel()
            logger.info("Cancellation requested for running task %s", task_id)
            return True
        task = await self.repository.get(task_id)
        if task is None:
            raise TaskNotFoundError("Task not found", details={"task_id": task_id})
        if task.status is not TaskStatus.PENDING:
            return False
        task.mark_cancelled()
        await self.repository.update(task)
        logger.info("Cancelled pending task %s", task_id)
        return True

    async def _worker(self, number: int) -> None:
        while True:
            try:
                _, _, task_id = await self._queue.get()
            except asyncio.CancelledError:
                break
            try:
                await self._execute(task_id)
            except asyncio.CancelledError:
                logger.debug("Worker %d cancelled while running task %s", number, task_id)
                break
            except Exception:
                logger.exception("Worker %d failed to record the outcome of task %s", number, task_id)
            finally:
                self._queue.task_done()

    async def _execute(self, task_id: str) -> None:
        task = await self.repository.get(task_id)
        if task is None or task.status is not TaskStatus.PENDING:
            logger.debug("Skipping task %s, no longer pending", task_id)
            return
        workload = self.workloads.get(task.type)
        token = CancellationToken(task.id)
        self._tokens[task.id] = token
        try:
            task.mark_running()
            await self.repository.update(task)
            if workload is None:
                raise CodeLoomError(f"No workload registered for task type {task.type}")
            token.raise_if_cancelled()
            result = await workload(TaskContext(task=task, token=token, repository=self.repository))
        except TaskCancelledError:
            task.mark_cancelled()
            logger.info("Task %s cancelled", task.id)
        except asyncio.CancelledError:
            # scheduler shutdown; the task stays running and is recovered on restart
            raise
        except Exception as e:
            task.mark_failed(str(e) or type(e).__name__)
            logger.warning("Task %s (%s) failed: %s", task.id, task.type, e, exc_info=True)
        else:
            task.mark_completed(result)
            logger.info("Task %s (%s) completed", task.id, task.type)
        finally:
            self._tokens.pop(task.id, None)
        await self.repository.update(task)

    async def join(self) -> None:
        """Wait until every queued task has been processed."""
        await self._queue.join()

    async def _cleanup_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.cleanup_interval)
                await self.repository.cleanup_older_than(self.task_retention)
            except asyncio.CancelledError:
                logger.debug("Task cleanup loop cancelled")
                break
            except Exception:
                logger.exception("Error in task cleanup loop")

    async def statistics(self) -> dict[str, Any]:
        return await self.repository.statistics() | {
            "queued": self._queue.qsize(),
            "active": len(self._tokens),
            "workers": len(self._workers),
        }


__all__ = ("RECOVERY_MESSAGE", "TaskContext", "TaskScheduler", "Workload")
