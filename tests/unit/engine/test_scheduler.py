# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Tests for the bounded task scheduler."""

import asyncio
import contextlib

from collections import Counter

import pytest

from codeloom.core.tasks import Task, TaskPriority, TaskStatus, TaskType
from codeloom.engine.scheduler import RECOVERY_MESSAGE, TaskScheduler
from codeloom.exceptions import (
    DuplicateTaskError,
    IndexingError,
    TaskNotFoundError,
    TaskStateError,
)
from codeloom.persistence.tasks import InMemoryTaskRepository


pytestmark = [pytest.mark.unit, pytest.mark.async_test]


class RecordingWorkload:
    """Workload that records which tasks ran, optionally blocking or failing."""

    def __init__(self, *, block: bool = False, error: Exception | None = None) -> None:
        self.block = block
        self.error = error
        self.calls: list[str] = []
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, ctx):
        self.calls.append(ctx.task.id)
        self.started.set()
        await ctx.report(50, "halfway")
        if self.block:
            release = asyncio.create_task(self.release.wait())
            cancelled = asyncio.create_task(ctx.token.wait())
            try:
                await asyncio.wait({release, cancelled}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                release.cancel()
                cancelled.cancel()
            ctx.token.raise_if_cancelled()
        if self.error is not None:
            raise self.error
        return {"task": ctx.task.id}


class StallingRepository(InMemoryTaskRepository):
    """Holds the write that marks a task running until released."""

    def __init__(self) -> None:
        super().__init__()
        self.persisting = asyncio.Event()
        self.release = asyncio.Event()

    async def update(self, task: Task) -> Task:
        if task.status is TaskStatus.RUNNING:
            self.persisting.set()
            await self.release.wait()
        return await super().update(task)


def _scheduler(repository, workload, **kwargs) -> TaskScheduler:
    return TaskScheduler(
        repository,
        dict.fromkeys(TaskType, workload),
        **({"max_queued_tasks": 10, "max_concurrent_tasks": 2} | kwargs),
    )


@contextlib.asynccontextmanager
async def running(scheduler: TaskScheduler, *, recover: bool = True):
    await scheduler.start(recover=recover)
    try:
        yield scheduler
    finally:
        await scheduler.stop()


def _task(**kwargs) -> Task:
    return Task(type=TaskType.FILE_UPDATE, library_id="lib", **kwargs)


class TestExecution:
    @pytest.mark.asyncio
    async def test_task_runs_to_completion(self, task_repository):
        workload = RecordingWorkload()
        scheduler = _scheduler(task_repository, workload)

        async with running(scheduler):
            task_id = await scheduler.enqueue(_task())
            await scheduler.join()

        task = await task_repository.get(task_id)
        assert task.status is TaskStatus.COMPLETED
        assert task.progress == 100
        assert task.result == {"task": task_id}
        assert task.started_at is not None
        assert task.completed_at is not None

    @pytest.mark.asyncio
    async def test_failure_is_recorded_and_worker_survives(self, task_repository):
        failing = RecordingWorkload(error=IndexingError("boom"))
        healthy = RecordingWorkload()
        scheduler = TaskScheduler(
            task_repository,
            {TaskType.INDEXING: failing, TaskType.FILE_UPDATE: healthy},
            max_concurrent_tasks=1,
        )

        async with running(scheduler):
            failed_id = await scheduler.enqueue(Task(type=TaskType.INDEXING, library_id="lib"))
            ok_id = await scheduler.enqueue(_task())
            await scheduler.join()

        failed = await task_repository.get(failed_id)
        assert failed.status is TaskStatus.FAILED
        assert failed.error_message == "boom"
        assert (await task_repository.get(ok_id)).status is TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_higher_priority_runs_first(self, task_repository):
        workload = RecordingWorkload()
        scheduler = _scheduler(task_repository, workload, max_concurrent_tasks=1)
        low = await scheduler.enqueue(_task(priority=TaskPriority.LOW))
        normal = await scheduler.enqueue(_task(priority=TaskPriority.NORMAL))
        critical = await scheduler.enqueue(_task(priority=TaskPriority.CRITICAL))

        async with running(scheduler, recover=False):
            await scheduler.join()

        assert workload.calls == [critical, normal, low]

    @pytest.mark.asyncio
    async def test_only_pending_tasks_can_be_queued(self, task_repository):
        scheduler = _scheduler(task_repository, RecordingWorkload())
        task = _task()
        task.mark_running()

        with pytest.raises(TaskStateError):
            await scheduler.enqueue(task)

    @pytest.mark.asyncio
    async def test_same_task_cannot_be_queued_twice(self, task_repository):
        scheduler = _scheduler(task_repository, RecordingWorkload())
        task = _task()
        await scheduler.enqueue(task)

        with pytest.raises(DuplicateTaskError):
            await scheduler.enqueue(task)


class TestBackpressure:
    @pytest.mark.asyncio
    async def test_enqueue_blocks_while_queue_is_full(self, task_repository):
        workload = RecordingWorkload()
        scheduler = _scheduler(
            task_repository, workload, max_queued_tasks=2, max_concurrent_tasks=1
        )
        await scheduler.enqueue(_task())
        await scheduler.enqueue(_task())

        third = asyncio.create_task(scheduler.enqueue(_task()))
        await asyncio.sleep(0.05)
        assert not third.done()
        assert scheduler.queue_size == 2

        async with running(scheduler, recover=False):
            third_id = await asyncio.wait_for(third, timeout=2)
            await scheduler.join()

        assert third_id in workload.calls
        assert len(workload.calls) == 3


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_pending_task_skips_it(self, task_repository):
        workload = RecordingWorkload()
        scheduler = _scheduler(task_repository, workload)
        task_id = await scheduler.enqueue(_task())

        assert await scheduler.cancel(task_id)
        async with running(scheduler, recover=False):
            await scheduler.join()

        assert workload.calls == []
        assert (await task_repository.get(task_id)).status is TaskStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_running_task(self, task_repository):
        workload = RecordingWorkload(block=True)
        scheduler = _scheduler(task_repository, workload)

        async with running(scheduler):
            task_id = await scheduler.enqueue(_task())
            await asyncio.wait_for(workload.started.wait(), timeout=2)
            assert task_id in scheduler.active_task_ids
            assert await scheduler.cancel(task_id)
            await asyncio.wait_for(scheduler.join(), timeout=2)

        task = await task_repository.get(task_id)
        assert task.status is TaskStatus.CANCELLED
        assert task.completed_at is not None

    @pytest.mark.asyncio
    async def test_cancel_while_running_state_is_persisted(self):
        repository = StallingRepository()
        workload = RecordingWorkload()
        scheduler = _scheduler(repository, workload)

        async with running(scheduler, recover=False):
            task_id = await scheduler.enqueue(_task())
            await asyncio.wait_for(repository.persisting.wait(), timeout=2)
            assert await scheduler.cancel(task_id)
            repository.release.set()
            await asyncio.wait_for(scheduler.join(), timeout=2)

        assert (await repository.get(task_id)).status is TaskStatus.CANCELLED
        assert workload.calls == []

    @pytest.mark.asyncio
    async def test_cancel_finished_task_returns_false(self, task_repository):
        scheduler = _scheduler(task_repository, RecordingWorkload())

        async with running(scheduler):
            task_id = await scheduler.enqueue(_task())
            await scheduler.join()
            assert not await scheduler.cancel(task_id)

    @pytest.mark.asyncio
    async def test_cancel_unknown_task_raises(self, task_repository):
        scheduler = _scheduler(task_repository, RecordingWorkload())

        with pytest.raises(TaskNotFoundError):
            await scheduler.cancel("missing")


class TestRecovery:
    @pytest.mark.asyncio
    async def test_interrupted_tasks_resume_exactly_once(self):
        interrupted = _task()
        interrupted.mark_running()
        waiting = _task()
        finished = _task()
        finished.mark_running()
        finished.mark_completed()
        repository = InMemoryTaskRepository([interrupted, waiting, finished])
        workload = RecordingWorkload()
        scheduler = _scheduler(repository, workload)

        async with running(scheduler, recover=False):
            recovered = await scheduler.recover()
            await scheduler.join()

        assert set(recovered) == {interrupted.id, waiting.id}
        assert Counter(workload.calls) == Counter({interrupted.id: 1, waiting.id: 1})
        for task_id in recovered:
            assert (await repository.get(task_id)).status is TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_recovered_running_task_is_demoted_with_reason(self):
        interrupted = _task()
        interrupted.mark_running()
        repository = InMemoryTaskRepository([interrupted])
        scheduler = _scheduler(repository, RecordingWorkload())

        await scheduler.recover()

        task = await repository.get(interrupted.id)
        assert task.status is TaskStatus.PENDING
        assert task.current_file == RECOVERY_MESSAGE
        assert scheduler.queue_size == 1

    @pytest.mark.asyncio
    async def test_stop_leaves_running_task_for_the_next_process(self, task_repository):
        blocked = RecordingWorkload(block=True)
        first = _scheduler(task_repository, blocked)

        async with running(first):
            task_id = await first.enqueue(_task())
            await asyncio.wait_for(blocked.started.wait(), timeout=2)

        assert (await task_repository.get(task_id)).status is TaskStatus.RUNNING

        workload = RecordingWorkload()
        second = _scheduler(task_repository, workload)
        async with running(second, recover=False):
            assert await second.recover() == [task_id]
            await second.join()

        assert workload.calls == [task_id]
        assert (await task_repository.get(task_id)).status is TaskStatus.COMPLETED


class TestStatistics:
    @pytest.mark.asyncio
    async def test_statistics_count_by_status(self, task_repository):
        scheduler = _scheduler(task_repository, RecordingWorkload())
        await scheduler.enqueue(_task())

        stats = await scheduler.statistics()

        assert stats["total"] == 1
        assert stats["by_status"]["pending"] == 1
        assert stats["queued"] == 1
        assert stats["workers"] == 0
