# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0

"""End-to-end tests for the indexing service.

These use the real JSON repositories, a feature-hashing embedding provider and
an in-process Qdrant store.
"""

import pytest

from codeloom.config.settings import load_settings
from codeloom.core.library import LibraryStatus
from codeloom.core.tasks import TaskStatus, TaskType
from codeloom.exceptions import DuplicateTaskError, IndexingError, LibraryNotFoundError
from codeloom.providers.embedding import FastEmbedProvider
from codeloom.service import IndexingService


pytestmark = [pytest.mark.integration]


@pytest.fixture
def settings(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return load_settings(
        data_dir=tmp_path / "data",
        vector_store={"location": ":memory:"},
        watcher={"enabled": False},
    )


class TestIndexing:
    @pytest.mark.asyncio
    async def test_index_then_search(self, settings, hash_provider, project_dir):
        service = IndexingService(settings, embedding_provider=hash_provider)
        await service.start()
        try:
            library = await service.add_library(project_dir)
            task_id = await service.queue_indexing_task(library.id)
            await service.scheduler.join()

            task = await service.get_task(task_id)
            stored = await service.libraries.require(library.id)
            hits = await service.search(library.id, "parse_config", limit=3)
        finally:
            await service.stop()

        assert task.status is TaskStatus.COMPLETED
        assert task.result["files_new"] == 3
        assert stored.status is LibraryStatus.COMPLETED
        assert {r.relative_path for r in stored.records.values()} == {
            "main.py",
            "pkg/config.py",
            "README.md",
        }
        assert hits
        assert hits[0].file_path.endswith(".py")

    @pytest.mark.asyncio
    async def test_second_run_finds_nothing_to_do(self, settings, hash_provider, project_dir):
        service = IndexingService(settings, embedding_provider=hash_provider)
        await service.start()
        try:
            library = await service.add_library(project_dir)
            await service.queue_indexing_task(library.id)
            await service.scheduler.join()
            rerun = await service.queue_indexing_task(library.id)
            await service.scheduler.join()
            task = await service.get_task(rerun)
        finally:
            await service.stop()

        assert task.status is TaskStatus.COMPLETED
        assert task.result["files_new"] == 0
        assert task.result["files_unchanged"] == 3


class TestLibraries:
    @pytest.mark.asyncio
    async def test_adding_same_path_returns_existing_library(self, settings, hash_provider, project_dir):
        service = IndexingService(settings, embedding_provider=hash_provider)

        first = await service.add_library(project_dir, name="project")
        second = await service.add_library(project_dir / "pkg" / "..")

        assert second.id == first.id
        assert len(await service.list_libraries()) == 1
        await service.store.close()

    @pytest.mark.asyncio
    async def test_non_directory_is_rejected(self, settings, hash_provider, project_dir):
        service = IndexingService(settings, embedding_provider=hash_provider)

        with pytest.raises(IndexingError):
            await service.add_library(project_dir / "main.py")

    @pytest.mark.asyncio
    async def test_remove_library_cancels_queued_work(self, settings, hash_provider, project_dir):
        service = IndexingService(settings, embedding_provider=hash_provider)
        library = await service.add_library(project_dir)
        task_id = await service.queue_file_update_task(library.id, "main.py")

        assert await service.remove_library(library.id)

        assert (await service.get_task(task_id)).status is TaskStatus.CANCELLED
        with pytest.raises(LibraryNotFoundError):
            await service.libraries.require(library.id)
        await service.store.close()


class TestQueueing:
    @pytest.mark.asyncio
    async def test_duplicate_indexing_task_is_rejected(self, settings, hash_provider, project_dir):
        service = IndexingService(settings, embedding_provider=hash_provider)
        library = await service.add_library(project_dir)
        await service.queue_indexing_task(library.id)

        with pytest.raises(DuplicateTaskError):
            await service.queue_indexing_task(library.id)

    @pytest.mark.asyncio
    async def test_pending_file_tasks_coalesce_per_file(self, settings, hash_provider, project_dir):
        service = IndexingService(settings, embedding_provider=hash_provider)
        library = await service.add_library(project_dir)

        first = await service.queue_file_update_task(library.id, "main.py")
        again = await service.queue_file_update_task(library.id, project_dir / "main.py")
        other = await service.queue_file_update_task(library.id, "pkg/config.py")
        delete = await service.queue_file_delete_task(library.id, "main.py")

        assert again == first
        assert len({first, other, delete}) == 3
        assert [t.type for t in await service.list_tasks(TaskStatus.PENDING)] == [
            TaskType.FILE_UPDATE,
            TaskType.FILE_UPDATE,
            TaskType.FILE_DELETE,
        ]

    @pytest.mark.asyncio
    async def test_unfinished_tasks_resume_after_restart(self, settings, hash_provider, project_dir):
        before = IndexingService(settings, embedding_provider=hash_provider)
        library = await before.add_library(project_dir)
        task_id = await before.queue_indexing_task(library.id)

        after = IndexingService(settings, embedding_provider=hash_provider)
        recovered = await after.start()
        try:
            await after.scheduler.join()
            task = await after.get_task(task_id)
        finally:
            await after.stop()

        assert recovered == [task_id]
        assert task.status is TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_status_reports_every_component(self, settings, hash_provider):
        service = IndexingService(settings, embedding_provider=hash_provider)
        await service.start()
        try:
            status = await service.status()
        finally:
            await service.stop()

        assert status["tasks"]["total"] == 0
        assert status["connection"]["is_connected"] is True
        assert status["embedding"]["total_requests"] == 0
        assert status["watched_libraries"] == []


class TestDefaults:
    def test_default_provider_is_fastembed_and_loads_lazily(self, settings, mocker):
        text_embedding = mocker.patch("codeloom.providers.embedding.TextEmbedding")
        text_embedding.list_supported_models.return_value = [
            {"model": settings.embedding.model_name, "dim": 384}
        ]

        service = IndexingService(settings)

        assert isinstance(service.provider, FastEmbedProvider)
        assert service.provider.dimension == 384
        assert service.provider._client_kwargs["cache_dir"] == str(settings.data_dir / "models")
        text_embedding.assert_not_called()
