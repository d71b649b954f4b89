# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""Indexing engine: scheduling, embedding, diffing, watching and health monitoring."""

from codeloom.engine.cancellation import CancellationToken
from codeloom.engine.differ import FileDiff, diff_files
from codeloom.engine.embedding import EmbeddingBatchCoordinator, EmbeddingResult
from codeloom.engine.health import ConnectionHealthMonitor, ConnectionState
from codeloom.engine.scheduler import TaskContext, TaskScheduler
from codeloom.engine.watcher import FileWatchReconciler
from codeloom.engine.workloads import IndexingWorkloads


__all__ = (
    "CancellationToken",
    "ConnectionHealthMonitor",
    "ConnectionState",
    "EmbeddingBatchCoordinator",
    "EmbeddingResult",
    "FileDiff",
    "FileWatchReconciler",
    "IndexingWorkloads",
    "TaskContext",
    "TaskScheduler",
    "diff_files",
)
