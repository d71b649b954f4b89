# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""Core data models: tasks, libraries, file records and snippets."""

from codeloom.core.library import (
    FileIndexRecord,
    IndexLibrary,
    LibraryStatistics,
    LibraryStatus,
    WatchConfiguration,
)
from codeloom.core.models import BASEDMODEL_CONFIG, FROZEN_BASEDMODEL_CONFIG, BasedModel
from codeloom.core.snippets import CodeSnippet
from codeloom.core.tasks import Task, TaskPriority, TaskStatus, TaskType


__all__ = (
    "BASEDMODEL_CONFIG",
    "FROZEN_BASEDMODEL_CONFIG",
    "BasedModel",
    "CodeSnippet",
    "FileIndexRecord",
    "IndexLibrary",
    "LibraryStatistics",
    "LibraryStatus",
    "Task",
    "TaskPriority",
    "TaskStatus",
    "TaskType",
    "WatchConfiguration",
)
