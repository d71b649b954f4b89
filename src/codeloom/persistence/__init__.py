# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""Durable storage for tasks and libraries."""

from codeloom.persistence.libraries import (
    IndexLibraryRepository,
    InMemoryLibraryRepository,
    JsonLibraryRepository,
)
from codeloom.persistence.tasks import InMemoryTaskRepository, JsonTaskRepository, TaskRepository


__all__ = (
    "InMemoryLibraryRepository",
    "InMemoryTaskRepository",
    "IndexLibraryRepository",
    "JsonLibraryRepository",
    "JsonTaskRepository",
    "TaskRepository",
)
