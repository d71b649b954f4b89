# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""Background task model and its state machine.

A task moves `pending -> running -> completed | failed | cancelled`. The only
other allowed moves are cancelling a task that is still pending and demoting a
running task back to pending when the process restarts before it finished.
"""

from __future__ import annotations

from datetime import datetime
from enum import IntEnum, StrEnum
from typing import Annotated, Any

from pydantic import Field

from codeloom.common.paths import new_id
from codeloom.core.models import BasedModel, utc_now
from codeloom.exceptions import TaskStateError


class TaskType(StrEnum):
    """Kinds of background work."""

    INDEXING = "indexing"
    FILE_UPDATE = "file_update"
    FILE_DELETE = "file_delete"


class TaskStatus(StrEnum):
    """Lifecycle states of a task."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transitions are possible."""
        return self in {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}


class TaskPriority(IntEnum):
    """Queue admission priority. Higher values are dequeued first."""

    LOW = 1
    NORMAL = 2
    HIGH = 3
    CRITICAL = 4


_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset({
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
        TaskStatus.PENDING,
    }),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


class Task(BasedModel):
    """A unit of queued background work."""

    id: Annotated[str, Field(default_factory=new_id, description="Unique task identifier")]
    type: TaskType
    library_id: str | None = None
    """Owning library, or None for ad-hoc work."""
    file_path: str | None = None
    """Target file for file_update and file_delete tasks."""
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.NORMAL
    progress: Annotated[int, Field(ge=0, le=100)] = 0
    current_file: str | None = None
    """Human-readable description of what the task is doing right now."""
    error_message: str | None = None
    result: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        """Whether the task has finished, successfully or not."""
        return self.status.is_terminal

    @property
    def is_in_flight(self) -> bool:
        """Whether the task is queued or running."""
        return self.status in {TaskStatus.PENDING, TaskStatus.RUNNING}

    def _transition(self, target: TaskStatus) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.status]:
            raise TaskStateError(
                f"Cannot move task from {self.status} to {target}",
                details={"task_id": self.id},
            )
        self.status = target
        self.updated_at = utc_now()

    def mark_running(self) -> None:
        self._transition(TaskStatus.RUNNING)
        self.started_at = self.updated_at
        self.error_message = None

    def mark_completed(self, result: dict[str, Any] | None = None) -> None:
        self._transition(TaskStatus.COMPLETED)
        self.progress = 100
        self.completed_at = self.updated_at
        if result:
            self.result = result

    def mark_failed(self, message: str) -> None:
        self._transition(TaskStatus.FAILED)
        self.error_message = message
        self.completed_at = self.updated_at

    def mark_cancelled(self) -> None:
        self._transition(TaskStatus.CANCELLED)
        self.completed_at = self.updated_at

    def demote_to_pending(self, reason: str) -> None:
        """Return a running task to the queue after an interrupted run."""
        if self.status is not TaskStatus.RUNNING:
            raise TaskStateError(
                f"Only running tasks can be re-queued, task is {self.status}",
                details={"task_id": self.id},
            )
        self.status = TaskStatus.PENDING
        self.updated_at = utc_now()
        self.started_at = None
        self.progress = 0
        self.current_file = reason

    def update_progress(self, progress: int, current_file: str | None = None) -> None:
        self.progress = max(0, min(100, progress))
        if current_file is not None:
            self.current_file = current_file
        self.updated_at = utc_now()


__all__ = ("Task", "TaskPriority", "TaskStatus", "TaskType")
