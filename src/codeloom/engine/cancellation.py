# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""Cooperative cancellation signal threaded through long-running work."""

from __future__ import annotations

import asyncio

from codeloom.exceptions import TaskCancelledError


class CancellationToken:
    """A one-way flag that workloads poll at file and batch boundaries.

    Cancellation never interrupts an in-flight provider call; the owner of the
    token decides where it is safe to stop by calling `raise_if_cancelled`.
    """

    def __init__(self, task_id: str | None = None) -> None:
        self.task_id = task_id
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        """Block until cancellation is requested."""
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TaskCancelledError(
                "Task was cancelled", details={"task_id": self.task_id} if self.task_id else None
            )


__all__ = ("CancellationToken",)
