# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""Vector store connection monitoring with wait-for-recovery.

`ConnectionHealthMonitor` probes the vector store on a fixed interval. Workers
call `wait_for_connection` before touching the store: while the store is up it
returns immediately, while it is down the worker parks on a future that the
monitor resolves as soon as a probe succeeds again. Connectivity loss therefore
pauses tasks instead of failing them, up to the wait timeout.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

from datetime import datetime
from typing import TYPE_CHECKING, Any

from pydantic import NonNegativeInt

from codeloom.core.models import BasedModel, utc_now
from codeloom.exceptions import TaskCancelledError


if TYPE_CHECKING:
    from codeloom.engine.cancellation import CancellationToken
    from codeloom.providers.vector_store import VectorStore


logger = logging.getLogger(__name__)


class ConnectionState(BasedModel):
    """Last known reachability of the vector store."""

    is_connected: bool = False
    last_successful_check: datetime | None = None
    last_failed_check: datetime | None = None
    consecutive_failures: NonNegativeInt = 0
    last_error: str | None = None


class ConnectionHealthMonitor:
    """Periodically probes a `VectorStore` and releases waiters on recovery."""

    def __init__(
        self,
        store: VectorStore,
        *,
        check_interval: float = 30.0,
        probe_timeout: float = 5.0,
        default_wait_timeout: float = 300.0,
    ) -> None:
        self._store = store
        self.check_interval = check_interval
        self.probe_timeout = probe_timeout
        self.default_wait_timeout = default_wait_timeout
        self._state = ConnectionState()
        self._waiters: dict[str, asyncio.Future[bool]] = {}
        self._monitor_task: asyncio.Task[None] | None = None
        self._check_lock = asyncio.Lock()
        self._total_checks = 0

    @property
    def state(self) -> ConnectionState:
        """Snapshot of the current connection state."""
        return self._state.model_copy()

    @property
    def is_connected(self) -> bool:
        return self._state.is_connected

    @property
    def waiting_task_ids(self) -> list[str]:
        return list(self._waiters)

    async def start(self) -> None:
        """Run an initial probe, then keep probing in the background."""
        if self._monitor_task and not self._monitor_task.done():
            return
        await self.force_check()
        self._monitor_task = asyncio.create_task(
            self._monitor_loop(), name="vector_store_health_monitor"
        )
        logger.info("Connection health monitor started (interval %.1fs)", self.check_interval)

    async def stop(self) -> None:
        """Stop probing and cancel every pending waiter."""
        if self._monitor_task:
            self._monitor_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._monitor_task
            self._monitor_task = None
        for task_id in list(self._waiters):
            self.cancel_waiting_task(task_id)

    async def _monitor_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.check_interval)
                await self.force_check()
            except asyncio.CancelledError:
                logger.debug("Health monitor task cancelled")
                break
            except Exception:
                logger.exception("Error in health monitor task")

    async def force_check(self) -> bool:
        """Probe the store now instead of waiting for the next tick."""
        async with self._check_lock:
            self._total_checks += 1
            error: str | None = None
            try:
                healthy = bool(
                    await asyncio.wait_for(self._store.health_check(), timeout=self.probe_timeout)
                )
            except Exception as e:
                healthy = False
                error = f"{type(e).__name__}: {e}"
            if healthy:
                self._record_success()
            else:
                self._record_failure(error or "health check returned False")
            return healthy

    def _record_success(self) -> None:
        was_connected = self._state.is_connected
        self._state.is_connected = True
        self._state.last_successful_check = utc_now()
        self._state.consecutive_failures = 0
        self._state.last_error = None
        if not was_connected:
            logger.info("Vector store connection is up")
        self._release_waiters()

    def _record_failure(self, error: str) -> None:
        was_connected = self._state.is_connected
        self._state.is_connected = False
        self._state.last_failed_check = utc_now()
        self._state.consecutive_failures += 1
        self._state.last_error = error
        if was_connected:
            logger.warning("Vector store connection lost: %s", error)
        else:
            logger.debug(
                "Vector store still unreachable (%d consecutive failures): %s",
                self._state.consecutive_failures,
                error,
            )

    def _release_waiters(self) -> None:
        if not self._waiters:
            return
        logger.info("Resuming %d tasks waiting for the vector store", len(self._waiters))
        waiters, self._waiters = self._waiters, {}
        for future in waiters.values():
            if not future.done():
                future.set_result(True)

    async def wait_for_connection(
        self,
        task_id: str,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> bool:
        """Block until the store is reachable.

        Returns:
            True once connected, False if `timeout` seconds elapse first.

        Raises:
            TaskCancelledError: The wait was cancelled through `cancel_token`
                or `cancel_waiting_task`.
        """
        if self._state.is_connected:
            return True
        timeout = self.default_wait_timeout if timeout is None else timeout
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        if (previous := self._waiters.pop(task_id, None)) and not previous.done():
            previous.cancel()
        self._waiters[task_id] = future
        logger.info("Task %s waiting up to %.0fs for the vector store", task_id, timeout)

        watchers: set[asyncio.Future[Any]] = {future}
        cancel_watch: asyncio.Task[None] | None = None
        if cancel_token is not None:
            cancel_watch = asyncio.create_task(cancel_token.wait(), name=f"cancel_watch_{task_id}")
            watchers.add(cancel_watch)
        try:
            done, _ = await asyncio.wait(
                watchers, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if future in done:
                if future.cancelled():
                    raise TaskCancelledError(
                        "Stopped waiting for the vector store", details={"task_id": task_id}
                    )
                return future.result()
            if cancel_watch is not None and cancel_watch in done:
                raise TaskCancelledError(
                    "Stopped waiting for the vector store", details={"task_id": task_id}
                )
            logger.warning("Task %s timed out waiting for the vector store", task_id)
            return False
        finally:
            if cancel_watch is not None:
                cancel_watch.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await cancel_watch
            if self._waiters.get(task_id) is future:
                del self._waiters[task_id]
            if not future.done():
                future.cancel()

    def cancel_waiting_task(self, task_id: str) -> bool:
        """Abort one task's wait. Returns False if it was not waiting."""
        future = self._waiters.pop(task_id, None)
        if future is None or future.done():
            return False
        future.cancel()
        return True

    def statistics(self) -> dict[str, Any]:
        return self._state.model_dump(mode="json") | {
            "waiting_tasks": len(self._waiters),
            "total_checks": self._total_checks,
            "check_interval_seconds": self.check_interval,
            "monitoring": bool(self._monitor_task and not self._monitor_task.done()),
        }


__all__ = ("ConnectionHealthMonitor", "ConnectionState")
