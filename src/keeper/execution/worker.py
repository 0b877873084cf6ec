"""Keeper Loop: poll a task source and run due tasks through the queue.

The loop is the process-level shell around :class:`ExecutionQueue`:

1. ``_poll()`` asks the :class:`TaskSource` for due task identifiers.
2. Non-empty batches are handed to :meth:`ExecutionQueue.enqueue`.
3. The loop sleeps ``poll_interval`` seconds, or less if stopped.
4. SIGINT / SIGTERM trigger :meth:`KeeperLoop.shutdown`, which stops
   polling and drains the queue: pending tasks are cancelled and running
   ones finish.

Cycles never overlap: the next poll happens only after the previous
cycle returned.
"""

from __future__ import annotations

import asyncio
import signal
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from keeper.core.errors import InvalidConfigError, QueueDrainedError
from keeper.core.logging import get_logger
from keeper.core.settings import KeeperSettings, get_settings
from keeper.execution.events import (
    CycleComplete,
    QueueEventType,
    TaskFailed,
    TaskStarted,
    TaskSucceeded,
)
from keeper.execution.models import CycleResult, TaskId, utcnow
from keeper.execution.queue import ExecutionQueue, Executor

logger = get_logger(__name__)


@runtime_checkable
class TaskSource(Protocol):
    """Anything that can report which tasks are due right now."""

    async def get_due_tasks(self) -> Sequence[TaskId]:
        ...


class StaticTaskSource:
    """Task source returning the same batch on every poll."""

    def __init__(self, task_ids: Iterable[TaskId]) -> None:
        self._task_ids = list(task_ids)

    async def get_due_tasks(self) -> list[TaskId]:
        return list(self._task_ids)


def sleep_executor(delay: float = 0.5) -> Executor:
    """Executor that only waits *delay* seconds; a stand-in for real submission."""

    async def _execute(task_id: TaskId) -> None:
        await asyncio.sleep(delay)

    return _execute


def log_queue_events(queue: ExecutionQueue) -> list[str]:
    """Mirror the queue's lifecycle events into the structured log.

    Returns the subscription ids so callers can unsubscribe.
    """

    def _started(event: TaskStarted) -> None:
        logger.info("task.started", task_id=event.task_id, cycle_id=event.cycle_id)

    def _succeeded(event: TaskSucceeded) -> None:
        logger.info("task.succeeded", task_id=event.task_id, cycle_id=event.cycle_id)

    def _failed(event: TaskFailed) -> None:
        logger.warning(
            "task.failed",
            task_id=event.task_id,
            cycle_id=event.cycle_id,
            error=event.error,
        )

    def _cycle(event: CycleComplete) -> None:
        logger.info("cycle.complete", cycle_id=event.cycle_id, **event.stats.to_dict())

    return [
        queue.subscribe(_started, QueueEventType.TASK_STARTED),
        queue.subscribe(_succeeded, QueueEventType.TASK_SUCCEEDED),
        queue.subscribe(_failed, QueueEventType.TASK_FAILED),
        queue.subscribe(_cycle, QueueEventType.CYCLE_COMPLETE),
    ]


@dataclass
class KeeperStats:
    """Running totals for one keeper loop."""

    polls: int = 0
    cycles_run: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    tasks_cancelled: int = 0
    poll_errors: int = 0
    last_poll_at: datetime | None = None

    def record(self, result: CycleResult) -> None:
        self.cycles_run += 1
        self.tasks_completed += result.stats.completed
        self.tasks_failed += result.stats.failed
        self.tasks_cancelled += result.stats.cancelled

    def to_dict(self) -> dict[str, Any]:
        return {
            "polls": self.polls,
            "cycles_run": self.cycles_run,
            "tasks_completed": self.tasks_completed,
            "tasks_failed": self.tasks_failed,
            "tasks_cancelled": self.tasks_cancelled,
            "poll_errors": self.poll_errors,
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
        }


class KeeperLoop:
    """Polls a :class:`TaskSource` and executes due tasks.

    Args:
        queue: The execution queue cycles are run through.
        source: Where due task identifiers come from.
        executor: Async callable invoked once per task.
        poll_interval: Seconds between polls.  ``None`` reads
            ``POLL_INTERVAL_SECONDS`` via :class:`KeeperSettings`.  ``0`` polls
            again as soon as a cycle returns.
        max_polls: Stop after this many polls (``None`` runs until stopped).
        keeper_id: Custom identifier.  Auto-generated if ``None``.
        settings: Settings to use instead of the cached process-wide ones.
    """

    def __init__(
        self,
        queue: ExecutionQueue,
        source: TaskSource,
        executor: Executor,
        *,
        poll_interval: float | None = None,
        max_polls: int | None = None,
        keeper_id: str | None = None,
        settings: KeeperSettings | None = None,
    ) -> None:
        if poll_interval is None:
            poll_interval = (settings or get_settings()).poll_interval_seconds
        if isinstance(poll_interval, bool) or not isinstance(poll_interval, (int, float)) or poll_interval < 0:
            raise InvalidConfigError(
                "poll_interval", poll_interval, f"poll_interval must be a number >= 0, got {poll_interval!r}"
            )

        self._queue = queue
        self._source = source
        self._executor = executor
        self._poll_interval = poll_interval
        self._max_polls = max_polls
        self._keeper_id = keeper_id or f"keeper-{uuid.uuid4().hex[:8]}"
        self._stop = asyncio.Event()
        self._shutdown_task: asyncio.Task | None = None
        self._running = False
        self.stats = KeeperStats()

    @property
    def keeper_id(self) -> str:
        return self._keeper_id

    @property
    def queue(self) -> ExecutionQueue:
        return self._queue

    @property
    def poll_interval(self) -> float:
        return self._poll_interval

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def run(self, *, install_signals: bool = False) -> KeeperStats:
        """Poll until stopped (or ``max_polls`` is reached) and return the stats."""
        logger.info(
            "keeper.start",
            keeper_id=self._keeper_id,
            poll_interval=self._poll_interval,
            max_concurrency=self._queue.max_concurrency,
        )
        self._running = True
        if install_signals:
            self.install_signal_handlers()

        try:
            while not self._stop.is_set():
                await self._poll()
                if self._max_polls is not None and self.stats.polls >= self._max_polls:
                    break
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self._poll_interval)
                except asyncio.TimeoutError:
                    pass

            if self._shutdown_task is not None:
                await self._shutdown_task
            else:
                await self.shutdown()
        finally:
            if install_signals:
                self.remove_signal_handlers()
            self._running = False

        logger.info("keeper.stopped", keeper_id=self._keeper_id, **self.stats.to_dict())
        return self.stats

    def stop(self) -> None:
        """Request the loop to stop after the current cycle."""
        self._stop.set()

    async def shutdown(self, reason: str | None = None) -> None:
        """Stop polling and drain the queue."""
        if reason:
            logger.info("keeper.shutdown", keeper_id=self._keeper_id, reason=reason)
        self.stop()
        await self._queue.drain()

    # ------------------------------------------------------------------ #
    # Signal handling
    # ------------------------------------------------------------------ #

    def install_signal_handlers(self) -> bool:
        """Route SIGINT / SIGTERM to :meth:`shutdown`.

        Returns False where the loop cannot install handlers (non-main
        thread, Windows).
        """
        loop = asyncio.get_running_loop()
        try:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self._handle_signal, sig)
        except (NotImplementedError, RuntimeError, ValueError):
            return False
        return True

    def remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                pass

    def _handle_signal(self, sig: signal.Signals) -> None:
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self.shutdown(sig.name))

    # ------------------------------------------------------------------ #
    # Polling
    # ------------------------------------------------------------------ #

    async def _poll(self) -> CycleResult | None:
        """Fetch due tasks and run them as one cycle."""
        self.stats.polls += 1
        self.stats.last_poll_at = utcnow()

        try:
            task_ids = await self._source.get_due_tasks()
        except Exception as exc:
            self.stats.poll_errors += 1
            logger.error("keeper.poll_failed", keeper_id=self._keeper_id, error=str(exc))
            return None

        if not task_ids:
            logger.debug("keeper.poll_empty", keeper_id=self._keeper_id)
            return None

        logger.info("keeper.poll", keeper_id=self._keeper_id, due=len(task_ids))
        try:
            result = await self._queue.enqueue(task_ids, self._executor)
        except QueueDrainedError:
            logger.info("keeper.poll_skipped_draining", keeper_id=self._keeper_id)
            return None

        self.stats.record(result)
        return result


__all__ = [
    "TaskSource",
    "StaticTaskSource",
    "sleep_executor",
    "log_queue_events",
    "KeeperStats",
    "KeeperLoop",
]
