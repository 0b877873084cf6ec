"""Execution Queue: run cycles of tasks with bounded concurrency.

WHY
───
Every poll of the task source yields a batch of due task identifiers.
Running them one by one is too slow, running them all at once overloads
the RPC endpoint, and re-running a task that is permanently broken wastes
a slot every cycle.  ExecutionQueue runs each batch through a
:class:`~keeper.execution.limiter.ConcurrencyLimiter`, records every
outcome, remembers failures for the lifetime of the process, and can be
drained for a graceful shutdown.

ARCHITECTURE
────────────
::

    ExecutionQueue(max_concurrency=3)
      ├── .enqueue(task_ids, executor)  ─ run one cycle → CycleResult
      ├── .drain()                      ─ cancel pending, wait for running
      ├── .subscribe(handler, type)     ─ lifecycle notifications
      ├── .reset_failed(task_ids)       ─ forget remembered failures
      └── .stats / .failed_tasks        ─ live counters / failure memo

    enqueue:
      filter failed memo ─► limiter.submit(wrapped unit) × N ─► gather
          wrapped unit: started ─► executor(task_id) ─► succeeded | failed
      ─► CycleComplete(stats) ─► reset counters (memo kept)

    Cycles are serialized: a second enqueue() waits for the first to
    finish, so cycle counters are never shared between cycles.

Example::

    queue = ExecutionQueue(max_concurrency=2)
    queue.subscribe(print, QueueEventType.TASK_FAILED)
    result = await queue.enqueue(["a", "b", "c"], submit_transaction)
    print(result.stats.completed, result.stats.failed)
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import uuid
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from keeper.core.errors import (
    InvalidTaskBatchError,
    QueueDrainedError,
    TaskExecutionError,
)
from keeper.core.logging import LogContext, get_logger
from keeper.core.settings import KeeperSettings, get_settings
from keeper.execution.events import (
    CycleComplete,
    EventEmitter,
    EventHandler,
    QueueEvent,
    QueueEventType,
    TaskFailed,
    TaskStarted,
    TaskSucceeded,
)
from keeper.execution.limiter import ConcurrencyLimiter
from keeper.execution.models import (
    CycleResult,
    CycleStats,
    TaskId,
    TaskRecord,
    TaskState,
    utcnow,
)

logger = get_logger(__name__)

Executor = Callable[[TaskId], Awaitable[Any]]


class ExecutionQueue:
    """Bounded-concurrency task runner with a process-lifetime failure memo.

    Parameters
    ----------
    max_concurrency : int | None
        Ceiling on concurrently running executors.  ``None`` reads
        ``MAX_CONCURRENT_EXECUTIONS`` through :class:`KeeperSettings`.
    settings : KeeperSettings | None
        Settings to read the default ceiling from instead of the cached
        process-wide ones.
    """

    def __init__(
        self,
        max_concurrency: int | None = None,
        *,
        settings: KeeperSettings | None = None,
    ) -> None:
        if max_concurrency is None:
            max_concurrency = (settings or get_settings()).max_concurrent_executions
        self._limiter = ConcurrencyLimiter(max_concurrency)
        self._events = EventEmitter()
        self._stats = CycleStats()
        self._failed_tasks: set[TaskId] = set()
        self._cycle_lock = asyncio.Lock()
        self._cycle_id: str | None = None
        self._draining = False

    # ── Inspection ───────────────────────────────────────────────────

    @property
    def limiter(self) -> ConcurrencyLimiter:
        return self._limiter

    @property
    def max_concurrency(self) -> int:
        return self._limiter.max_concurrency

    @property
    def active_count(self) -> int:
        return self._limiter.active_count

    @property
    def pending_count(self) -> int:
        return self._limiter.pending_count

    @property
    def stats(self) -> CycleStats:
        """Snapshot of the current (or last reset) cycle counters."""
        return self._stats.snapshot()

    @property
    def depth(self) -> int:
        return self._stats.depth

    @property
    def in_flight(self) -> int:
        return self._stats.in_flight

    @property
    def failed_tasks(self) -> frozenset[TaskId]:
        """Identifiers that failed at least once and are skipped from now on."""
        return frozenset(self._failed_tasks)

    @property
    def current_cycle_id(self) -> str | None:
        return self._cycle_id

    @property
    def is_running(self) -> bool:
        """True while a cycle holds the cycle lock."""
        return self._cycle_lock.locked()

    @property
    def is_draining(self) -> bool:
        return self._draining

    # ── Listeners ────────────────────────────────────────────────────

    def subscribe(
        self,
        handler: EventHandler,
        event_type: QueueEventType | str | None = None,
    ) -> str:
        """Register a listener for one event type (or all). Returns its id."""
        return self._events.subscribe(handler, event_type)

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._events.unsubscribe(subscription_id)

    # ── Failure memo ─────────────────────────────────────────────────

    def reset_failed(self, task_ids: Iterable[TaskId] | None = None) -> int:
        """Forget remembered failures so those tasks run again.

        Args:
            task_ids: Identifiers to forget.  ``None`` clears the whole memo.

        Returns:
            Number of identifiers removed.
        """
        if task_ids is None:
            removed = len(self._failed_tasks)
            self._failed_tasks.clear()
        else:
            removed = 0
            for task_id in task_ids:
                if task_id in self._failed_tasks:
                    self._failed_tasks.discard(task_id)
                    removed += 1
        if removed:
            logger.info("queue.failed_reset", removed=removed, remaining=len(self._failed_tasks))
        return removed

    # ── Cycles ───────────────────────────────────────────────────────

    async def enqueue(self, task_ids: Iterable[TaskId], executor: Executor) -> CycleResult:
        """Run one cycle over *task_ids* and return its result.

        Task identifiers in the failure memo are skipped.  The rest run
        through the limiter; each executor failure is recorded, remembered
        and reported as a ``task:failed`` event, never raised.

        Raises:
            InvalidTaskBatchError: *task_ids* is not a collection of
                identifiers or *executor* is not callable.
            QueueDrainedError: The queue has been drained.
        """
        batch = self._validate_batch(task_ids, executor)
        self._ensure_accepting()

        async with self._cycle_lock:
            self._ensure_accepting()
            return await self._run_cycle(batch, executor)

    async def drain(self) -> None:
        """Cancel not-yet-started tasks and wait for running ones to finish.

        After this returns no executor is running and the queue refuses new
        cycles.  The cycle that was running completes on its own, with the
        cancelled tasks counted in ``CycleStats.cancelled``.
        """
        self._draining = True
        logger.info(
            "queue.drain_start",
            active=self._limiter.active_count,
            pending=self._limiter.pending_count,
        )

        cancelled = self._limiter.cancel_pending()
        await self._limiter.wait_idle()

        logger.info("queue.drained", cancelled=cancelled, in_flight=self._stats.in_flight)

    # ── Internals ────────────────────────────────────────────────────

    def _ensure_accepting(self) -> None:
        if self._draining:
            raise QueueDrainedError()

    @staticmethod
    def _validate_batch(task_ids: Iterable[TaskId], executor: Executor) -> list[TaskId]:
        if isinstance(task_ids, (str, bytes)) or not isinstance(task_ids, Iterable):
            raise InvalidTaskBatchError(
                f"task_ids must be a collection of task identifiers, got {type(task_ids).__name__}"
            )
        if not callable(executor):
            raise InvalidTaskBatchError(f"executor must be callable, got {executor!r}")
        batch = list(task_ids)
        for task_id in batch:
            try:
                hash(task_id)
            except TypeError as exc:
                raise InvalidTaskBatchError(
                    f"task identifier {task_id!r} is not hashable", cause=exc
                ) from exc
        return batch

    async def _run_cycle(self, batch: list[TaskId], executor: Executor) -> CycleResult:
        cycle_id = str(uuid.uuid4())
        started_at = utcnow()
        self._cycle_id = cycle_id
        self._stats.reset()

        records: list[TaskRecord] = []
        skipped: list[TaskId] = []
        for task_id in batch:
            if task_id in self._failed_tasks:
                skipped.append(task_id)
            else:
                records.append(TaskRecord(task_id=task_id))
        self._stats.depth = len(records)

        async with LogContext(cycle_id=cycle_id):
            logger.info(
                "queue.cycle_start",
                tasks=len(records),
                skipped=len(skipped),
                max_concurrency=self._limiter.max_concurrency,
            )

            handles = []
            for record in records:
                handle = self._limiter.submit(
                    functools.partial(self._run_task, cycle_id, record, executor)
                )
                handle.add_done_callback(functools.partial(self._on_settled, record))
                handles.append(handle)

            interrupted = await self._wait_for_units(handles)

            stats = self._stats.snapshot()
            await self._emit(CycleComplete(cycle_id=cycle_id, stats=stats))
            logger.info("queue.cycle_complete", interrupted=interrupted, **stats.to_dict())

        self._stats.completed = 0
        self._stats.failed = 0
        self._stats.cancelled = 0

        if interrupted:
            raise asyncio.CancelledError()

        return CycleResult(
            cycle_id=cycle_id,
            stats=stats,
            records=records,
            skipped=skipped,
            started_at=started_at,
            completed_at=utcnow(),
        )

    async def _wait_for_units(self, handles: list[asyncio.Future]) -> bool:
        """Wait until every unit of the cycle has settled.

        Cancelling the caller cancels the units that have not started and
        keeps waiting for the running ones, so the cycle lock is never
        released while units of this cycle still touch the counters.
        Returns True if the caller was cancelled.
        """
        settled = asyncio.gather(*handles, return_exceptions=True)
        interrupted = False
        while True:
            try:
                await asyncio.shield(settled)
                return interrupted
            except asyncio.CancelledError:
                interrupted = True
                cancelled = self._limiter.cancel_pending()
                logger.info(
                    "queue.cycle_interrupted",
                    cancelled=cancelled,
                    in_flight=self._stats.in_flight,
                )

    async def _run_task(self, cycle_id: str, record: TaskRecord, executor: Executor) -> None:
        task_id = record.task_id
        self._stats.depth -= 1
        self._stats.in_flight += 1
        record.state = TaskState.RUNNING
        record.started_at = utcnow()

        try:
            await self._emit(TaskStarted(cycle_id=cycle_id, task_id=task_id))
            outcome = executor(task_id)
            if inspect.isawaitable(outcome):
                await outcome
        except asyncio.CancelledError as exc:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                # The unit itself is being torn down.
                self._stats.cancelled += 1
                record.state = TaskState.CANCELLED
                record.completed_at = utcnow()
                raise
            # Raised by something the executor awaited.
            await self._record_failure(cycle_id, record, exc)
        except Exception as exc:
            await self._record_failure(cycle_id, record, exc)
        else:
            self._stats.completed += 1
            record.state = TaskState.SUCCEEDED
            record.completed_at = utcnow()
            await self._emit(TaskSucceeded(cycle_id=cycle_id, task_id=task_id))
        finally:
            self._stats.in_flight -= 1

    async def _record_failure(self, cycle_id: str, record: TaskRecord, exc: BaseException) -> None:
        task_id = record.task_id
        error = TaskExecutionError(task_id, exc).with_context(cycle_id=cycle_id)
        self._stats.failed += 1
        self._failed_tasks.add(task_id)
        record.state = TaskState.FAILED
        record.error = error
        record.completed_at = utcnow()
        logger.debug("queue.task_failed", task_id=task_id, error=repr(exc))
        await self._emit(TaskFailed(cycle_id=cycle_id, task_id=task_id, error=error))

    def _on_settled(self, record: TaskRecord, handle: asyncio.Future) -> None:
        # Cancelled before its executor ever ran.
        if handle.cancelled() and record.state is TaskState.QUEUED:
            record.state = TaskState.CANCELLED
            record.completed_at = utcnow()
            self._stats.depth -= 1
            self._stats.cancelled += 1

    async def _emit(self, event: QueueEvent) -> None:
        await self._events.emit(event)

    def __repr__(self) -> str:
        return (
            f"ExecutionQueue(max_concurrency={self._limiter.max_concurrency}, "
            f"in_flight={self._stats.in_flight}, depth={self._stats.depth}, "
            f"failed_tasks={len(self._failed_tasks)})"
        )


__all__ = ["ExecutionQueue", "Executor"]
