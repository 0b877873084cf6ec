"""Concurrency Limiter: bounded parallelism for asyncio work.

WHY
───
The keeper must never run more than N executor invocations at once, no
matter how many task identifiers a poll returns.  A bare
``asyncio.Semaphore`` bounds concurrency but cannot report how much work
is waiting, nor cancel work that has not started yet, both of which a
graceful shutdown needs.

ARCHITECTURE
────────────
::

    ConcurrencyLimiter(max_concurrency=3)
      ├── .submit(work)      ─ returns an asyncio.Future handle
      ├── .active_count      ─ running work items
      ├── .pending_count     ─ waiting work items (FIFO)
      ├── .cancel_pending()  ─ cancel every not-yet-started handle
      └── .wait_idle()       ─ wait until nothing is running

    submit ──► pending deque ──► (slot free?) ──► task: await work()
                                                     │
                          handle.set_result / set_exception
                                                     │
                                 slot released ──► start next pending

The limiter knows nothing about tasks or cycles; it only sees opaque
zero-argument callables returning awaitables.

Example::

    limiter = ConcurrencyLimiter(2)
    handles = [limiter.submit(lambda i=i: fetch(i)) for i in range(5)]
    results = await asyncio.gather(*handles)
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from keeper.core.errors import InvalidConfigError
from keeper.core.logging import get_logger

logger = get_logger(__name__)

Work = Callable[[], Awaitable[Any]]


@dataclass
class _PendingWork:
    work: Work
    handle: asyncio.Future


def validate_concurrency(value: Any, key: str = "max_concurrency") -> int:
    """Return *value* if it is a positive integer, else raise :class:`InvalidConfigError`."""
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise InvalidConfigError(
            key, value, f"{key} must be a positive integer, got {value!r}"
        )
    return value


class ConcurrencyLimiter:
    """Admit at most ``max_concurrency`` work items at a time.

    Excess submissions wait in FIFO order and start as soon as any running
    item finishes, whether it succeeded or failed.

    Parameters
    ----------
    max_concurrency : int
        Ceiling on simultaneously running work items. Must be >= 1.
    """

    def __init__(self, max_concurrency: int) -> None:
        self._max_concurrency = validate_concurrency(max_concurrency)
        self._active = 0
        self._pending: deque[_PendingWork] = deque()
        self._tasks: set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    # ── Inspection ───────────────────────────────────────────────────

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    @property
    def active_count(self) -> int:
        """Number of work items currently running."""
        return self._active

    @property
    def pending_count(self) -> int:
        """Number of work items submitted but not yet started."""
        return len(self._pending)

    # ── Submission ───────────────────────────────────────────────────

    def submit(self, work: Work) -> asyncio.Future:
        """Schedule *work* and return a handle for its outcome.

        Must be called from a running event loop.  The returned future
        resolves to whatever ``work()`` returns, fails with whatever it
        raises, or is cancelled if :meth:`cancel_pending` discards it
        before it starts.
        """
        handle = asyncio.get_running_loop().create_future()
        self._pending.append(_PendingWork(work=work, handle=handle))
        self._start_next()
        return handle

    def cancel_pending(self) -> int:
        """Cancel every work item that has not started yet.

        Running items are left alone.  Returns the number of handles
        cancelled.
        """
        cancelled = 0
        while self._pending:
            item = self._pending.popleft()
            if item.handle.cancel():
                cancelled += 1
        if cancelled:
            logger.debug(
                "limiter.cancel_pending",
                cancelled=cancelled,
                active=self._active,
            )
        return cancelled

    async def wait_idle(self) -> None:
        """Wait until no work item is running.

        Pending items still start as slots free up, so callers that want to
        stop quickly call :meth:`cancel_pending` first.
        """
        await self._idle.wait()

    # ── Scheduling ───────────────────────────────────────────────────

    def _start_next(self) -> None:
        while self._active < self._max_concurrency and self._pending:
            item = self._pending.popleft()
            if item.handle.done():
                # Cancelled by whoever held the handle.
                continue
            self._active += 1
            self._idle.clear()
            task = asyncio.ensure_future(self._run(item))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, item: _PendingWork) -> None:
        try:
            result = await item.work()
        except asyncio.CancelledError:
            item.handle.cancel()
            raise
        except Exception as exc:
            if not item.handle.done():
                item.handle.set_exception(exc)
        else:
            if not item.handle.done():
                item.handle.set_result(result)
        finally:
            self._active -= 1
            self._start_next()
            if self._active == 0:
                self._idle.set()

    def __repr__(self) -> str:
        return (
            f"ConcurrencyLimiter(max_concurrency={self._max_concurrency}, "
            f"active={self._active}, pending={len(self._pending)})"
        )


__all__ = ["ConcurrencyLimiter", "Work", "validate_concurrency"]
