"""Execution layer: concurrency limiter, execution queue, keeper loop.

Usage::

    from keeper.execution import ExecutionQueue

    queue = ExecutionQueue(max_concurrency=3)
    result = await queue.enqueue(task_ids, executor)
    ...
    await queue.drain()
"""

from keeper.execution.events import (
    CycleComplete,
    EventEmitter,
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
    TaskRecord,
    TaskState,
)
from keeper.execution.queue import ExecutionQueue
from keeper.execution.worker import (
    KeeperLoop,
    KeeperStats,
    StaticTaskSource,
    TaskSource,
    log_queue_events,
    sleep_executor,
)

__all__ = [
    # limiter
    "ConcurrencyLimiter",
    # queue
    "ExecutionQueue",
    # models
    "CycleResult",
    "CycleStats",
    "TaskRecord",
    "TaskState",
    # events
    "CycleComplete",
    "EventEmitter",
    "QueueEvent",
    "QueueEventType",
    "TaskFailed",
    "TaskStarted",
    "TaskSucceeded",
    # worker
    "KeeperLoop",
    "KeeperStats",
    "StaticTaskSource",
    "TaskSource",
    "log_queue_events",
    "sleep_executor",
]
