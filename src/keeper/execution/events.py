"""Queue Events: typed lifecycle notifications from the execution queue.

WHY
───
Operators only learn about task failures through notifications: a failed
task never makes ``enqueue`` raise.  Each notification is its own small
frozen dataclass so that listeners get an explicit payload instead of a
positional argument list.

ARCHITECTURE
────────────
::

    QueueEventType          payload
    ──────────────          ───────
    task:started            TaskStarted(task_id, cycle_id)
    task:success            TaskSucceeded(task_id, cycle_id)
    task:failed             TaskFailed(task_id, cycle_id, error)
    cycle:complete          CycleComplete(cycle_id, stats)

    EventEmitter
      ├── .subscribe(handler, event_type=None) ─ returns subscription id
      ├── .unsubscribe(subscription_id)
      └── .emit(event)                         ─ awaits async handlers

Handlers may be plain callables or coroutine functions.  A handler that
raises is logged and skipped; it never interrupts delivery to the other
handlers or the queue's bookkeeping.
"""

from __future__ import annotations

import inspect
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar

from keeper.core.logging import get_logger
from keeper.execution.models import CycleStats, TaskId, utcnow

logger = get_logger(__name__)


class QueueEventType(str, Enum):
    TASK_STARTED = "task:started"
    TASK_SUCCEEDED = "task:success"
    TASK_FAILED = "task:failed"
    CYCLE_COMPLETE = "cycle:complete"


@dataclass(frozen=True)
class QueueEvent:
    """Base class for queue notifications."""

    event_type: ClassVar[QueueEventType]

    cycle_id: str
    timestamp: datetime = field(default_factory=utcnow, compare=False, kw_only=True)


@dataclass(frozen=True)
class TaskStarted(QueueEvent):
    event_type: ClassVar[QueueEventType] = QueueEventType.TASK_STARTED

    task_id: TaskId


@dataclass(frozen=True)
class TaskSucceeded(QueueEvent):
    event_type: ClassVar[QueueEventType] = QueueEventType.TASK_SUCCEEDED

    task_id: TaskId


@dataclass(frozen=True)
class TaskFailed(QueueEvent):
    """The executor raised for ``task_id``.

    ``error`` is the :class:`~keeper.core.errors.TaskExecutionError`
    wrapping the executor's exception; ``reason`` is the original one.
    """

    event_type: ClassVar[QueueEventType] = QueueEventType.TASK_FAILED

    task_id: TaskId
    error: BaseException

    @property
    def reason(self) -> BaseException:
        return self.error.__cause__ or self.error


@dataclass(frozen=True)
class CycleComplete(QueueEvent):
    event_type: ClassVar[QueueEventType] = QueueEventType.CYCLE_COMPLETE

    stats: CycleStats


EventHandler = Callable[[QueueEvent], Awaitable[None] | None]


@dataclass
class Subscription:
    """Internal subscription record."""

    id: str
    handler: EventHandler
    event_type: QueueEventType | None = None

    def matches(self, event: QueueEvent) -> bool:
        return self.event_type is None or self.event_type == event.event_type


class EventEmitter:
    """Deliver queue events to subscribed handlers, in subscription order."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}

    def subscribe(
        self,
        handler: EventHandler,
        event_type: QueueEventType | str | None = None,
    ) -> str:
        """Register *handler* for one event type, or for every event if ``None``.

        Returns:
            Subscription ID for :meth:`unsubscribe`.
        """
        if not callable(handler):
            raise TypeError(f"handler must be callable, got {handler!r}")
        sub_id = f"sub_{uuid.uuid4().hex[:12]}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            handler=handler,
            event_type=QueueEventType(event_type) if event_type is not None else None,
        )
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription. Returns False if it was not registered."""
        return self._subscriptions.pop(subscription_id, None) is not None

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def emit(self, event: QueueEvent) -> None:
        for sub in list(self._subscriptions.values()):
            if not sub.matches(event):
                continue
            try:
                result: Any = sub.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(
                    "queue.event_handler_error",
                    subscription_id=sub.id,
                    event_type=event.event_type.value,
                    error=str(e),
                )


__all__ = [
    "QueueEventType",
    "QueueEvent",
    "TaskStarted",
    "TaskSucceeded",
    "TaskFailed",
    "CycleComplete",
    "EventHandler",
    "EventEmitter",
]
