"""Execution records: per-task state and per-cycle statistics.

A cycle is one :meth:`ExecutionQueue.enqueue` call.  Each accepted task
gets an ephemeral :class:`TaskRecord`; the cycle's counters live in a
:class:`CycleStats`; the finished cycle is summarised by a
:class:`CycleResult`.  Nothing here is persisted.

State machine::

    QUEUED ──► RUNNING ──► SUCCEEDED
       │           └─────► FAILED
       └──────► CANCELLED          (discarded by drain before starting)
"""

from __future__ import annotations

from collections.abc import Hashable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

TaskId = Hashable


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class TaskState(str, Enum):
    """Lifecycle state of one task within one cycle."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.SUCCEEDED, TaskState.FAILED, TaskState.CANCELLED)


@dataclass
class TaskRecord:
    """A single task's attempt within a cycle. Exactly one attempt, no retries."""

    task_id: TaskId
    state: TaskState = TaskState.QUEUED
    error: BaseException | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        """Wall-clock duration if both timestamps are set."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "state": self.state.value,
            "error": str(self.error) if self.error is not None else None,
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class CycleStats:
    """Counters for the cycle in progress.

    ``depth`` counts accepted tasks that have not started (it also drops
    when a drain cancels a task), ``in_flight`` counts running tasks.
    """

    depth: int = 0
    in_flight: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0

    def snapshot(self) -> CycleStats:
        return CycleStats(**asdict(self))

    def reset(self) -> None:
        self.depth = 0
        self.in_flight = 0
        self.completed = 0
        self.failed = 0
        self.cancelled = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class CycleResult:
    """Aggregate outcome of one cycle."""

    cycle_id: str
    stats: CycleStats
    records: list[TaskRecord] = field(default_factory=list)
    skipped: list[TaskId] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime = field(default_factory=utcnow)

    @property
    def total(self) -> int:
        """Number of tasks admitted to the cycle (skipped ones excluded)."""
        return len(self.records)

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()

    def by_state(self, state: TaskState) -> list[TaskId]:
        return [r.task_id for r in self.records if r.state == state]

    def to_dict(self) -> dict[str, Any]:
        """Serialise for logging."""
        return {
            "cycle_id": self.cycle_id,
            "total": self.total,
            "skipped": list(self.skipped),
            "duration_seconds": self.duration_seconds,
            **self.stats.to_dict(),
            "records": [r.to_dict() for r in self.records],
        }


__all__ = [
    "TaskId",
    "TaskState",
    "TaskRecord",
    "CycleStats",
    "CycleResult",
    "utcnow",
]
