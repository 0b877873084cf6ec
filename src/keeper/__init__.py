"""
SoroTask Keeper - bounded-concurrency execution of due tasks.

- keeper.core: errors, structured logging, settings
- keeper.execution: ConcurrencyLimiter, ExecutionQueue, KeeperLoop
- keeper.cli: ``keeper`` command line
"""

__version__ = "0.1.0"

from keeper.execution import (  # noqa: E402
    ConcurrencyLimiter,
    CycleResult,
    CycleStats,
    ExecutionQueue,
    KeeperLoop,
    QueueEventType,
)

__all__ = [
    "__version__",
    "ConcurrencyLimiter",
    "CycleResult",
    "CycleStats",
    "ExecutionQueue",
    "KeeperLoop",
    "QueueEventType",
]
