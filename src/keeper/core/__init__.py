"""Core primitives shared by the keeper: errors, logging, settings."""

from keeper.core.errors import (
    ConfigError,
    ErrorCategory,
    ErrorContext,
    InvalidConfigError,
    InvalidTaskBatchError,
    KeeperError,
    OrchestrationError,
    QueueDrainedError,
    TaskExecutionError,
    ValidationError,
    categorize_error,
)
from keeper.core.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)

__all__ = [
    # errors
    "ConfigError",
    "ErrorCategory",
    "ErrorContext",
    "InvalidConfigError",
    "InvalidTaskBatchError",
    "KeeperError",
    "OrchestrationError",
    "QueueDrainedError",
    "TaskExecutionError",
    "ValidationError",
    "categorize_error",
    # logging
    "LogContext",
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
    "unbind_context",
]
