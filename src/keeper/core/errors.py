"""
Structured error types for the keeper.

Provides a small hierarchy of typed errors carrying a category, a retry
hint, structured context and an optional chained cause, so that failures
can be logged and reasoned about uniformly.

Manifesto:
    - **Typed Error Hierarchy:** Configuration, validation, orchestration
      and execution failures are distinct types
    - **Rich Context:** Errors carry cycle/task metadata for logging
    - **Error Chaining:** The original executor exception is preserved

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────┐
        │                        KeeperError                           │
        │  (category, retryable, context, cause)                       │
        ├─────────────────────────────────────────────────────────────┤
        │  ConfigError         ValidationError      OrchestrationError │
        │  (CONFIG)            (VALIDATION)         (ORCHESTRATION)    │
        │       │                    │                     │           │
        │  InvalidConfigError  InvalidTaskBatchError QueueDrainedError │
        │                                                              │
        │  TaskExecutionError (EXECUTION)                              │
        └─────────────────────────────────────────────────────────────┘

    Cancellation of pending work is *not* an error: a drained task ends
    in the ``CANCELLED`` state and no error object is produced for it.

Examples:
    >>> err = InvalidConfigError("max_concurrency", 0)
    >>> err.category
    <ErrorCategory.CONFIG: 'CONFIG'>
    >>> err.to_dict()["error_type"]
    'InvalidConfigError'

Tags:
    errors, exception-hierarchy, error-context, keeper
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories used for classification and log routing."""

    CONFIG = "CONFIG"                  # Invalid settings, bad ceiling
    VALIDATION = "VALIDATION"          # Malformed input
    EXECUTION = "EXECUTION"            # Executor raised for a task
    ORCHESTRATION = "ORCHESTRATION"    # Queue lifecycle misuse

    INTERNAL = "INTERNAL"              # Bugs, unexpected state
    UNKNOWN = "UNKNOWN"                # Uncategorized errors


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Only non-None fields are emitted by :meth:`to_dict`, and anything
    that does not have a dedicated field goes into ``metadata``.

    Examples:
        >>> ctx = ErrorContext(cycle_id="c-1", task_id="42")
        >>> ctx.to_dict()
        {'cycle_id': 'c-1', 'task_id': '42'}
    """

    cycle_id: str | None = None
    task_id: Any = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result: dict[str, Any] = {}
        for key in ["cycle_id", "task_id"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class KeeperError(Exception):
    """
    Base exception for all keeper errors.

    All KeeperError instances carry:
    - **category:** ErrorCategory for classification
    - **retryable:** Whether repeating the operation could succeed
    - **context:** ErrorContext with structured metadata
    - **cause:** Optional underlying exception for chaining

    Subclasses set ``default_category`` and ``default_retryable`` to give
    sensible defaults for their domain.

    Examples:
        >>> error = KeeperError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>

        >>> error = KeeperError("Bad batch").with_context(cycle_id="c-9")
        >>> error.context.cycle_id
        'c-9'

    Guardrails:
        ❌ DON'T: Raise plain Exception for expected misuse
        ✅ DO: Use the appropriate KeeperError subclass

        ❌ DON'T: Forget to chain the original exception
        ✅ DO: Pass cause= when wrapping exceptions
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> KeeperError:
        """
        Add context to this error (fluent API).

        Usage:
            raise QueueDrainedError("closed").with_context(cycle_id=cycle_id)
        """
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigError(KeeperError):
    """
    Configuration error.

    Never retryable - configuration must be fixed.
    """

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class InvalidConfigError(ConfigError):
    """Configuration value is invalid."""

    def __init__(
        self,
        key: str,
        value: Any,
        message: str | None = None,
        *,
        cause: BaseException | None = None,
    ):
        self.key = key
        self.value = value
        super().__init__(
            message or f"Invalid configuration for {key}: {value!r}",
            cause=cause,
        )


# =============================================================================
# VALIDATION ERRORS
# =============================================================================


class ValidationError(KeeperError):
    """Input failed validation."""

    default_category = ErrorCategory.VALIDATION
    default_retryable = False


class InvalidTaskBatchError(ValidationError):
    """The task batch or executor handed to ``enqueue`` is malformed."""


# =============================================================================
# ORCHESTRATION ERRORS
# =============================================================================


class OrchestrationError(KeeperError):
    """Queue lifecycle error."""

    default_category = ErrorCategory.ORCHESTRATION
    default_retryable = False


class QueueDrainedError(OrchestrationError):
    """Work was offered to a queue that has been drained."""

    def __init__(self, message: str | None = None):
        super().__init__(message or "Execution queue has been drained; no new cycles are accepted")


# =============================================================================
# EXECUTION ERRORS
# =============================================================================


class TaskExecutionError(KeeperError):
    """
    An executor failed for one task.

    Wraps the exception raised by the executor so task failure events and
    records carry a uniform payload. The original exception is available as
    ``cause`` (and ``__cause__``).
    """

    default_category = ErrorCategory.EXECUTION
    default_retryable = False

    def __init__(self, task_id: Any, cause: BaseException):
        self.task_id = task_id
        super().__init__(
            f"Task {task_id} failed: {cause}",
            context=ErrorContext(task_id=task_id),
            cause=cause,
        )


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def categorize_error(error: BaseException) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, KeeperError):
        return error.category
    if isinstance(error, (TypeError, ValueError)):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "KeeperError",
    "ConfigError",
    "InvalidConfigError",
    "ValidationError",
    "InvalidTaskBatchError",
    "OrchestrationError",
    "QueueDrainedError",
    "TaskExecutionError",
    "categorize_error",
]
