"""
Structured error types for timecapsule.

Every failure that crosses a public boundary (codec, store, digger) is a
``TimeCapsuleError`` carrying a category, an explicit retry flag, a
structured context and the chained underlying exception.

Manifesto:
    - **Typed hierarchy:** decode failures, transport failures and
      exhausted retries are different problems with different remedies
    - **Explicit retry semantics:** every error knows if it's retryable
    - **Rich context:** store type, key and attempt count travel with
      the error into the logs
    - **Error chaining:** the redis exception is kept as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                     TimeCapsuleError                             │
        │          (category, retryable, context, cause)                  │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  StoreError            CapsuleDecodeError    ConfigError         │
        │  (STORAGE)             (PARSE)               (CONFIG)            │
        │      │                                                           │
        │  StoreTransportError   OperationTimeoutError DiggerError         │
        │  RequeueExhaustedError (NETWORK, retryable)  (INTERNAL)          │
        │  DestroyExhaustedError                                           │
        └─────────────────────────────────────────────────────────────────┘

Guardrails:
    ❌ DON'T: Re-bury a capsule that failed to decode
    ✅ DO: Raise CapsuleDecodeError and let the entry drop

    ❌ DON'T: Swallow the redis exception
    ✅ DO: Pass it as cause= for error chaining

    ❌ DON'T: Retry an *ExhaustedError
    ✅ DO: Log it; the store already spent its retry budget

Tags:
    error-handling, exception-hierarchy, retry-logic, timecapsule

Doc-Types:
    api-reference
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    NETWORK = "NETWORK"  # Connection refused, timeouts
    STORAGE = "STORAGE"  # Sorted set command failures, exhausted retries
    PARSE = "PARSE"  # Malformed capsule strings
    CONFIG = "CONFIG"  # Missing or invalid settings
    INTERNAL = "INTERNAL"  # Misuse, unexpected state
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Attributes:
        store: Diagnostic name of the store adapter (``"Redis"``)
        key: Sorted set key the operation targeted
        operation: Store operation (``"dig"``, ``"destroy"``)
        attempts: Number of attempts made before giving up
        metadata: Anything else worth logging
    """

    store: str | None = None
    key: str | None = None
    operation: str | None = None
    attempts: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize non-empty fields for logging."""
        result: dict[str, Any] = {}
        for name in ("store", "key", "operation", "attempts"):
            value = getattr(self, name)
            if value is not None:
                result[name] = value
        result.update(self.metadata)
        return result


class TimeCapsuleError(Exception):
    """
    Base exception for all timecapsule errors.

    Subclasses set ``default_category`` and ``default_retryable`` so that
    callers rarely need to pass them explicitly.

    Example:
        >>> error = StoreTransportError("ZPOPMIN failed")
        >>> error.retryable
        True
        >>> error.with_context(store="Redis", key="jobs").context.key
        'jobs'
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
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> TimeCapsuleError:
        """
        Add context to this error (fluent API).

        Usage:
            raise StoreTransportError("ZADD failed", cause=exc).with_context(
                store="Redis", key="jobs", operation="bury"
            )
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
# STORE ERRORS
# =============================================================================


class StoreError(TimeCapsuleError):
    """A store operation failed."""

    default_category = ErrorCategory.STORAGE


class StoreTransportError(StoreError):
    """The backing store was unreachable or rejected a command."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class RequeueExhaustedError(StoreError):
    """
    A prematurely popped entry could not be put back.

    The entry is gone from the store at this point; the log line carrying
    this error is the only record of it.
    """

    default_retryable = False


class DestroyExhaustedError(StoreError):
    """
    A delivered capsule could not be removed.

    The entry stays in the store and will be dug up again later.
    """

    default_retryable = False


# =============================================================================
# CODEC ERRORS
# =============================================================================


class CapsuleDecodeError(TimeCapsuleError):
    """A transportable string is not a valid capsule."""

    default_category = ErrorCategory.PARSE
    default_retryable = False


# =============================================================================
# EXECUTION ERRORS
# =============================================================================


class OperationTimeoutError(TimeCapsuleError):
    """
    A store call exceeded its deadline.

    Attributes:
        timeout: The timeout value that was exceeded
        elapsed: How long the call ran before we stopped waiting
    """

    default_category = ErrorCategory.NETWORK
    default_retryable = True

    def __init__(self, operation: str, timeout: float, elapsed: float | None = None):
        self.timeout = timeout
        self.elapsed = elapsed

        msg = f"Operation '{operation}' timed out after {timeout}s"
        if elapsed is not None:
            msg += f" (ran for {elapsed:.2f}s)"

        super().__init__(msg, context=ErrorContext(operation=operation))


class DiggerError(TimeCapsuleError):
    """Misuse of a Digger (handler set twice, bad interval)."""

    default_category = ErrorCategory.INTERNAL


class ConfigError(TimeCapsuleError):
    """Invalid configuration."""

    default_category = ErrorCategory.CONFIG


# =============================================================================
# HELPERS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check whether an error is worth another attempt.

    Plain ``ConnectionError`` / ``TimeoutError`` count as retryable; any
    other non-timecapsule exception does not.
    """
    if isinstance(error, TimeCapsuleError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError))


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "TimeCapsuleError",
    "StoreError",
    "StoreTransportError",
    "RequeueExhaustedError",
    "DestroyExhaustedError",
    "CapsuleDecodeError",
    "OperationTimeoutError",
    "DiggerError",
    "ConfigError",
    "is_retryable",
]
