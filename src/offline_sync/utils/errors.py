"""
Error handling framework for the offline sync engine.

This module provides:
- Hierarchical exception classes
- Error context preservation
- Structured error responses
- Error handling decorator and context manager

Errors raised inside the engine are captured where they occur and turned into
status values; these classes give those captures a consistent shape for
logging.
"""

from typing import Optional, Dict, Any, List, Type, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import traceback
from contextlib import contextmanager
import asyncio
import functools

from .logging import get_logger


logger = get_logger("offline-sync.errors")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ErrorSeverity(Enum):
    """Error severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for classification."""
    NETWORK = "network"
    PERSISTENCE = "persistence"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    LIFECYCLE = "lifecycle"
    INTERNAL = "internal"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Context information for an error."""
    timestamp: datetime = field(default_factory=_utcnow)
    component: Optional[str] = None
    operation: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None


class OfflineSyncError(Exception):
    """Base exception for all engine errors."""

    code: str = "OFFLINE_SYNC_ERROR"
    default_message: str = "An error occurred in the sync engine"
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.UNKNOWN
    is_retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        **kwargs
    ):
        self.message = message or self.default_message
        self.context = context or ErrorContext()
        self.cause = cause
        self.kwargs = kwargs

        if not self.context.stack_trace and cause is not None:
            self.context.stack_trace = "".join(
                traceback.format_exception(type(cause), cause, cause.__traceback__)
            )

        super().__init__(self.message)

    def get_suggestions(self) -> List[str]:
        """Get error resolution suggestions."""
        return []

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "severity": self.severity.value,
                "category": self.category.value,
                "is_retryable": self.is_retryable,
                "suggestions": self.get_suggestions(),
                "cause": repr(self.cause) if self.cause else None,
                "context": {
                    "timestamp": self.context.timestamp.isoformat(),
                    "component": self.context.component,
                    "operation": self.context.operation,
                    "metadata": self.context.metadata
                }
            }
        }


class ConfigurationError(OfflineSyncError):
    """Configuration errors."""
    code = "CONFIG_ERROR"
    default_message = "Configuration error"
    category = ErrorCategory.CONFIGURATION

    def get_suggestions(self) -> List[str]:
        return [
            "Check your configuration file syntax",
            "Check OFFLINE_SYNC_* environment variables",
        ]


class LifecycleError(OfflineSyncError):
    """Component used outside its running window."""
    code = "LIFECYCLE_ERROR"
    default_message = "Component is not running"
    category = ErrorCategory.LIFECYCLE


# Network Errors

class NetworkError(OfflineSyncError):
    """Network-related errors."""
    code = "NETWORK_ERROR"
    default_message = "Network error occurred"
    category = ErrorCategory.NETWORK
    severity = ErrorSeverity.WARNING
    is_retryable = True


class ProbeError(NetworkError):
    """Reachability probe failed."""
    code = "PROBE_ERROR"
    default_message = "Remote authority is not reachable"
    severity = ErrorSeverity.DEBUG


class ReconciliationError(NetworkError):
    """Reconciliation exchange failed or was rejected."""
    code = "RECONCILIATION_ERROR"
    default_message = "Some changes could not be synchronized"

    def __init__(self, message: Optional[str] = None, status: Optional[int] = None, **kwargs):
        self.status = status
        super().__init__(message, **kwargs)


# Persistence Errors

class PersistenceError(OfflineSyncError):
    """Local storage read/write failure."""
    code = "PERSISTENCE_ERROR"
    default_message = "Local persistence failed"
    category = ErrorCategory.PERSISTENCE


# Validation Errors

class ValidationError(OfflineSyncError):
    """Input validation errors."""
    code = "VALIDATION_ERROR"
    default_message = "Validation error"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING

    def __init__(self, field: str, value: Any, constraint: str, **kwargs):
        self.field = field
        self.value = value
        self.constraint = constraint
        message = f"Validation failed for field '{field}': {constraint}"
        super().__init__(message, **kwargs)

    def get_suggestions(self) -> List[str]:
        return [f"Ensure '{self.field}' satisfies: {self.constraint}"]


def handle_errors(
    *error_classes: Type[Exception],
    fallback: Optional[Callable] = None,
    reraise: bool = True,
    log_level: ErrorSeverity = ErrorSeverity.ERROR
):
    """
    Decorator turning the listed exceptions into a log line plus a fallback.

    With a ``fallback`` the wrapped call returns the fallback's result for the
    same arguments; otherwise the error is re-raised, or swallowed as None
    when ``reraise`` is false. Exceptions not listed pass through untouched.
    """
    caught = error_classes or (Exception,)
    with_traceback = log_level in (ErrorSeverity.ERROR, ErrorSeverity.CRITICAL)

    def decorator(func):
        def recover(error: Exception, args, kwargs):
            getattr(logger, log_level.value)(
                f"error_in_{func.__name__}",
                error=str(error),
                error_type=type(error).__name__,
                exc_info=with_traceback
            )
            if fallback is not None:
                return fallback(*args, **kwargs)
            if reraise:
                raise error
            return None

        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                try:
                    return await func(*args, **kwargs)
                except caught as e:
                    result = recover(e, args, kwargs)
                    if asyncio.iscoroutine(result):
                        result = await result
                    return result
            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except caught as e:
                return recover(e, args, kwargs)
        return sync_wrapper

    return decorator


@contextmanager
def error_context(
    component: str,
    operation: str,
    reraise: bool = True,
    **metadata
):
    """
    Context manager that tags errors with component/operation context.

    Engine errors get their context filled in; anything else is wrapped in
    OfflineSyncError.

    Args:
        component: Component name
        operation: Operation name
        reraise: Whether to reraise exceptions
        **metadata: Additional context metadata
    """
    context = ErrorContext(
        component=component,
        operation=operation,
        metadata=metadata
    )

    try:
        yield context
    except OfflineSyncError as e:
        e.context.component = e.context.component or component
        e.context.operation = e.context.operation or operation
        e.context.metadata.update(metadata)
        logger.error("sync_error_in_context", error=e.to_dict())
        if reraise:
            raise
    except Exception as e:
        wrapped = OfflineSyncError(
            message=str(e),
            context=context,
            cause=e
        )
        logger.error("unexpected_error_in_context", error=wrapped.to_dict(), exc_info=True)
        if reraise:
            raise wrapped from e


__all__ = [
    'OfflineSyncError',
    'ErrorContext',
    'ErrorSeverity',
    'ErrorCategory',
    'ConfigurationError',
    'LifecycleError',
    'NetworkError',
    'ProbeError',
    'ReconciliationError',
    'PersistenceError',
    'ValidationError',
    'handle_errors',
    'error_context',
]
