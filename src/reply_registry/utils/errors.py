"""
Error handling framework for the reply session registry.

This module provides:
- Hierarchical exception classes
- Error context preservation
- Structured error responses
- Helpers for wrapping and logging errors at component boundaries
"""

from typing import Optional, Dict, Any, List, Type, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from contextlib import contextmanager
from pathlib import Path
import functools
import traceback

from .logging import get_logger


logger = get_logger("reply-registry.errors")


class ErrorSeverity(Enum):
    """Error severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for classification."""
    FILESYSTEM = "filesystem"
    CONCURRENCY = "concurrency"
    DATA = "data"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Context information for an error."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    session_id: Optional[str] = None
    component: Optional[str] = None
    operation: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None


class RegistryError(Exception):
    """Base exception for all registry errors."""

    code: str = "REGISTRY_ERROR"
    default_message: str = "An error occurred in the reply session registry"
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.UNKNOWN
    is_retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[BaseException] = None,
        **kwargs
    ):
        """Initialize registry error."""
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
        """Convert to dictionary for JSON serialization."""
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
                    "session_id": self.context.session_id,
                    "component": self.context.component,
                    "operation": self.context.operation,
                    "metadata": self.context.metadata
                }
            }
        }


class ConfigurationError(RegistryError):
    """Configuration errors."""
    code = "CONFIG_ERROR"
    default_message = "Configuration error"
    category = ErrorCategory.CONFIGURATION

    def get_suggestions(self) -> List[str]:
        return [
            "Check your configuration file syntax",
            "Check OMC_REGISTRY_* environment variables",
        ]


class FilesystemError(RegistryError):
    """Directory or file creation, permission or I/O failure."""
    code = "FILESYSTEM_ERROR"
    default_message = "Filesystem operation failed"
    category = ErrorCategory.FILESYSTEM
    severity = ErrorSeverity.CRITICAL

    def __init__(self, message: Optional[str] = None, path: Optional[Path] = None, **kwargs):
        self.path = Path(path) if path is not None else None
        super().__init__(message, **kwargs)
        if self.path is not None:
            self.context.metadata.setdefault("path", str(self.path))

    def get_suggestions(self) -> List[str]:
        return [
            "Verify the state directory exists and is writable by the current user",
            "Check free disk space",
        ]


class LockTimeoutError(RegistryError):
    """The registry lock could not be acquired before the overall ceiling."""
    code = "LOCK_TIMEOUT"
    default_message = "Timed out waiting for the registry lock"
    category = ErrorCategory.CONCURRENCY
    severity = ErrorSeverity.WARNING
    is_retryable = True

    def __init__(
        self,
        lock_path: Path,
        waited_seconds: float,
        attempts: int,
        owner_pid: Optional[int] = None,
        **kwargs
    ):
        self.lock_path = Path(lock_path)
        self.waited_seconds = waited_seconds
        self.attempts = attempts
        self.owner_pid = owner_pid
        message = (
            f"Timed out after {waited_seconds:.1f}s ({attempts} attempts) "
            f"waiting for lock {self.lock_path}"
        )
        if owner_pid:
            message += f" held by pid {owner_pid}"
        super().__init__(message, **kwargs)

    def get_suggestions(self) -> List[str]:
        return [
            f"Check whether process {self.owner_pid or '<unknown>'} is stuck",
            f"Remove {self.lock_path} manually if its owner is gone",
        ]


class CorruptRecordError(RegistryError):
    """A registry line could not be decoded into a mapping."""
    code = "CORRUPT_RECORD"
    default_message = "Corrupt registry record"
    category = ErrorCategory.DATA
    severity = ErrorSeverity.DEBUG

    def __init__(self, line_number: int, reason: str, **kwargs):
        self.line_number = line_number
        self.reason = reason
        super().__init__(f"Line {line_number}: {reason}", **kwargs)


class ValidationError(RegistryError):
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
        return [
            f"Check the value of field '{self.field}'",
            f"Ensure it meets the constraint: {self.constraint}"
        ]


class RecordTooLargeError(ValidationError):
    """Serialized record would not fit in a single atomic append."""
    code = "RECORD_TOO_LARGE"

    def __init__(self, size: int, limit: int, **kwargs):
        self.size = size
        self.limit = limit
        super().__init__(
            "record",
            size,
            f"serialized size {size} bytes must not exceed {limit} bytes",
            **kwargs
        )


def handle_errors(
    *error_classes: Type[BaseException],
    fallback: Optional[Callable] = None,
    reraise: bool = True,
    log_level: ErrorSeverity = ErrorSeverity.ERROR
):
    """
    Decorator for handling errors in functions.

    Args:
        error_classes: Exception classes to catch
        fallback: Fallback function to call on error
        reraise: Whether to reraise the exception
        log_level: Logging level for errors
    """
    error_classes = error_classes or (Exception,)

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except error_classes as e:
                getattr(logger, log_level.value)(
                    f"error_in_{func.__name__}",
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=log_level in (ErrorSeverity.ERROR, ErrorSeverity.CRITICAL),
                )

                if fallback:
                    return fallback(*args, **kwargs)

                if reraise:
                    raise

                return None

        return wrapper

    return decorator


@contextmanager
def error_context(
    component: str,
    operation: str,
    path: Optional[Path] = None,
    **metadata
):
    """
    Context manager that annotates registry errors and wraps ``OSError``.

    Args:
        component: Component name
        operation: Operation name
        path: Filesystem path the operation touches
        **metadata: Additional context metadata
    """
    try:
        yield
    except RegistryError as e:
        e.context.component = e.context.component or component
        e.context.operation = e.context.operation or operation
        e.context.metadata.update(metadata)
        raise
    except OSError as e:
        context = ErrorContext(
            component=component,
            operation=operation,
            metadata=dict(metadata),
        )
        target = path if path is not None else getattr(e, "filename", None)
        raise FilesystemError(
            f"{operation} failed: {e.strerror or e}",
            path=target,
            context=context,
            cause=e,
        ) from e


__all__ = [
    'RegistryError',
    'ErrorContext',
    'ErrorSeverity',
    'ErrorCategory',
    'ConfigurationError',
    'FilesystemError',
    'LockTimeoutError',
    'CorruptRecordError',
    'ValidationError',
    'RecordTooLargeError',
    'handle_errors',
    'error_context',
]
