"""Exception utilities for opentrack."""

import functools
import logging
from enum import Enum
from typing import Any, Callable, Optional


class ErrorSeverity(Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class OpenTrackError(Exception):
    """Base exception for all opentrack errors."""

    status_code = 500

    def __init__(
        self,
        message: str,
        cause: Optional[Exception] = None,
        context: Optional[dict] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM
    ):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.context = context or {}
        self.severity = severity

    def to_dict(self) -> dict:
        return {"error": self.message}


class ConfigurationError(OpenTrackError):
    """Raised when configuration is invalid or missing."""
    pass


class StorageError(OpenTrackError):
    """Raised when the event log cannot be read or written."""
    pass


class ValidationError(OpenTrackError):
    """Raised when client input is malformed."""

    status_code = 400

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        super().__init__(message, **kwargs)


class NotFoundError(OpenTrackError):
    """Raised when a tracking identifier or message is unknown."""

    status_code = 404

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        super().__init__(message, **kwargs)


class ConflictError(OpenTrackError):
    """Raised when a tracking identifier has already been issued."""

    status_code = 409

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        super().__init__(message, **kwargs)


def handle_exceptions(
    logger: Optional[logging.Logger] = None,
    reraise: bool = True,
    default_return: Any = None,
    context: Optional[dict] = None
):
    """
    Decorator to handle exceptions uniformly.

    Args:
        logger: Logger to use for error reporting
        reraise: Whether to re-raise the exception after logging
        default_return: Value to return if an exception occurs and reraise is False
        context: Additional context to include in the error
    """
    def decorator(func: Callable) -> Callable:
        log = logger or logging.getLogger(func.__module__)

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except OpenTrackError as e:
                if context:
                    e.context.update(context)

                log.error(
                    f"opentrack error in {func.__name__}: {e.message}",
                    extra={
                        "exception_type": type(e).__name__,
                        "severity": e.severity.value,
                        "context": e.context,
                        "cause": str(e.cause) if e.cause else None
                    },
                    exc_info=True
                )

                if reraise:
                    raise
                return default_return

            except Exception as e:
                error_context = dict(context or {})
                error_context.update({
                    "function": func.__name__,
                    "args": str(args)[:200],  # Truncate to avoid log spam
                    "kwargs": str(kwargs)[:200]
                })

                log.error(
                    f"Unexpected error in {func.__name__}: {str(e)}",
                    extra={
                        "exception_type": type(e).__name__,
                        "severity": ErrorSeverity.HIGH.value,
                        "context": error_context
                    },
                    exc_info=True
                )

                if reraise:
                    raise OpenTrackError(
                        f"Unexpected error in {func.__name__}: {str(e)}",
                        cause=e,
                        context=error_context,
                        severity=ErrorSeverity.HIGH
                    ) from e
                return default_return

        return wrapper
    return decorator


def format_exception_chain(exception: Exception) -> str:
    """
    Format an exception chain for logging or display.

    Args:
        exception: The exception to format

    Returns:
        Formatted exception chain as a string
    """
    lines = []
    current = exception

    while current:
        if isinstance(current, OpenTrackError):
            lines.append(f"{type(current).__name__}: {current.message}")
            if current.context:
                lines.append(f"  Context: {current.context}")
            if current.cause:
                lines.append("  Caused by:")
                current = current.cause
            else:
                break
        else:
            lines.append(f"{type(current).__name__}: {str(current)}")
            break

    return "\n".join(lines)
