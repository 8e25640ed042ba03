"""Standardized Error Handling Utilities

Defines the conversion error taxonomy and the helpers used across vid2anim to
log, wrap and (for cleanup paths) swallow failures consistently.

Callers distinguish three user-facing outcomes:
    * environment unsupported -> ``EngineEnvironmentError`` (persistent guidance)
    * this attempt failed     -> any other ``Vid2AnimError`` (offer retry)
    * user canceled           -> ``ConversionCancelledError`` (silent return)
"""

from __future__ import annotations

import logging
import traceback
from collections.abc import Awaitable, Callable
from contextlib import contextmanager
from enum import Enum
from typing import Any


class ErrorLevel(Enum):
    """Error severity levels for consistent logging."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class Vid2AnimError(Exception):
    """Base exception class for all vid2anim errors."""

    retryable: bool = True

    def __init__(
        self, message: str, cause: Exception | None = None, context: dict | None = None
    ):
        super().__init__(message)
        self.cause = cause
        self.context = context or {}

    def __str__(self) -> str:
        base_msg = super().__str__()
        if self.cause:
            return f"{base_msg} (caused by: {self.cause})"
        return base_msg


class EngineEnvironmentError(Vid2AnimError):
    """Raised when the required execution context is unavailable. Not retryable."""

    retryable = False


class InitializationError(Vid2AnimError):
    """Raised when the engine cannot be loaded (asset download, process start)."""

    pass


class ConfigurationError(Vid2AnimError):
    """Raised when configuration is invalid or missing."""

    retryable = False


class EngineError(Vid2AnimError):
    """Raised when an engine command exits unsuccessfully."""

    pass


class ConversionError(Vid2AnimError):
    """Raised when a conversion fails; carries a best-effort classification."""

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        context: dict | None = None,
        error_context: Any = None,
    ):
        super().__init__(message, cause=cause, context=context)
        self.error_context = error_context


class StallError(ConversionError):
    """Raised when the watchdog or log-silence detector terminated the engine."""

    pass


class OutputValidationError(ConversionError):
    """Raised when output bytes fail the size or signature check."""

    pass


class ConversionValidationError(Vid2AnimError):
    """Raised when conversion inputs are invalid (e.g. too few frames)."""

    retryable = False


class ConversionCancelledError(Vid2AnimError):
    """Raised when the user canceled the conversion."""

    is_cancellation = True
    retryable = False


class ConversionInProgressError(Vid2AnimError):
    """Raised when a conversion is requested while another is in flight."""

    retryable = False

    def __init__(self, message: str = "Another conversion is already in progress", **kwargs: Any):
        super().__init__(message, **kwargs)


def describe_error(error: BaseException) -> str:
    """Map an error to the user-visible outcome: environment, cancelled or failed."""
    if isinstance(error, EngineEnvironmentError):
        return "environment"
    if isinstance(error, ConversionCancelledError):
        return "cancelled"
    return "failed"


def handle_error(
    error: Exception,
    operation: str,
    error_type: type[Vid2AnimError] = ConversionError,
    level: ErrorLevel = ErrorLevel.ERROR,
    context: dict | None = None,
    logger: logging.Logger | None = None,
    reraise: bool = True,
) -> Vid2AnimError | None:
    """Standardized error handling with consistent logging and error transformation.

    Args:
        error: Original exception that occurred
        operation: Description of operation that failed
        error_type: Type of Vid2AnimError to raise
        level: Logging level for the error
        context: Additional context information
        logger: Logger to use (defaults to module logger)
        reraise: Whether to reraise the transformed exception

    Returns:
        The transformed error if reraise=False, otherwise None

    Raises:
        Vid2AnimError: Transformed error if reraise=True
    """
    if logger is None:
        logger = logging.getLogger(__name__)

    message = f"Failed to {operation}: {error}"

    error_context_data = dict(context or {})
    error_context_data.update(
        {
            "operation": operation,
            "original_error_type": type(error).__name__,
            "original_error_message": str(error),
        }
    )

    transformed_error = error_type(message, cause=error, context=error_context_data)

    log_message = f"🚨 {operation.capitalize()} failed: {error}"
    extra = {k: v for k, v in (context or {}).items()}
    if extra:
        context_str = ", ".join(f"{k}={v}" for k, v in extra.items())
        log_message += f" (context: {context_str})"

    log_func = getattr(logger, level.value)
    log_func(log_message)

    if level in [ErrorLevel.ERROR, ErrorLevel.CRITICAL]:
        logger.debug(f"Traceback for {operation}: {traceback.format_exc()}")

    if reraise:
        raise transformed_error from error
    return transformed_error


@contextmanager
def error_context(
    operation: str,
    error_type: type[Vid2AnimError] = ConversionError,
    level: ErrorLevel = ErrorLevel.ERROR,
    context: dict | None = None,
    logger: logging.Logger | None = None,
) -> Any:
    """Context manager for standardized error handling.

    Usage:
        with error_context("read engine output", EngineError, context={'file': 'output.gif'}):
            risky_operation()
    """
    try:
        yield
    except Vid2AnimError:
        raise
    except Exception as e:
        handle_error(e, operation, error_type, level, context, logger, reraise=True)


def log_warning_with_context(
    message: str, context: dict | None = None, logger: logging.Logger | None = None
) -> None:
    """Log a warning with standardized context formatting."""
    if logger is None:
        logger = logging.getLogger(__name__)

    warning_msg = f"⚠️  {message}"
    if context:
        context_str = ", ".join(f"{k}={v}" for k, v in context.items())
        warning_msg += f" (context: {context_str})"

    logger.warning(warning_msg)


async def safe_cleanup(
    operation_func: Callable[[], Awaitable[Any]],
    operation_name: str,
    logger: logging.Logger | None = None,
) -> bool:
    """Await a cleanup step, logging and swallowing any failure.

    Cleanup must never mask the primary outcome of a conversion.

    Returns:
        True if the cleanup step completed, False if it failed
    """
    if logger is None:
        logger = logging.getLogger(__name__)
    try:
        await operation_func()
        return True
    except Exception as e:
        logger.warning(f"🧹 Cleanup step '{operation_name}' failed (ignored): {e}")
        return False
