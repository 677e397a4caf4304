"""
Centralized error classification and logging decorators for store operations.
Recoverable errors (lost connection, timeouts, busy store) become
PersistenceUnavailable and are queued; everything else is surfaced.
"""
import asyncio
import functools
import inspect
import logging
from typing import Any, Callable, Optional

from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
    StatementError,
    TimeoutError as PoolTimeoutError,
)

from fieldsync.core.exceptions import PersistenceFailed, PersistenceUnavailable


logger = logging.getLogger(__name__)

# Markers of a busy/locked store in driver messages
_BUSY_MARKERS = ("database is locked", "database is busy", "sqlite_busy", "sqlite_locked")


class DatabaseErrorHandler:
    """Centralized database error handling utilities."""

    DATABASE_EXCEPTIONS = (
        SQLAlchemyError,
        ConnectionError,
        OSError,
        asyncio.TimeoutError,
    )

    @staticmethod
    def handle_database_error(
        exc: BaseException,
        operation: str,
        context: Optional[dict] = None
    ) -> tuple[bool, str]:
        """
        Classify a database error and log it.

        Args:
            exc: The exception that occurred
            operation: Description of the database operation
            context: Additional context information

        Returns:
            Tuple of (is_recoverable, error_message)
        """
        context_str = f" | Context: {context}" if context else ""

        if isinstance(exc, IntegrityError):
            error_msg = f"Database integrity error during {operation}: {exc}{context_str}"
            logger.warning(error_msg)
            return False, error_msg

        elif isinstance(exc, (ConnectionError, DisconnectionError, InterfaceError)):
            error_msg = f"Database connection error during {operation}: {exc}{context_str}"
            logger.warning(error_msg)
            return True, error_msg

        elif isinstance(exc, (asyncio.TimeoutError, PoolTimeoutError)):
            error_msg = f"Database timeout during {operation}: {exc}{context_str}"
            logger.warning(error_msg)
            return True, error_msg

        elif isinstance(exc, OperationalError):
            error_msg = f"Database operational error during {operation}: {exc}{context_str}"
            logger.warning(error_msg)
            return True, error_msg

        elif isinstance(exc, DBAPIError) and exc.connection_invalidated:
            error_msg = f"Database connection invalidated during {operation}: {exc}{context_str}"
            logger.warning(error_msg)
            return True, error_msg

        elif isinstance(exc, StatementError):
            error_msg = f"Database statement error during {operation}: {exc}{context_str}"
            logger.warning(error_msg)
            return False, error_msg

        elif isinstance(exc, OSError):
            error_msg = f"Network error during {operation}: {exc}{context_str}"
            logger.warning(error_msg)
            return True, error_msg

        else:
            error_msg = f"Unexpected database error during {operation}: {type(exc).__name__}: {exc}{context_str}"
            logger.error(error_msg, exc_info=exc)
            return False, error_msg

    @staticmethod
    def is_busy(exc: BaseException) -> bool:
        """Check whether the error reports a busy or locked store."""
        text = str(exc).lower()
        return any(marker in text for marker in _BUSY_MARKERS)

    @classmethod
    def translate(cls, exc: BaseException, operation: str, context: Optional[dict] = None) -> Exception:
        """Map a raw store error onto PersistenceUnavailable or PersistenceFailed."""
        if isinstance(exc, (PersistenceUnavailable, PersistenceFailed)):
            return exc
        is_recoverable, error_msg = cls.handle_database_error(exc, operation, context)
        if is_recoverable or cls.is_busy(exc):
            return PersistenceUnavailable(error_msg)
        return PersistenceFailed(error_msg)


def log_database_operation(
    operation: str,
    level: str = "debug"
) -> Callable:
    """
    Decorator to log store operations with context.

    Args:
        operation: Description of the operation
        level: Logging level ('debug', 'info', 'warning', 'error')

    Returns:
        Decorated coroutine function with operation logging
    """
    def decorator(func: Callable) -> Callable:
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"log_database_operation expects a coroutine function, got {func!r}")

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs) -> Any:
            logger_method = getattr(logger, level)
            func_name = getattr(func, '__name__', 'unknown')
            logger_method(f"Starting {operation} via {func_name}")

            try:
                result = await func(*args, **kwargs)
                logger_method(f"Completed {operation} via {func_name}")
                return result
            except Exception as exc:
                logger_method(f"Failed {operation} via {func_name}: {exc}")
                raise

        return async_wrapper

    return decorator
