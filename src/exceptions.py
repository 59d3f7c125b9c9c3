"""
Exception hierarchy for the achievement engine

Every error carries a request id, a timestamp and structured context, and is
logged once when it is created. Subclasses pick their own log level so
expected races (a concurrent completion) do not show up as errors.
"""

from datetime import datetime, timezone
from functools import wraps
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar
from uuid import uuid4
import logging

import psycopg

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AchievementEngineError(Exception):
    """
    Base exception for all achievement engine errors

    Example:
        raise AchievementEngineError(
            message="Failed to save achievement progress",
            user_id="7f0c...",
            operation="compare_and_set_progress",
            context={"record_id": "abc-123"}
        )
    """

    log_level = logging.ERROR
    default_user_message = "An error occurred. Please try again."

    def __init__(
        self,
        message: str,
        user_id: Optional[str] = None,
        request_id: Optional[str] = None,
        operation: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.user_id = user_id
        self.request_id = request_id or str(uuid4())
        self.operation = operation
        self.context = dict(context or {})
        self.cause = cause
        self.user_message = user_message or self.default_user_message
        self.timestamp = datetime.now(timezone.utc)

        self._log_error()

    def _log_error(self) -> None:
        # 'message' and 'context' are reserved by logging, hence the prefixes
        extra = {
            "error_type": type(self).__name__,
            "error_message": self.message,
            "request_id": self.request_id,
            "user_id": self.user_id,
            "operation": self.operation,
            "error_context": self.context,
            "timestamp": self.timestamp.isoformat()
        }
        if self.cause is not None:
            extra["cause"] = str(self.cause)

        logger.log(
            self.log_level,
            f"{type(self).__name__}: {self.message}",
            extra=extra,
            exc_info=self.cause
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for logs and API-style responses"""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "user_message": self.user_message,
            "request_id": self.request_id,
            "timestamp": self.timestamp.isoformat()
        }


def _with_context(kwargs: Dict[str, Any], **fields: Any) -> Dict[str, Any]:
    """Fold subclass-specific fields into the caller's context kwarg"""
    kwargs["context"] = {**(kwargs.get("context") or {}), **fields}
    return kwargs


# ==========================================
# Requirement / Catalog Errors
# ==========================================

class InvalidRequirementError(AchievementEngineError):
    """
    A requirement specification cannot be interpreted

    Raised for types missing from the registry, negative or non-integer
    parameters, and snapshots that are not JSON objects.
    """

    default_user_message = "This achievement has an invalid requirement definition."

    def __init__(
        self,
        message: str,
        requirement_type: Optional[str] = None,
        requirements: Optional[Any] = None,
        **kwargs
    ):
        self.requirement_type = requirement_type
        self.requirements = requirements
        super().__init__(
            message,
            **_with_context(kwargs, requirement_type=requirement_type, requirements=requirements)
        )


class UnknownDefinitionError(AchievementEngineError):
    """Evaluation referenced an achievement definition that no longer exists"""

    log_level = logging.WARNING
    default_user_message = "Achievement not found."

    def __init__(self, message: str, definition_id: Optional[str] = None, **kwargs):
        self.definition_id = definition_id
        super().__init__(message, **_with_context(kwargs, definition_id=definition_id))


class ConcurrentCompletionConflict(AchievementEngineError):
    """Another evaluation already completed the record (expected, debug only)"""

    log_level = logging.DEBUG

    def __init__(
        self,
        message: str = "Achievement already completed by a concurrent evaluation",
        record_id: Optional[str] = None,
        progress: Optional[int] = None,
        **kwargs
    ):
        self.record_id = record_id
        self.progress = progress
        super().__init__(message, **_with_context(kwargs, record_id=record_id, progress=progress))


# ==========================================
# Database Errors
# ==========================================

class DatabaseError(AchievementEngineError):
    """Base class for persistence failures"""

    default_user_message = "We encountered an issue saving your data. Please try again."


class ConnectionError(DatabaseError):
    """Could not reach the database (pool not open, connection dropped)"""

    default_user_message = "We're having trouble connecting to the database. Please try again in a moment."

    def __init__(self, message: str = "Database connection failed", **kwargs):
        super().__init__(message, **kwargs)


class QueryError(DatabaseError):
    """A statement was rejected by the database"""

    def __init__(self, message: str, query: Optional[str] = None, **kwargs):
        self.query = query
        super().__init__(message, **_with_context(kwargs, query=query))


class RecordNotFoundError(DatabaseError):
    """Requested database record does not exist"""

    def __init__(
        self,
        message: str,
        record_type: Optional[str] = None,
        record_id: Optional[str] = None,
        **kwargs
    ):
        self.record_type = record_type
        self.record_id = record_id
        kwargs.setdefault("user_message", f"{record_type or 'Record'} not found.")
        super().__init__(message, **_with_context(kwargs, record_type=record_type, record_id=record_id))


# ==========================================
# Configuration Errors
# ==========================================

class ConfigurationError(AchievementEngineError):
    """Engine configuration is invalid or missing"""

    default_user_message = "The system is not properly configured. Please contact support."

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        self.config_key = config_key
        super().__init__(message, **_with_context(kwargs, config_key=config_key))


def wrap_external_exception(
    error: Exception,
    operation: str,
    user_id: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None
) -> AchievementEngineError:
    """
    Translate a driver exception into the engine hierarchy

    psycopg.OperationalError becomes ConnectionError (retryable), any other
    psycopg.Error becomes QueryError. Engine errors pass through unchanged.

    Example:
        try:
            await cur.execute(query, params)
        except psycopg.Error as e:
            raise wrap_external_exception(e, "complete_record", context={"record_id": record_id})
    """
    if isinstance(error, AchievementEngineError):
        return error

    details = dict(user_id=user_id, operation=operation, context=context, cause=error)

    if isinstance(error, psycopg.OperationalError):
        return ConnectionError(f"Database connection failed: {error}", **details)
    if isinstance(error, psycopg.Error):
        return QueryError(f"Database query failed: {error}", **details)
    return AchievementEngineError(f"{operation} failed: {error}", **details)


def wraps_database_errors(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """
    Decorator for async query functions: psycopg errors leave as DatabaseError

    The function name becomes the operation; a first positional argument
    named user_id is attached to the error.

    Example:
        @wraps_database_errors
        async def count_expenses(user_id: str) -> int:
            ...
    """
    @wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await func(*args, **kwargs)
        except psycopg.Error as e:
            user_id = kwargs.get("user_id")
            if user_id is None and args and func.__code__.co_varnames[:1] == ("user_id",):
                user_id = args[0]
            raise wrap_external_exception(e, operation=func.__name__, user_id=user_id)
    return wrapper
