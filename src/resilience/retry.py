"""Retry transient database failures with exponential backoff and jitter

Used around idempotent reads (backfill pages) where a dropped connection or
a pool timeout should not abort a long-running job.
"""

import asyncio
import random
import logging
from typing import Callable, Any, TypeVar
from functools import wraps

import psycopg
from psycopg import errors as pg_errors
from psycopg_pool import PoolTimeout

from src.exceptions import ConnectionError as EngineConnectionError

logger = logging.getLogger(__name__)

T = TypeVar('T')

MAX_RETRIES = 3
BASE_DELAY = 0.5  # seconds
MAX_DELAY = 10.0  # seconds
JITTER = 0.1  # +/- 10%

RETRYABLE_ERRORS = (
    pg_errors.SerializationFailure,
    pg_errors.DeadlockDetected,
    psycopg.OperationalError,
    PoolTimeout,
    EngineConnectionError,
)


def is_retryable_error(exc: Exception) -> bool:
    """True for lost connections, pool timeouts and transaction conflicts"""
    return isinstance(exc, RETRYABLE_ERRORS)


def calculate_backoff(attempt: int) -> float:
    """
    Delay before retry number `attempt` (0-based)

    min(BASE_DELAY * 2**attempt, MAX_DELAY), then +/- JITTER of that value,
    so attempts 0, 1, 2 wait roughly 0.5s, 1s, 2s.
    """
    delay = min(BASE_DELAY * (2 ** attempt), MAX_DELAY)
    delay += random.uniform(-JITTER * delay, JITTER * delay)
    return max(delay, 0.0)


async def retry_with_backoff(
    func: Callable[..., T],
    *args: Any,
    max_retries: int = MAX_RETRIES,
    **kwargs: Any
) -> T:
    """
    Await func(*args, **kwargs), retrying transient errors

    Non-retryable errors propagate immediately; after max_retries retries the
    last error propagates.

    Example:
        page = await retry_with_backoff(store.fetch_records_for_backfill, after_id, 500, False)
    """
    from src.observability.metrics import db_retries_total

    name = getattr(func, "__name__", repr(func))
    attempt = 0

    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_error(e):
                logger.warning(f"[RETRY] Not retrying {name}: {type(e).__name__}: {e}")
                raise
            if attempt >= max_retries:
                logger.error(f"[RETRY] Giving up on {name} after {max_retries} retries")
                raise

            backoff = calculate_backoff(attempt)
            attempt += 1
            db_retries_total.labels(operation=name).inc()
            logger.info(
                f"[RETRY] {name} failed with {type(e).__name__}, "
                f"retry {attempt}/{max_retries} in {backoff:.2f}s"
            )
            await asyncio.sleep(backoff)


def with_retry(max_retries: int = MAX_RETRIES) -> Callable:
    """
    Decorator form of retry_with_backoff

    Example:
        @with_retry(max_retries=3)
        async def load_page():
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await retry_with_backoff(func, *args, max_retries=max_retries, **kwargs)
        return wrapper
    return decorator
