"""Unit tests for retry logic"""
import pytest
from unittest.mock import AsyncMock, patch

import psycopg
from psycopg import errors as pg_errors
from psycopg_pool import PoolTimeout

from src.exceptions import ConnectionError as EngineConnectionError, QueryError
from src.resilience.retry import (
    retry_with_backoff,
    with_retry,
    is_retryable_error,
    calculate_backoff,
    MAX_DELAY,
)


@pytest.fixture(autouse=True)
def no_sleep():
    """Skip real backoff delays"""
    with patch('src.resilience.retry.asyncio.sleep', new=AsyncMock()) as mock_sleep:
        yield mock_sleep


def test_is_retryable_error_connection():
    """Test that lost connections and pool timeouts are retryable"""
    assert is_retryable_error(psycopg.OperationalError("server closed the connection")) == True
    assert is_retryable_error(PoolTimeout("couldn't get a connection")) == True
    assert is_retryable_error(EngineConnectionError()) == True


def test_is_retryable_error_transaction_conflicts():
    """Test that serialization failures and deadlocks are retryable"""
    assert is_retryable_error(pg_errors.SerializationFailure("could not serialize")) == True
    assert is_retryable_error(pg_errors.DeadlockDetected("deadlock detected")) == True


def test_is_retryable_error_non_retryable():
    """Test that non-retryable errors are identified correctly"""
    assert is_retryable_error(pg_errors.UniqueViolation("duplicate key")) == False
    assert is_retryable_error(QueryError("bad query")) == False
    assert is_retryable_error(ValueError("Bad value")) == False
    assert is_retryable_error(KeyError("Missing key")) == False


def test_calculate_backoff():
    """Test exponential backoff calculation"""
    delay_0 = calculate_backoff(0)
    assert 0.45 <= delay_0 <= 0.55  # 0.5s ± 10% jitter

    delay_1 = calculate_backoff(1)
    assert 0.9 <= delay_1 <= 1.1

    delay_2 = calculate_backoff(2)
    assert 1.8 <= delay_2 <= 2.2

    assert delay_1 > delay_0
    assert delay_2 > delay_1


def test_calculate_backoff_max_delay():
    """Test that backoff respects max delay"""
    delay = calculate_backoff(20)
    assert delay <= MAX_DELAY * 1.1


@pytest.mark.asyncio
async def test_retry_with_backoff_success_first_try(no_sleep):
    """Test that function succeeds on first try"""
    call_count = 0

    async def successful_function():
        nonlocal call_count
        call_count += 1
        return "success"

    result = await retry_with_backoff(successful_function, max_retries=3)

    assert result == "success"
    assert call_count == 1
    no_sleep.assert_not_called()


@pytest.mark.asyncio
async def test_retry_with_backoff_success_after_retries(no_sleep):
    """Test that function succeeds after some retries"""
    attempt = 0

    async def flaky_function():
        nonlocal attempt
        attempt += 1
        if attempt < 3:
            raise psycopg.OperationalError("connection reset")
        return "success"

    result = await retry_with_backoff(flaky_function, max_retries=3)

    assert result == "success"
    assert attempt == 3
    assert no_sleep.call_count == 2


@pytest.mark.asyncio
async def test_retry_passes_arguments():
    fetch = AsyncMock(side_effect=[PoolTimeout("busy"), ["row"]])

    result = await retry_with_backoff(fetch, None, 500, False)

    assert result == ["row"]
    fetch.assert_called_with(None, 500, False)


@pytest.mark.asyncio
async def test_retry_with_backoff_exhausted():
    """Test that retries are exhausted for persistent failures"""
    attempt = 0

    async def always_fails():
        nonlocal attempt
        attempt += 1
        raise psycopg.OperationalError("Always fails")

    with pytest.raises(psycopg.OperationalError, match="Always fails"):
        await retry_with_backoff(always_fails, max_retries=3)

    # Initial call + 3 retries
    assert attempt == 4


@pytest.mark.asyncio
async def test_retry_with_backoff_non_retryable_error():
    """Test that non-retryable errors are not retried"""
    attempt = 0

    async def non_retryable_function():
        nonlocal attempt
        attempt += 1
        raise ValueError("Non-retryable error")

    with pytest.raises(ValueError, match="Non-retryable error"):
        await retry_with_backoff(non_retryable_function, max_retries=3)

    assert attempt == 1


@pytest.mark.asyncio
async def test_with_retry_decorator():
    """Test that @with_retry decorator works correctly"""
    attempt = 0

    @with_retry(max_retries=2)
    async def flaky_function():
        nonlocal attempt
        attempt += 1
        if attempt < 2:
            raise EngineConnectionError()
        return "success"

    result = await flaky_function()

    assert result == "success"
    assert attempt == 2
    assert flaky_function.__name__ == "flaky_function"
