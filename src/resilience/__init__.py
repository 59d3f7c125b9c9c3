"""Resilience patterns for database access

Retry with exponential backoff for transient database failures.
"""

from src.resilience.retry import retry_with_backoff, with_retry, is_retryable_error

__all__ = [
    "retry_with_backoff",
    "with_retry",
    "is_retryable_error",
]
