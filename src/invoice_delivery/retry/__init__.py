"""Retry policy and executor for invoice submission.

Exponential backoff with ±10% jitter, fail-closed error classification, and
a bounded retry loop around a single async operation.
"""

from invoice_delivery.retry.executor import RetryError, RetryExecutor, RetryResult
from invoice_delivery.retry.policy import (
    ErrorClass,
    RetryConfig,
    RetryPolicy,
    RetryState,
)

__all__ = [
    "ErrorClass",
    "RetryConfig",
    "RetryError",
    "RetryExecutor",
    "RetryPolicy",
    "RetryResult",
    "RetryState",
]
