"""Bounded retry-with-backoff around a single asynchronous operation.

Used for request/response submission attempts. The executor never raises for
a failed operation: the outcome is encoded in the returned
:class:`RetryResult`.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from invoice_delivery.errors import error_code_for
from invoice_delivery.logging import get_logger
from invoice_delivery.retry.policy import ErrorClass, RetryPolicy

log = get_logger("invoice_delivery.retry.executor")

T = TypeVar("T")

OnRetry = Callable[[int, Exception], Awaitable[None] | None]


@dataclass(frozen=True)
class RetryError:
    """The last error seen by :meth:`RetryExecutor.execute_with_retry`.

    Attributes:
        code: Error code extracted from the failure.
        message: Human-readable description.
        retryable: Whether the code is classified as transient.
        exception: The original exception.
    """

    code: str
    message: str
    retryable: bool
    exception: Exception | None = None


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    """Outcome of :meth:`RetryExecutor.execute_with_retry`.

    ``should_retry`` is always ``False`` on failure: either the error was
    permanent or the inline budget is spent, so automatic retrying stops
    here. ``error.retryable`` keeps the classification of the last error so
    callers can hand transient failures over to the deferred queue.
    """

    success: bool
    result: T | None = None
    error: RetryError | None = None
    should_retry: bool = False
    attempts: int = 0


class RetryExecutor:
    """Run an async operation with exponential backoff between attempts."""

    def __init__(
        self,
        policy: RetryPolicy,
        *,
        max_retries: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialise the executor.

        Args:
            policy: Shared retry policy (delays and classification).
            max_retries: Override of ``policy.max_retries`` for this
                executor, e.g. a smaller inline budget.
            sleep: Coroutine used for the backoff wait (seconds).
        """
        if max_retries is not None and max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got: {max_retries}")
        self._policy = policy
        self._max_retries = policy.max_retries if max_retries is None else max_retries
        self._sleep = sleep

    @property
    def max_retries(self) -> int:
        return self._max_retries

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        on_retry: OnRetry | None = None,
    ) -> RetryResult[T]:
        """Invoke *operation* until it succeeds, fails permanently, or the budget is spent.

        Args:
            operation: Zero-argument callable returning an awaitable.
            on_retry: Optional callback ``(attempt_number, error)`` invoked
                before each backoff wait; may be sync or async.

        Returns:
            A :class:`RetryResult`. Exactly ``max_retries + 1`` invocations
            happen when every attempt fails with a retryable code; exactly
            one when the first failure is permanent.
        """
        attempt = 0
        last_error: RetryError | None = None

        while attempt <= self._max_retries:
            try:
                result = await operation()
            except Exception as exc:
                code = error_code_for(exc)
                error_class = self._policy.classify(code)
                last_error = RetryError(
                    code=code,
                    message=str(exc) or type(exc).__name__,
                    retryable=error_class is ErrorClass.RETRYABLE,
                    exception=exc,
                )

                if error_class is ErrorClass.PERMANENT:
                    log.warning(
                        "operation_failed_permanently",
                        code=code,
                        error=last_error.message,
                        attempts=attempt + 1,
                    )
                    return RetryResult(
                        success=False,
                        error=last_error,
                        should_retry=False,
                        attempts=attempt + 1,
                    )

                if attempt >= self._max_retries:
                    break

                if on_retry is not None:
                    callback = on_retry(attempt + 1, exc)
                    if inspect.isawaitable(callback):
                        await callback

                delay_ms = self._policy.calculate_delay(attempt)
                log.info(
                    "operation_retry_scheduled",
                    code=code,
                    attempt=attempt + 1,
                    delay_ms=delay_ms,
                )
                await self._sleep(delay_ms / 1000.0)
                attempt += 1
                continue

            if attempt:
                log.info("operation_succeeded_after_retry", attempts=attempt + 1)
            return RetryResult(success=True, result=result, attempts=attempt + 1)

        log.warning(
            "operation_retries_exhausted",
            code=last_error.code if last_error else None,
            attempts=attempt + 1,
        )
        return RetryResult(
            success=False,
            error=last_error,
            should_retry=False,
            attempts=attempt + 1,
        )
