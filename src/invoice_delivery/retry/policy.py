"""Retry policy — backoff delay calculation and error classification.

All functions here are pure apart from the jitter draw and the clock read
in :meth:`RetryPolicy.next_retry_at`; both are injectable for tests.
"""

from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from invoice_delivery import errors

if TYPE_CHECKING:
    from invoice_delivery.config import Settings

# Symmetric jitter band applied to every delay (fraction of the delay).
JITTER_RATIO = 0.1

DEFAULT_RETRYABLE_CODES: frozenset[str] = frozenset(
    {
        errors.TIMEOUT,
        errors.CONNECTION_ERROR,
        errors.RATE_LIMIT,
        errors.SERVICE_UNAVAILABLE,
        errors.NAV_TEMPORARY_ERROR,
    }
)

DEFAULT_PERMANENT_CODES: frozenset[str] = frozenset(
    {
        errors.INVALID_TAX_NUMBER,
        errors.INVALID_INVOICE_DATA,
        errors.DUPLICATE_INVOICE,
        errors.AUTH_ERROR,
    }
)


class ErrorClass(str, Enum):
    """Classification of a failed attempt."""

    RETRYABLE = "retryable"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class RetryConfig:
    """Process-wide retry configuration.

    Attributes:
        max_retries: Retries allowed after the first attempt; also the
            ``max_attempts`` budget copied onto new queue items.
        base_delay_ms: Delay before the first retry.
        max_delay_ms: Upper bound of the un-jittered delay.
        backoff_multiplier: Growth factor per attempt (> 1).
        retryable_codes: Codes that are retried.
        permanent_codes: Codes that are never retried.
    """

    max_retries: int = 5
    base_delay_ms: int = 1000
    max_delay_ms: int = 60000
    backoff_multiplier: float = 2.0
    retryable_codes: frozenset[str] = field(default=DEFAULT_RETRYABLE_CODES)
    permanent_codes: frozenset[str] = field(default=DEFAULT_PERMANENT_CODES)

    def __post_init__(self) -> None:
        # Accept any iterable of codes but store frozensets
        object.__setattr__(self, "retryable_codes", frozenset(self.retryable_codes))
        object.__setattr__(self, "permanent_codes", frozenset(self.permanent_codes))

        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got: {self.max_retries}")
        if self.backoff_multiplier <= 1:
            raise ValueError(f"backoff_multiplier must be > 1, got: {self.backoff_multiplier}")
        if not 0 < self.base_delay_ms <= self.max_delay_ms:
            raise ValueError(
                f"Expected 0 < base_delay_ms <= max_delay_ms, "
                f"got: {self.base_delay_ms}, {self.max_delay_ms}"
            )
        overlap = self.retryable_codes & self.permanent_codes
        if overlap:
            raise ValueError(f"Codes cannot be both retryable and permanent: {sorted(overlap)}")

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryConfig:
        """Build the retry configuration from application settings."""
        return cls(
            max_retries=settings.retry_max_retries,
            base_delay_ms=settings.retry_base_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
            backoff_multiplier=settings.retry_backoff_multiplier,
        )

    def with_overrides(self, **overrides: Any) -> RetryConfig:
        """Return a copy with selected fields replaced (validated again)."""
        return replace(self, **overrides)


@dataclass
class RetryState:
    """Retry bookkeeping for a single in-flight operation."""

    attempt: int = 0
    next_retry_at: datetime | None = None
    last_error: str | None = None
    last_error_code: str | None = None


class RetryPolicy:
    """Exponential backoff with jitter plus fail-closed error classification."""

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        rng: Callable[[float, float], float] = random.uniform,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config or RetryConfig()
        self._rng = rng
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    @property
    def config(self) -> RetryConfig:
        """The active retry configuration."""
        return self._config

    @property
    def max_retries(self) -> int:
        return self._config.max_retries

    # ------------------------------------------------------------------
    # Backoff
    # ------------------------------------------------------------------

    def base_delay(self, attempt: int) -> float:
        """Un-jittered delay in ms for *attempt*: ``min(base * mult**attempt, max)``."""
        if attempt < 0:
            raise ValueError(f"attempt must be >= 0, got: {attempt}")
        cfg = self._config
        try:
            raw = cfg.base_delay_ms * cfg.backoff_multiplier**attempt
        except OverflowError:
            return float(cfg.max_delay_ms)
        return float(min(raw, cfg.max_delay_ms))

    def calculate_delay(self, attempt: int) -> int:
        """Delay in ms before retry *attempt*, with ±10% jitter applied."""
        delay = self.base_delay(attempt)
        jitter = delay * JITTER_RATIO
        return round(delay + self._rng(-jitter, jitter))

    def next_retry_at(self, attempt: int, now: datetime | None = None) -> datetime:
        """Timestamp at which retry *attempt* becomes due."""
        start = now or self._clock()
        return start + timedelta(milliseconds=self.calculate_delay(attempt))

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify(self, code: str | None) -> ErrorClass:
        """Classify an error code; anything unrecognised is permanent."""
        if not code or code in self._config.permanent_codes:
            return ErrorClass.PERMANENT
        if code in self._config.retryable_codes:
            return ErrorClass.RETRYABLE
        return ErrorClass.PERMANENT

    def is_retryable(self, code: str | None) -> bool:
        return self.classify(code) is ErrorClass.RETRYABLE

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def is_max_retries_reached(self, attempts: int) -> bool:
        return attempts >= self._config.max_retries

    def should_retry(self, state: RetryState) -> bool:
        """Whether another attempt is allowed for *state*."""
        if self.is_max_retries_reached(state.attempt):
            return False
        return self.is_retryable(state.last_error_code)

    def update_retry_state(
        self,
        state: RetryState,
        error_code: str,
        error_message: str,
    ) -> RetryState:
        """Record a failed attempt and compute when (if ever) to retry.

        ``next_retry_at`` is only set while the error is retryable and the
        budget is not yet spent.
        """
        attempt = state.attempt + 1
        next_retry_at = None
        if self.is_retryable(error_code) and not self.is_max_retries_reached(attempt):
            next_retry_at = self.next_retry_at(attempt)
        return RetryState(
            attempt=attempt,
            next_retry_at=next_retry_at,
            last_error=error_message,
            last_error_code=error_code,
        )

