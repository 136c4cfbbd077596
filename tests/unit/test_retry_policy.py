"""Tests for retry policy backoff and error classification."""

from __future__ import annotations

import random
from datetime import UTC, datetime, timedelta

import pytest

from invoice_delivery import errors
from invoice_delivery.retry.policy import (
    DEFAULT_PERMANENT_CODES,
    DEFAULT_RETRYABLE_CODES,
    ErrorClass,
    RetryConfig,
    RetryPolicy,
    RetryState,
)

# ---------------------------------------------------------------------------
# RetryConfig
# ---------------------------------------------------------------------------


class TestRetryConfig:
    """Tests for RetryConfig defaults and validation."""

    def test_defaults(self) -> None:
        config = RetryConfig()
        assert config.max_retries == 5
        assert config.base_delay_ms == 1000
        assert config.max_delay_ms == 60000
        assert config.backoff_multiplier == 2.0
        assert config.retryable_codes == DEFAULT_RETRYABLE_CODES
        assert config.permanent_codes == DEFAULT_PERMANENT_CODES

    def test_default_code_sets(self) -> None:
        assert {
            "TIMEOUT",
            "CONNECTION_ERROR",
            "RATE_LIMIT",
            "SERVICE_UNAVAILABLE",
            "NAV_TEMPORARY_ERROR",
        } == DEFAULT_RETRYABLE_CODES
        assert {
            "INVALID_TAX_NUMBER",
            "INVALID_INVOICE_DATA",
            "DUPLICATE_INVOICE",
            "AUTH_ERROR",
        } == DEFAULT_PERMANENT_CODES

    def test_codes_are_stored_as_frozensets(self) -> None:
        config = RetryConfig(retryable_codes=["A", "B"], permanent_codes=("C",))  # type: ignore[arg-type]
        assert config.retryable_codes == frozenset({"A", "B"})
        assert config.permanent_codes == frozenset({"C"})

    def test_negative_max_retries_rejected(self) -> None:
        with pytest.raises(ValueError, match="max_retries"):
            RetryConfig(max_retries=-1)

    def test_zero_max_retries_allowed(self) -> None:
        assert RetryConfig(max_retries=0).max_retries == 0

    @pytest.mark.parametrize("multiplier", [1.0, 0.5, 0.0])
    def test_multiplier_must_exceed_one(self, multiplier: float) -> None:
        with pytest.raises(ValueError, match="backoff_multiplier"):
            RetryConfig(backoff_multiplier=multiplier)

    def test_base_delay_must_be_positive(self) -> None:
        with pytest.raises(ValueError, match="base_delay_ms"):
            RetryConfig(base_delay_ms=0)

    def test_base_delay_cannot_exceed_max(self) -> None:
        with pytest.raises(ValueError, match="max_delay_ms"):
            RetryConfig(base_delay_ms=5000, max_delay_ms=1000)

    def test_overlapping_code_sets_rejected(self) -> None:
        with pytest.raises(ValueError, match="TIMEOUT"):
            RetryConfig(permanent_codes=DEFAULT_PERMANENT_CODES | {"TIMEOUT"})

    def test_with_overrides_returns_new_config(self) -> None:
        config = RetryConfig()
        tuned = config.with_overrides(max_retries=2, base_delay_ms=500)
        assert tuned.max_retries == 2
        assert tuned.base_delay_ms == 500
        assert tuned.max_delay_ms == config.max_delay_ms
        assert config.max_retries == 5

    def test_with_overrides_validates(self) -> None:
        with pytest.raises(ValueError):
            RetryConfig().with_overrides(backoff_multiplier=1.0)

    def test_from_settings(self) -> None:
        from invoice_delivery.config import Settings

        settings = Settings(
            _env_file=None,
            retry_max_retries=3,
            retry_base_delay_ms=250,
            retry_max_delay_ms=4000,
            retry_backoff_multiplier=3.0,
        )
        config = RetryConfig.from_settings(settings)
        assert config.max_retries == 3
        assert config.base_delay_ms == 250
        assert config.max_delay_ms == 4000
        assert config.backoff_multiplier == 3.0


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


class TestBackoff:
    """Tests for delay calculation."""

    @pytest.mark.parametrize(
        ("attempt", "low", "high"),
        [(0, 900, 1100), (1, 1800, 2200), (10, 54000, 66000)],
    )
    def test_delay_within_jitter_band(self, attempt: int, low: int, high: int) -> None:
        policy = RetryPolicy(RetryConfig(), rng=random.Random(42).uniform)
        for _ in range(200):
            assert low <= policy.calculate_delay(attempt) <= high

    def test_delay_at_jitter_extremes(self) -> None:
        lowest = RetryPolicy(rng=lambda low, high: low)
        highest = RetryPolicy(rng=lambda low, high: high)
        assert lowest.calculate_delay(0) == 900
        assert highest.calculate_delay(0) == 1100
        assert lowest.calculate_delay(1) == 1800
        assert highest.calculate_delay(1) == 2200

    def test_delay_without_jitter(self, policy: RetryPolicy) -> None:
        assert [policy.calculate_delay(n) for n in range(7)] == [
            1000,
            2000,
            4000,
            8000,
            16000,
            32000,
            60000,
        ]

    def test_delay_returns_integer_ms(self) -> None:
        policy = RetryPolicy(rng=lambda low, high: 0.4)
        assert isinstance(policy.calculate_delay(0), int)

    def test_base_delay_non_decreasing(self, policy: RetryPolicy) -> None:
        delays = [policy.base_delay(n) for n in range(30)]
        assert delays == sorted(delays)
        assert delays[-1] == 60000

    def test_huge_attempt_is_capped(self) -> None:
        policy = RetryPolicy(rng=lambda low, high: high)
        assert policy.base_delay(5000) == 60000
        assert policy.calculate_delay(5000) <= 66000

    def test_negative_attempt_rejected(self, policy: RetryPolicy) -> None:
        with pytest.raises(ValueError, match="attempt"):
            policy.base_delay(-1)

    def test_next_retry_at_uses_clock(self, policy: RetryPolicy, fixed_now: datetime) -> None:
        assert policy.next_retry_at(2) == fixed_now + timedelta(milliseconds=4000)

    def test_next_retry_at_explicit_now(self, policy: RetryPolicy) -> None:
        start = datetime(2026, 3, 1, tzinfo=UTC)
        assert policy.next_retry_at(0, now=start) == start + timedelta(seconds=1)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class TestClassification:
    """Tests for error classification."""

    @pytest.mark.parametrize("code", sorted(DEFAULT_RETRYABLE_CODES))
    def test_retryable_codes(self, policy: RetryPolicy, code: str) -> None:
        assert policy.classify(code) is ErrorClass.RETRYABLE
        assert policy.is_retryable(code) is True

    @pytest.mark.parametrize("code", sorted(DEFAULT_PERMANENT_CODES))
    def test_permanent_codes(self, policy: RetryPolicy, code: str) -> None:
        assert policy.classify(code) is ErrorClass.PERMANENT
        assert policy.is_retryable(code) is False

    @pytest.mark.parametrize("code", [None, "", errors.UNKNOWN_ERROR, "PROVIDER_999"])
    def test_unrecognised_codes_are_permanent(self, policy: RetryPolicy, code: str | None) -> None:
        assert policy.classify(code) is ErrorClass.PERMANENT

    def test_custom_code_sets(self) -> None:
        policy = RetryPolicy(
            RetryConfig(retryable_codes=frozenset({"BUSY"}), permanent_codes=frozenset())
        )
        assert policy.is_retryable("BUSY") is True
        assert policy.is_retryable("TIMEOUT") is False


# ---------------------------------------------------------------------------
# State helpers
# ---------------------------------------------------------------------------


class TestRetryState:
    """Tests for should_retry / update_retry_state."""

    def test_is_max_retries_reached(self, policy: RetryPolicy) -> None:
        assert policy.is_max_retries_reached(4) is False
        assert policy.is_max_retries_reached(5) is True
        assert policy.is_max_retries_reached(6) is True

    def test_should_retry_retryable_with_budget(self, policy: RetryPolicy) -> None:
        state = RetryState(attempt=1, last_error_code=errors.TIMEOUT)
        assert policy.should_retry(state) is True

    def test_should_not_retry_permanent(self, policy: RetryPolicy) -> None:
        state = RetryState(attempt=0, last_error_code=errors.AUTH_ERROR)
        assert policy.should_retry(state) is False

    def test_should_not_retry_when_budget_spent(self, policy: RetryPolicy) -> None:
        state = RetryState(attempt=5, last_error_code=errors.TIMEOUT)
        assert policy.should_retry(state) is False

    def test_update_sets_next_retry_for_retryable(
        self, policy: RetryPolicy, fixed_now: datetime
    ) -> None:
        state = policy.update_retry_state(RetryState(), errors.RATE_LIMIT, "slow down")
        assert state.attempt == 1
        assert state.last_error == "slow down"
        assert state.last_error_code == errors.RATE_LIMIT
        assert state.next_retry_at == fixed_now + timedelta(milliseconds=2000)

    def test_update_leaves_next_retry_empty_for_permanent(self, policy: RetryPolicy) -> None:
        state = policy.update_retry_state(RetryState(), errors.INVALID_TAX_NUMBER, "bad tax id")
        assert state.attempt == 1
        assert state.next_retry_at is None

    def test_update_leaves_next_retry_empty_at_budget(self, policy: RetryPolicy) -> None:
        state = policy.update_retry_state(RetryState(attempt=4), errors.TIMEOUT, "timed out")
        assert state.attempt == 5
        assert state.next_retry_at is None
        assert policy.should_retry(state) is False

    def test_update_does_not_mutate_input(self, policy: RetryPolicy) -> None:
        original = RetryState(attempt=2)
        policy.update_retry_state(original, errors.TIMEOUT, "timed out")
        assert original.attempt == 2
        assert original.last_error is None
