"""Pytest fixtures for invoice delivery tests."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from invoice_delivery.invoices.models import Invoice, SubmissionResult
from invoice_delivery.invoices.storage import InMemoryRecordStore
from invoice_delivery.queue.storage import InMemoryQueueStore
from invoice_delivery.retry.policy import RetryConfig, RetryPolicy

FIXED_NOW = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Start every session with a fresh settings cache."""
    from invoice_delivery.config import get_settings

    get_settings.cache_clear()

    yield

    get_settings.cache_clear()


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def policy() -> RetryPolicy:
    """Retry policy with jitter disabled and a frozen clock."""
    return RetryPolicy(RetryConfig(), rng=lambda low, high: 0.0, clock=lambda: FIXED_NOW)


@pytest.fixture
def invoice() -> Invoice:
    return Invoice(
        id="inv-1",
        tenant_id="tenant-1",
        internal_number="2026-0001",
        payload={"buyer": {"taxNumber": "12345678-2-42"}, "lines": []},
    )


@pytest.fixture
def records(invoice: Invoice) -> InMemoryRecordStore:
    return InMemoryRecordStore([invoice])


@pytest.fixture
def queue_store() -> InMemoryQueueStore:
    return InMemoryQueueStore()


@pytest.fixture
def submitter() -> AsyncMock:
    """Submitter mock that succeeds unless a test overrides ``submit``."""
    mock = AsyncMock()
    mock.submit = AsyncMock(
        return_value=SubmissionResult(
            transaction_id="tx-1",
            status="ACCEPTED",
            external_number="E-2026-1",
        )
    )
    return mock
