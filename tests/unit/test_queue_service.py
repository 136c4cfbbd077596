"""Tests for the InvoiceQueue facade."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from invoice_delivery.queue.service import InvoiceQueue
from invoice_delivery.queue.storage import InMemoryQueueStore
from invoice_delivery.retry.policy import RetryConfig, RetryPolicy


class TestCreateQueueItem:
    def test_defaults(self, queue_store: InMemoryQueueStore, policy: RetryPolicy, fixed_now: datetime) -> None:
        item = InvoiceQueue(queue_store, policy).create_queue_item("tenant-1", "inv-1")

        assert item.tenant_id == "tenant-1"
        assert item.invoice_id == "inv-1"
        assert item.priority == 0
        assert item.attempts == 0
        assert item.max_attempts == 5
        assert item.is_processing is False
        assert item.last_error is None
        assert item.scheduled_at == fixed_now + timedelta(seconds=1)

    def test_budget_follows_config(self, queue_store: InMemoryQueueStore) -> None:
        policy = RetryPolicy(RetryConfig(max_retries=2))
        item = InvoiceQueue(queue_store, policy).create_queue_item("t", "i")
        assert item.max_attempts == 2

    def test_explicit_schedule(self, queue_store: InMemoryQueueStore, policy: RetryPolicy) -> None:
        at = datetime(2026, 7, 1, tzinfo=UTC)
        item = InvoiceQueue(queue_store, policy).create_queue_item("t", "i", priority=3, scheduled_at=at)
        assert item.scheduled_at == at
        assert item.priority == 3


class TestAddToQueue:
    @pytest.mark.asyncio
    async def test_persists_new_item(self, queue_store: InMemoryQueueStore, policy: RetryPolicy) -> None:
        queue = InvoiceQueue(queue_store, policy)

        item = await queue.add_to_queue("tenant-1", "inv-1", last_error="TIMEOUT: timed out")

        stored = await queue_store.find_by_invoice_id("inv-1")
        assert stored is not None
        assert stored.id == item.id
        assert stored.last_error == "TIMEOUT: timed out"

    @pytest.mark.asyncio
    async def test_returns_existing_item(self, queue_store: InMemoryQueueStore, policy: RetryPolicy) -> None:
        queue = InvoiceQueue(queue_store, policy)

        first = await queue.add_to_queue("tenant-1", "inv-1")
        second = await queue.add_to_queue("tenant-1", "inv-1", priority=9)

        assert second.id == first.id
        assert second.priority == 0
        assert (await queue.get_queue_stats()).total == 1

    @pytest.mark.asyncio
    async def test_zero_budget_rejects_items(self, queue_store: InMemoryQueueStore) -> None:
        queue = InvoiceQueue(queue_store, RetryPolicy(RetryConfig(max_retries=0)))

        assert queue.accepts_items is False
        with pytest.raises(ValueError, match="Retry budget is zero"):
            await queue.add_to_queue("tenant-1", "inv-1")
        assert (await queue.get_queue_stats()).total == 0

    @pytest.mark.asyncio
    async def test_get_queue_item(self, queue_store: InMemoryQueueStore, policy: RetryPolicy) -> None:
        queue = InvoiceQueue(queue_store, policy)
        created = await queue.add_to_queue("tenant-1", "inv-1")

        item = await queue.get_queue_item("inv-1")

        assert item is not None
        assert item.id == created.id
        assert await queue.get_queue_item("inv-2") is None

    @pytest.mark.asyncio
    async def test_get_queue_stats_by_tenant(self, queue_store: InMemoryQueueStore, policy: RetryPolicy) -> None:
        queue = InvoiceQueue(queue_store, policy)
        await queue.add_to_queue("tenant-1", "inv-1")
        await queue.add_to_queue("tenant-2", "inv-2")

        stats = await queue.get_queue_stats("tenant-2")

        assert stats.total == 1
        assert stats.pending == 1


class TestTriggerProcessing:
    def test_requires_processor(self, queue_store: InMemoryQueueStore, policy: RetryPolicy) -> None:
        with pytest.raises(RuntimeError, match="not enabled"):
            InvoiceQueue(queue_store, policy).trigger_processing()

    def test_delegates_to_processor(self, queue_store: InMemoryQueueStore, policy: RetryPolicy) -> None:
        processor = MagicMock()
        queue = InvoiceQueue(queue_store, policy, processor)

        result = queue.trigger_processing()

        processor.trigger.assert_called_once_with()
        assert result is processor.trigger.return_value
        assert queue.processor is processor
