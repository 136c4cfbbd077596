"""Invoice retry queue facade — enqueue, stats, and manual processing trigger."""

from __future__ import annotations

import asyncio
from datetime import datetime

from invoice_delivery.logging import get_logger
from invoice_delivery.queue.models import QueueItem, QueueStats
from invoice_delivery.queue.processor import QueueProcessor, TickReport
from invoice_delivery.queue.storage import QueueStore
from invoice_delivery.retry.policy import RetryPolicy

log = get_logger("invoice_delivery.queue.service")


class InvoiceQueue:
    """Entry point for code that defers invoice submissions.

    Each invoice has at most one live queue item: :meth:`add_to_queue`
    looks the invoice up before inserting.
    """

    def __init__(
        self,
        store: QueueStore,
        policy: RetryPolicy,
        processor: QueueProcessor | None = None,
    ) -> None:
        self._store = store
        self._policy = policy
        self._processor = processor

    @property
    def processor(self) -> QueueProcessor | None:
        return self._processor

    @property
    def accepts_items(self) -> bool:
        """False when the retry budget is zero and nothing may be queued."""
        return self._policy.max_retries > 0

    def create_queue_item(
        self,
        tenant_id: str,
        invoice_id: str,
        priority: int = 0,
        scheduled_at: datetime | None = None,
    ) -> QueueItem:
        """Build (without persisting) a new Pending item with default budget."""
        return QueueItem(
            tenant_id=tenant_id,
            invoice_id=invoice_id,
            priority=priority,
            scheduled_at=scheduled_at or self._policy.next_retry_at(0),
            attempts=0,
            max_attempts=self._policy.max_retries,
            is_processing=False,
            last_error=None,
        )

    async def add_to_queue(
        self,
        tenant_id: str,
        invoice_id: str,
        *,
        priority: int = 0,
        scheduled_at: datetime | None = None,
        last_error: str | None = None,
    ) -> QueueItem:
        """Enqueue an invoice for deferred resubmission.

        Args:
            tenant_id: Owning tenant.
            invoice_id: Invoice to resubmit.
            priority: Higher values are processed sooner.
            scheduled_at: Earliest attempt time; defaults to one backoff
                step from now.
            last_error: Error from the immediate attempt, kept on the item.

        Returns:
            The live item for this invoice (existing or newly created).

        Raises:
            ValueError: If the retry budget is zero.
        """
        if not self.accepts_items:
            raise ValueError("Retry budget is zero; nothing can be queued")

        existing = await self._store.find_by_invoice_id(invoice_id)
        if existing is not None:
            log.info(
                "invoice_already_queued",
                invoice_id=invoice_id,
                item_id=str(existing.id),
            )
            return existing

        item = self.create_queue_item(tenant_id, invoice_id, priority, scheduled_at)
        item.last_error = last_error
        created = await self._store.create(item)
        log.info(
            "invoice_queued",
            invoice_id=invoice_id,
            tenant_id=tenant_id,
            item_id=str(created.id),
            scheduled_at=created.scheduled_at.isoformat(),
            max_attempts=created.max_attempts,
        )
        return created

    async def get_queue_item(self, invoice_id: str) -> QueueItem | None:
        """The live item for *invoice_id*, if any."""
        return await self._store.find_by_invoice_id(invoice_id)

    async def get_queue_stats(self, tenant_id: str | None = None) -> QueueStats:
        return await self._store.get_stats(tenant_id)

    def trigger_processing(self) -> asyncio.Task[TickReport | None]:
        """Ask the processor for an extra pass now.

        Raises:
            RuntimeError: If no processor is attached.
        """
        if self._processor is None:
            raise RuntimeError("Queue processing is not enabled")
        return self._processor.trigger()
