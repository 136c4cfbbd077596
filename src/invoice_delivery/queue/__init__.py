"""Durable retry queue for invoice submissions.

Provides a PostgreSQL-backed queue with ``FOR UPDATE SKIP LOCKED`` claims,
exponential-backoff rescheduling, and escalation to manual handling once
the attempt budget is spent.
"""

from invoice_delivery.queue.models import QueueItem, QueueOutcome, QueueStats
from invoice_delivery.queue.processor import ProcessorStats, QueueProcessor, TickReport
from invoice_delivery.queue.service import InvoiceQueue
from invoice_delivery.queue.storage import InMemoryQueueStore, PostgresQueueStore, QueueStore

__all__ = [
    "InMemoryQueueStore",
    "InvoiceQueue",
    "PostgresQueueStore",
    "ProcessorStats",
    "QueueItem",
    "QueueOutcome",
    "QueueProcessor",
    "QueueStats",
    "QueueStore",
    "TickReport",
]
