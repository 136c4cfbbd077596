"""Main entry point for the invoice delivery service."""

import asyncio
import contextlib
import signal

import asyncpg  # type: ignore[import-not-found,import-untyped]

from invoice_delivery.api.server import OperationsAPIServer
from invoice_delivery.config import Settings, get_settings
from invoice_delivery.invoices.delivery import InvoiceDeliveryService
from invoice_delivery.invoices.storage import PostgresRecordStore
from invoice_delivery.invoices.submitter import HttpSubmitter
from invoice_delivery.logging import get_logger, setup_logging
from invoice_delivery.queue.processor import QueueProcessor
from invoice_delivery.queue.service import InvoiceQueue
from invoice_delivery.queue.storage import PostgresQueueStore
from invoice_delivery.retry.executor import RetryExecutor
from invoice_delivery.retry.policy import RetryConfig, RetryPolicy


def build_submitter(settings: Settings) -> HttpSubmitter:
    api_key = settings.submitter_api_key
    return HttpSubmitter(
        base_url=settings.submitter_base_url,
        api_key=api_key.get_secret_value() if api_key else None,
        timeout=settings.submitter_timeout_seconds,
    )


async def main(stop_event: asyncio.Event | None = None) -> None:
    """Main application entry point.

    Runs until SIGINT/SIGTERM, or until *stop_event* is set.
    """
    settings = get_settings()
    setup_logging(settings)
    log = get_logger("invoice_delivery.main")

    log.info(
        "starting_invoice_delivery",
        environment=settings.environment,
        queue_enabled=settings.queue_enabled,
    )

    pool = await asyncpg.create_pool(
        dsn=settings.postgres_dsn,
        min_size=settings.postgres_pool_min,
        max_size=settings.postgres_pool_max,
    )
    log.info("postgres_pool_created")

    policy = RetryPolicy(RetryConfig.from_settings(settings))
    records = PostgresRecordStore(pool)
    submitter = build_submitter(settings)

    processor: QueueProcessor | None = None
    invoice_queue: InvoiceQueue | None = None
    if settings.queue_enabled:
        queue_store = PostgresQueueStore(pool)
        await queue_store.ensure_schema()
        processor = QueueProcessor(
            queue_store,
            records,
            submitter,
            policy,
            batch_size=settings.queue_batch_size,
            interval_seconds=settings.queue_interval_seconds,
            stale_timeout_seconds=settings.queue_stale_timeout_seconds,
        )
        invoice_queue = InvoiceQueue(queue_store, policy, processor)
        log.info("queue_initialized")

    delivery = InvoiceDeliveryService(
        records,
        submitter,
        RetryExecutor(policy, max_retries=settings.inline_max_retries),
        invoice_queue,
    )

    api_secret = settings.api_secret
    server = OperationsAPIServer(
        delivery,
        invoice_queue,
        api_secret=api_secret.get_secret_value() if api_secret else None,
        host=settings.api_host,
        port=settings.api_port,
    )

    if stop_event is None:
        stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    try:
        await server.start()
        if processor is not None:
            await processor.start()
        await stop_event.wait()
        log.info("shutdown_requested")
    finally:
        await server.stop()
        if processor is not None:
            await processor.stop()
        await submitter.close()
        await pool.close()
        log.info("invoice_delivery_stopped")


def run() -> None:
    """Run the application."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
