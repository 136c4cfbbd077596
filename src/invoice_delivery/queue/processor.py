"""Queue processor — periodic, single-flight drain of the invoice retry queue.

Each pass claims a batch of due items and resubmits them one at a time.
The outcome of every submission is applied to the item and the invoice:

* success -> invoice ``SUCCESS``, item deleted;
* transient failure with budget left -> item re-armed with a later
  ``scheduled_at``, invoice ``RETRY_PENDING``;
* permanent failure or budget spent -> invoice ``MANUAL_REQUIRED``, item
  deleted;
* invoice already ``SUCCESS`` or ``CANCELLED`` -> item deleted, nothing sent.

Submission failures never escape a pass. Store errors do: they abort the
pass and propagate to the caller of :meth:`QueueProcessor.tick`. Items the
aborted pass had claimed but not reached go back to the queue first.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

from invoice_delivery.errors import SubmissionError, to_submission_error
from invoice_delivery.invoices.models import Invoice, InvoiceStatus, SubmissionResult
from invoice_delivery.invoices.storage import RecordStore
from invoice_delivery.invoices.submitter import Submitter
from invoice_delivery.logging import get_logger, invoice_context
from invoice_delivery.queue.models import QueueItem, QueueOutcome
from invoice_delivery.queue.storage import QueueStore
from invoice_delivery.retry.policy import RetryPolicy

log = get_logger("invoice_delivery.queue.processor")

# Graceful shutdown: max seconds to wait for an in-flight pass.
_DRAIN_TIMEOUT_SECONDS = 30


@dataclass
class TickReport:
    """What a single processing pass did."""

    claimed: int = 0
    succeeded: int = 0
    requeued: int = 0
    exhausted: int = 0
    orphaned: int = 0
    settled: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "claimed": self.claimed,
            "succeeded": self.succeeded,
            "requeued": self.requeued,
            "exhausted": self.exhausted,
            "orphaned": self.orphaned,
            "settled": self.settled,
        }


@dataclass
class ProcessorStats:
    """Cumulative statistics across passes."""

    total_ticks: int = 0
    skipped_ticks: int = 0
    failed_ticks: int = 0
    items_processed: int = 0
    succeeded: int = 0
    requeued: int = 0
    exhausted: int = 0
    orphaned: int = 0
    settled: int = 0
    last_tick: datetime | None = None
    last_error: str | None = None

    def add(self, report: TickReport) -> None:
        self.items_processed += report.claimed
        self.succeeded += report.succeeded
        self.requeued += report.requeued
        self.exhausted += report.exhausted
        self.orphaned += report.orphaned
        self.settled += report.settled

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_ticks": self.total_ticks,
            "skipped_ticks": self.skipped_ticks,
            "failed_ticks": self.failed_ticks,
            "items_processed": self.items_processed,
            "succeeded": self.succeeded,
            "requeued": self.requeued,
            "exhausted": self.exhausted,
            "orphaned": self.orphaned,
            "settled": self.settled,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "last_error": self.last_error,
        }


class QueueProcessor:
    """Drain due retry-queue items through the submitter.

    At most one pass runs at a time within this process; an overlapping
    call to :meth:`tick` returns ``None`` without doing anything. The guard
    does not coordinate separate processes: that is the job of
    ``QueueStore.claim_due_items``.
    """

    def __init__(
        self,
        store: QueueStore,
        records: RecordStore,
        submitter: Submitter,
        policy: RetryPolicy,
        *,
        batch_size: int = 10,
        interval_seconds: float = 300,
        stale_timeout_seconds: int = 900,
    ) -> None:
        """Initialize the processor.

        Args:
            store: Queue item persistence.
            records: Invoice lookup and status updates.
            submitter: Client for the invoicing provider.
            policy: Shared retry policy (classification and backoff).
            batch_size: Max items claimed per pass.
            interval_seconds: Pause between scheduled passes.
            stale_timeout_seconds: Claims older than this are released
                at the start of every pass, scheduled or triggered.
        """
        if batch_size <= 0:
            raise ValueError(f"batch_size must be > 0, got: {batch_size}")
        self._store = store
        self._records = records
        self._submitter = submitter
        self._policy = policy
        self._batch_size = batch_size
        self._interval_seconds = interval_seconds
        self._stale_timeout_seconds = stale_timeout_seconds

        self._processing = False
        self._running = False
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._manual_tasks: set[asyncio.Task[TickReport | None]] = set()
        self._stats = ProcessorStats()

        log.info(
            "queue_processor_initialized",
            batch_size=batch_size,
            interval=interval_seconds,
        )

    @property
    def stats(self) -> ProcessorStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        """Whether the periodic loop is running."""
        return self._running

    @property
    def is_processing(self) -> bool:
        """Whether a pass is currently executing."""
        return self._processing

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic processing loop."""
        if self._running:
            log.warning("queue_processor_already_running")
            return

        self._running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        log.info("queue_processor_started", interval=self._interval_seconds)

    async def stop(self) -> None:
        """Stop the loop, letting an in-flight pass finish first.

        Submitter calls are not interrupted unless the pass overruns
        ``_DRAIN_TIMEOUT_SECONDS``.
        """
        if not self._running and not self._manual_tasks:
            return

        log.info("queue_processor_stopping")
        self._running = False
        self._stop_event.set()

        pending: list[asyncio.Task[Any]] = list(self._manual_tasks)
        if self._task is not None:
            pending.append(self._task)
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=_DRAIN_TIMEOUT_SECONDS)
            for task in still_running:
                task.cancel()
            for task in still_running:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            if still_running:
                log.warning("queue_processor_drain_timeout", cancelled=len(still_running))

        self._task = None
        self._manual_tasks.clear()
        log.info("queue_processor_stopped")

    async def _run_loop(self) -> None:
        """Main ticker loop."""
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                # Already logged by tick(); the next interval retries
                log.error("queue_loop_error", error=str(e))

            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval_seconds)

    def trigger(self) -> asyncio.Task[TickReport | None]:
        """Request an extra pass now without waiting for it.

        The pass is subject to the same single-flight guard, so it is a
        no-op if one is already running.
        """
        task = asyncio.create_task(self._manual_tick())
        self._manual_tasks.add(task)
        task.add_done_callback(self._manual_tasks.discard)
        log.info("queue_processing_triggered")
        return task

    async def _manual_tick(self) -> TickReport | None:
        try:
            return await self.tick()
        except Exception as e:
            log.warning("manual_tick_failed", error=str(e))
            return None

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def tick(self) -> TickReport | None:
        """Run one processing pass.

        Returns:
            A :class:`TickReport`, or ``None`` if another pass was already
            running and this call was skipped.

        Raises:
            Exception: Store errors abort the pass and propagate. Items the
                pass claimed but did not reach are released first.
        """
        # Check-and-set with no await in between
        if self._processing:
            self._stats.skipped_ticks += 1
            log.debug("queue_tick_skipped")
            return None
        self._processing = True

        self._stats.total_ticks += 1
        self._stats.last_tick = datetime.now(tz=UTC)
        report = TickReport()
        try:
            await self._process_batch(report)
        except Exception as e:
            self._stats.failed_ticks += 1
            self._stats.last_error = str(e)
            log.exception("queue_tick_failed", **report.to_dict())
            raise
        finally:
            self._stats.add(report)
            self._processing = False

        if report.claimed:
            log.info("queue_tick_complete", **report.to_dict())
        return report

    async def _process_batch(self, report: TickReport) -> None:
        # Under the single-flight guard: no live pass in this process holds a claim
        await self._store.release_stale(self._stale_timeout_seconds)

        items = await self._store.claim_due_items(self._batch_size)
        report.claimed = len(items)
        # Sequential on purpose: bounds load on the provider
        for index, item in enumerate(items):
            try:
                await self._process_item(item, report)
            except Exception:
                await self._release_claims(items[index:])
                raise

    async def _release_claims(self, items: list[QueueItem]) -> None:
        """Hand claimed items back to the queue after an aborted pass."""
        released = 0
        for item in items:
            try:
                await self._store.update(item.id, is_processing=False)
            except Exception as e:
                log.warning(
                    "queue_claim_release_failed",
                    item_id=str(item.id),
                    invoice_id=item.invoice_id,
                    error=str(e),
                )
            else:
                released += 1
        log.warning("queue_claims_released", released=released, total=len(items))

    async def _process_item(self, item: QueueItem, report: TickReport) -> None:
        with invoice_context(item.invoice_id, item.tenant_id):
            await self._deliver(item, report)

    async def _deliver(self, item: QueueItem, report: TickReport) -> None:
        """Resubmit one claimed item and apply the resulting transition."""
        invoice = await self._records.find_by_id(item.invoice_id)
        if invoice is None:
            await self._store.delete(item.id)
            report.orphaned += 1
            log.warning(
                "queue_item_orphaned",
                item_id=str(item.id),
                invoice_id=item.invoice_id,
            )
            return

        if invoice.status.is_settled:
            await self._store.delete(item.id)
            report.settled += 1
            log.warning(
                "queue_item_already_settled",
                item_id=str(item.id),
                invoice_id=item.invoice_id,
                status=invoice.status.value,
            )
            return

        if item.is_exhausted:
            await self._escalate(
                item,
                attempts=item.attempts,
                last_error=item.last_error,
                details={
                    "attempts": item.attempts,
                    "error_message": item.last_error,
                    "reason": "attempts_exhausted",
                },
                report=report,
            )
            return

        log.debug(
            "processing_queue_item",
            item_id=str(item.id),
            invoice_id=item.invoice_id,
            attempt=item.attempts + 1,
        )

        try:
            result = await self._submitter.submit(invoice)
        except Exception as exc:
            await self._on_failure(item, to_submission_error(exc), report)
        else:
            await self._on_success(item, invoice, result, report)

    async def _on_success(
        self,
        item: QueueItem,
        invoice: Invoice,
        result: SubmissionResult,
        report: TickReport,
    ) -> None:
        attempts = item.attempts + 1
        await self._records.update_status(
            invoice.id,
            InvoiceStatus.SUCCESS,
            {
                "transaction_id": result.transaction_id,
                "external_number": result.external_number,
                "provider_status": result.status,
                "attempts": attempts,
            },
        )
        await self._store.record_outcome(
            replace(item, attempts=attempts, is_processing=False),
            QueueOutcome.SUCCEEDED,
        )
        await self._store.delete(item.id)
        report.succeeded += 1
        log.info(
            "queue_item_succeeded",
            item_id=str(item.id),
            invoice_id=item.invoice_id,
            attempts=attempts,
            transaction_id=result.transaction_id,
        )

    async def _on_failure(
        self,
        item: QueueItem,
        error: SubmissionError,
        report: TickReport,
    ) -> None:
        attempts = item.attempts + 1
        last_error = f"{error.code}: {error.message}"
        retryable = self._policy.is_retryable(error.code)
        details: dict[str, Any] = {
            "error_code": error.code,
            "error_message": error.message,
            "attempts": attempts,
        }

        if retryable and attempts < item.max_attempts:
            scheduled_at = self._policy.next_retry_at(attempts)
            await self._store.update(
                item.id,
                attempts=attempts,
                scheduled_at=scheduled_at,
                is_processing=False,
                last_error=last_error,
            )
            details["next_retry_at"] = scheduled_at.isoformat()
            await self._records.update_status(
                item.invoice_id, InvoiceStatus.RETRY_PENDING, details
            )
            report.requeued += 1
            log.info(
                "queue_item_requeued",
                item_id=str(item.id),
                invoice_id=item.invoice_id,
                attempt=attempts,
                code=error.code,
                scheduled_at=scheduled_at.isoformat(),
            )
            return

        details["reason"] = "attempts_exhausted" if retryable else "permanent_error"
        await self._escalate(
            item, attempts=attempts, last_error=last_error, details=details, report=report
        )

    async def _escalate(
        self,
        item: QueueItem,
        *,
        attempts: int,
        last_error: str | None,
        details: dict[str, Any],
        report: TickReport,
    ) -> None:
        """Hand the invoice over to a human and drop the item from the queue."""
        await self._records.update_status(
            item.invoice_id, InvoiceStatus.MANUAL_REQUIRED, details
        )
        await self._store.record_outcome(
            replace(item, attempts=attempts, is_processing=False, last_error=last_error),
            QueueOutcome.FAILED,
        )
        await self._store.delete(item.id)
        report.exhausted += 1
        log.error(
            "queue_item_manual_intervention_required",
            item_id=str(item.id),
            invoice_id=item.invoice_id,
            tenant_id=item.tenant_id,
            attempts=attempts,
            code=details.get("error_code"),
            reason=details["reason"],
        )
