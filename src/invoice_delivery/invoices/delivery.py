"""Immediate invoice submission with hand-off to the retry queue."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from invoice_delivery import errors
from invoice_delivery.errors import DeliveryConflictError, InvoiceNotFoundError
from invoice_delivery.invoices.models import Invoice, InvoiceStatus, SubmissionResult
from invoice_delivery.invoices.storage import RecordStore
from invoice_delivery.invoices.submitter import Submitter
from invoice_delivery.logging import get_logger, invoice_context
from invoice_delivery.queue.service import InvoiceQueue
from invoice_delivery.retry.executor import RetryError, RetryExecutor

log = get_logger("invoice_delivery.invoices.delivery")


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of :meth:`InvoiceDeliveryService.submit`."""

    invoice_id: str
    status: InvoiceStatus
    transaction_id: str | None = None
    error: RetryError | None = None
    queued: bool = False
    attempts: int = 0

    @property
    def success(self) -> bool:
        return self.status is InvoiceStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "invoiceId": self.invoice_id,
            "status": self.status.value,
            "transactionId": self.transaction_id,
            "queued": self.queued,
            "attempts": self.attempts,
            "error": (
                {
                    "code": self.error.code,
                    "message": self.error.message,
                    "retryable": self.error.retryable,
                }
                if self.error
                else None
            ),
        }


class InvoiceDeliveryService:
    """Submit an invoice now; defer transient failures to the retry queue.

    Permanent failures are surfaced immediately and never queued. Settled
    invoices and invoices already waiting in the queue are refused without
    contacting the provider.
    """

    def __init__(
        self,
        records: RecordStore,
        submitter: Submitter,
        executor: RetryExecutor,
        queue: InvoiceQueue | None = None,
    ) -> None:
        self._records = records
        self._submitter = submitter
        self._executor = executor
        self._queue = queue

    async def submit(self, invoice_id: str) -> DeliveryOutcome:
        """Submit *invoice_id* and record the outcome.

        Raises:
            InvoiceNotFoundError: If the invoice does not exist.
            DeliveryConflictError: If the invoice is already settled or
                queued for retry.
        """
        invoice = await self._records.find_by_id(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)

        if invoice.status.is_settled:
            raise DeliveryConflictError(
                invoice.id,
                errors.ALREADY_SUBMITTED,
                f"Invoice is already {invoice.status.value}",
            )
        if self._queue is not None:
            item = await self._queue.get_queue_item(invoice.id)
            if item is not None:
                raise DeliveryConflictError(
                    invoice.id,
                    errors.ALREADY_QUEUED,
                    "Invoice is already queued for retry",
                )

        with invoice_context(invoice.id, invoice.tenant_id):
            return await self._deliver(invoice)

    async def _deliver(self, invoice: Invoice) -> DeliveryOutcome:
        await self._records.update_status(invoice.id, InvoiceStatus.SUBMITTED)
        outcome = await self._executor.execute_with_retry(
            lambda: self._submitter.submit(invoice)
        )

        if outcome.success:
            result: SubmissionResult = outcome.result  # type: ignore[assignment]
            await self._records.update_status(
                invoice.id,
                InvoiceStatus.SUCCESS,
                {
                    "transaction_id": result.transaction_id,
                    "external_number": result.external_number,
                    "provider_status": result.status,
                    "attempts": outcome.attempts,
                },
            )
            return DeliveryOutcome(
                invoice_id=invoice.id,
                status=InvoiceStatus.SUCCESS,
                transaction_id=result.transaction_id,
                attempts=outcome.attempts,
            )

        error = outcome.error
        details: dict[str, Any] = {
            "error_code": error.code if error else None,
            "error_message": error.message if error else None,
            "attempts": outcome.attempts,
        }

        if error is not None and error.retryable and self._queue is not None:
            if not self._queue.accepts_items:
                return await self._escalate(invoice, error, details, outcome.attempts)
            await self._queue.add_to_queue(
                invoice.tenant_id,
                invoice.id,
                last_error=f"{error.code}: {error.message}",
            )
            await self._records.update_status(invoice.id, InvoiceStatus.RETRY_PENDING, details)
            log.info("invoice_submission_deferred", invoice_id=invoice.id, code=error.code)
            return DeliveryOutcome(
                invoice_id=invoice.id,
                status=InvoiceStatus.RETRY_PENDING,
                error=error,
                queued=True,
                attempts=outcome.attempts,
            )

        await self._records.update_status(invoice.id, InvoiceStatus.FAILED, details)
        log.warning(
            "invoice_submission_failed",
            invoice_id=invoice.id,
            code=error.code if error else None,
        )
        return DeliveryOutcome(
            invoice_id=invoice.id,
            status=InvoiceStatus.FAILED,
            error=error,
            attempts=outcome.attempts,
        )

    async def _escalate(
        self,
        invoice: Invoice,
        error: RetryError,
        details: dict[str, Any],
        attempts: int,
    ) -> DeliveryOutcome:
        """Transient failure with no queue budget left: hand over to a human."""
        details["reason"] = "no_retry_budget"
        await self._records.update_status(invoice.id, InvoiceStatus.MANUAL_REQUIRED, details)
        log.error(
            "invoice_manual_intervention_required",
            invoice_id=invoice.id,
            tenant_id=invoice.tenant_id,
            code=error.code,
            reason="no_retry_budget",
        )
        return DeliveryOutcome(
            invoice_id=invoice.id,
            status=InvoiceStatus.MANUAL_REQUIRED,
            error=error,
            attempts=attempts,
        )
