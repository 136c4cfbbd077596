"""Invoice records and the provider submitter used by the delivery subsystem."""

from invoice_delivery.invoices.models import Invoice, InvoiceStatus, SubmissionResult
from invoice_delivery.invoices.storage import (
    InMemoryRecordStore,
    PostgresRecordStore,
    RecordStore,
)
from invoice_delivery.invoices.submitter import HttpSubmitter, Submitter

__all__ = [
    "HttpSubmitter",
    "InMemoryRecordStore",
    "Invoice",
    "InvoiceStatus",
    "PostgresRecordStore",
    "RecordStore",
    "SubmissionResult",
    "Submitter",
]
