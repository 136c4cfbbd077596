"""Invoice record projection used by the delivery subsystem."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class InvoiceStatus(str, Enum):
    """Submission status of an invoice."""

    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    SUCCESS = "SUCCESS"
    RETRY_PENDING = "RETRY_PENDING"
    FAILED = "FAILED"
    MANUAL_REQUIRED = "MANUAL_REQUIRED"  # automated retry exhausted
    CANCELLED = "CANCELLED"

    @property
    def is_settled(self) -> bool:
        """True once the invoice must never be sent to the provider again."""
        return self in (InvoiceStatus.SUCCESS, InvoiceStatus.CANCELLED)


@dataclass
class Invoice:
    """The fields of an invoice the delivery subsystem reads and writes.

    ``payload`` is the document handed to the submitter unchanged; building
    it (line items, VAT, partner data) happens upstream.
    """

    id: str
    tenant_id: str
    internal_number: str
    status: InvoiceStatus = InvoiceStatus.PENDING
    payload: dict[str, Any] = field(default_factory=dict)
    external_number: str | None = None
    transaction_id: str | None = None
    last_error: str | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "internal_number": self.internal_number,
            "status": self.status.value,
            "external_number": self.external_number,
            "transaction_id": self.transaction_id,
            "last_error": self.last_error,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class SubmissionResult:
    """Successful reply from the invoicing provider."""

    transaction_id: str | None = None
    status: str | None = None
    external_number: str | None = None
