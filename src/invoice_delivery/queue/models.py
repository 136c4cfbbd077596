"""Queue models — the durable retry item and queue statistics.

An item flows through: Pending -> Processing -> (deleted on success |
Pending again with a later ``scheduled_at`` | deleted on exhaustion).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _parse_dt(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class QueueOutcome(str, Enum):
    """Terminal outcomes recorded when an item leaves the queue."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class QueueItem:
    """One invoice awaiting a future resubmission attempt.

    Attributes:
        id: Unique item identifier.
        tenant_id: Owning tenant.
        invoice_id: Invoice to resubmit (at most one live item per invoice).
        priority: Processing priority (higher = sooner).
        scheduled_at: Earliest time the item may be processed.
        attempts: Submission attempts made from the queue so far.
        max_attempts: Attempt budget, copied from the retry config.
        is_processing: True while a processing pass holds the item.
        last_error: Error message from the most recent failure.
        created_at: Timestamp when the item was enqueued.
        updated_at: Timestamp of the last change.
    """

    tenant_id: str
    invoice_id: str
    id: UUID = field(default_factory=uuid4)
    priority: int = 0
    scheduled_at: datetime = field(default_factory=_utcnow)
    attempts: int = 0
    max_attempts: int = 5
    is_processing: bool = False
    last_error: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def is_due(self, now: datetime | None = None) -> bool:
        """True when the item is idle and its scheduled time has passed."""
        return not self.is_processing and self.scheduled_at <= (now or _utcnow())

    @property
    def is_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialisation."""
        return {
            "id": str(self.id),
            "tenant_id": self.tenant_id,
            "invoice_id": self.invoice_id,
            "priority": self.priority,
            "scheduled_at": self.scheduled_at.isoformat(),
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "is_processing": self.is_processing,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueItem:
        """Create a QueueItem from a dictionary."""
        return cls(
            id=UUID(str(data["id"])) if data.get("id") else uuid4(),
            tenant_id=data["tenant_id"],
            invoice_id=data["invoice_id"],
            priority=data.get("priority", 0),
            scheduled_at=_parse_dt(data.get("scheduled_at")) or _utcnow(),
            attempts=data.get("attempts", 0),
            max_attempts=data.get("max_attempts", 5),
            is_processing=data.get("is_processing", False),
            last_error=data.get("last_error"),
            created_at=_parse_dt(data.get("created_at")) or _utcnow(),
            updated_at=_parse_dt(data.get("updated_at")) or _utcnow(),
        )


@dataclass
class QueueStats:
    """Snapshot of the retry queue.

    ``succeeded`` and ``failed`` count terminal outcomes; the items
    themselves are deleted when they leave the queue.
    """

    total: int = 0
    pending: int = 0
    processing: int = 0
    succeeded: int = 0
    failed: int = 0
    next_scheduled_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "pending": self.pending,
            "processing": self.processing,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "next_scheduled_at": (
                self.next_scheduled_at.isoformat() if self.next_scheduled_at else None
            ),
        }
