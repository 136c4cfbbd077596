"""Invoice record access for the delivery subsystem.

The ``invoices`` table is owned by the ERP's invoicing module; this module
does not issue ``CREATE TABLE`` statements, it only reads rows and writes
submission status back.
"""

from __future__ import annotations

import json
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any, Protocol

import asyncpg  # type: ignore[import-not-found,import-untyped]

from invoice_delivery.invoices.models import Invoice, InvoiceStatus
from invoice_delivery.logging import get_logger

log = get_logger("invoice_delivery.invoices.storage")


def _row_to_invoice(row: asyncpg.Record) -> Invoice:
    """Convert an ``asyncpg.Record`` to an :class:`Invoice`."""
    payload = row["payload"]
    return Invoice(
        id=row["id"],
        tenant_id=row["tenant_id"],
        internal_number=row["internal_number"],
        status=InvoiceStatus(row["status"]),
        payload=json.loads(payload) if isinstance(payload, str) else (payload or {}),
        external_number=row["external_number"],
        transaction_id=row["transaction_id"],
        last_error=row["last_error"],
        updated_at=row["updated_at"],
    )


def _error_text(details: dict[str, Any]) -> str | None:
    code = details.get("error_code")
    message = details.get("error_message")
    if code and message:
        return f"{code}: {message}"
    return code or message


class RecordStore(Protocol):
    """Invoice lookup and status updates."""

    async def find_by_id(self, invoice_id: str) -> Invoice | None: ...

    async def update_status(
        self,
        invoice_id: str,
        status: InvoiceStatus,
        details: dict[str, Any] | None = None,
    ) -> bool: ...


class PostgresRecordStore:
    """Read invoices and record submission status in PostgreSQL."""

    def __init__(self, pool: asyncpg.Pool) -> None:  # type: ignore[type-arg]
        self._pool = pool

    async def find_by_id(self, invoice_id: str) -> Invoice | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, tenant_id, internal_number, status, payload,
                       external_number, transaction_id, last_error, updated_at
                FROM invoices
                WHERE id = $1
                """,
                invoice_id,
            )
        return _row_to_invoice(row) if row is not None else None

    async def update_status(
        self,
        invoice_id: str,
        status: InvoiceStatus,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Set the submission status of an invoice.

        Args:
            invoice_id: Invoice to update.
            status: New status.
            details: Optional ``transaction_id``, ``external_number``,
                ``error_code``, ``error_message``; the whole mapping is also
                kept in ``status_details``.

        Returns:
            True if a row was updated.
        """
        details = details or {}
        async with self._pool.acquire() as conn:
            result: str = await conn.execute(
                """
                UPDATE invoices
                SET status          = $2,
                    transaction_id  = COALESCE($3, transaction_id),
                    external_number = COALESCE($4, external_number),
                    last_error      = $5,
                    status_details  = $6::jsonb,
                    updated_at      = now()
                WHERE id = $1
                """,
                invoice_id,
                status.value,
                details.get("transaction_id"),
                details.get("external_number"),
                _error_text(details),
                json.dumps(details, default=str),
            )
        updated = int(result.split()[-1]) > 0
        if updated:
            log.debug("invoice_status_updated", invoice_id=invoice_id, status=status.value)
        else:
            log.warning("invoice_status_update_missed", invoice_id=invoice_id)
        return updated


class InMemoryRecordStore:
    """Dictionary-backed record store for tests and local development."""

    def __init__(self, invoices: list[Invoice] | None = None) -> None:
        self._invoices: dict[str, Invoice] = {inv.id: inv for inv in invoices or []}
        self.status_history: list[tuple[str, InvoiceStatus, dict[str, Any]]] = []

    def add(self, invoice: Invoice) -> None:
        self._invoices[invoice.id] = invoice

    async def find_by_id(self, invoice_id: str) -> Invoice | None:
        invoice = self._invoices.get(invoice_id)
        return replace(invoice) if invoice is not None else None

    async def update_status(
        self,
        invoice_id: str,
        status: InvoiceStatus,
        details: dict[str, Any] | None = None,
    ) -> bool:
        details = details or {}
        invoice = self._invoices.get(invoice_id)
        if invoice is None:
            return False
        invoice.status = status
        invoice.transaction_id = details.get("transaction_id") or invoice.transaction_id
        invoice.external_number = details.get("external_number") or invoice.external_number
        invoice.last_error = _error_text(details)
        invoice.updated_at = datetime.now(tz=UTC)
        self.status_history.append((invoice_id, status, details))
        return True
