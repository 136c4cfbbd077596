"""Exception types and error-code extraction for invoice delivery.

Every failure that crosses the submitter boundary is a
:class:`SubmissionError` carrying a short, stable ``code``. The retry
policy only ever sees that code; transport exceptions are mapped to a code
here, once, by type.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx

# Transport-level codes
TIMEOUT = "TIMEOUT"
CONNECTION_ERROR = "CONNECTION_ERROR"
RATE_LIMIT = "RATE_LIMIT"
SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
NAV_TEMPORARY_ERROR = "NAV_TEMPORARY_ERROR"

# Provider / validation codes
INVALID_TAX_NUMBER = "INVALID_TAX_NUMBER"
INVALID_INVOICE_DATA = "INVALID_INVOICE_DATA"
DUPLICATE_INVOICE = "DUPLICATE_INVOICE"
AUTH_ERROR = "AUTH_ERROR"

UNKNOWN_ERROR = "UNKNOWN_ERROR"

# Request conflicts, never sent to the provider
ALREADY_SUBMITTED = "ALREADY_SUBMITTED"
ALREADY_QUEUED = "ALREADY_QUEUED"

_HTTP_STATUS_CODES: dict[int, str] = {
    429: RATE_LIMIT,
    503: SERVICE_UNAVAILABLE,
}


class DeliveryError(Exception):
    """Base exception for the invoice delivery service."""

    pass


class SubmissionError(DeliveryError):
    """A failed submission attempt, tagged with a classifiable code."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        return f"SubmissionError(code={self.code!r}, message={self.message!r})"


class InvoiceNotFoundError(DeliveryError):
    """Raised when an invoice record does not exist."""

    def __init__(self, invoice_id: str) -> None:
        super().__init__(f"Invoice not found: {invoice_id}")
        self.invoice_id = invoice_id


class DeliveryConflictError(DeliveryError):
    """Raised when an invoice is settled or already owned by the retry queue."""

    def __init__(self, invoice_id: str, code: str, message: str) -> None:
        super().__init__(message)
        self.invoice_id = invoice_id
        self.code = code
        self.message = message


def error_code_for(exc: BaseException) -> str:
    """Map an exception to an error code.

    Args:
        exc: The exception raised by a submission attempt.

    Returns:
        The tagged code for :class:`SubmissionError`, a fixed code for known
        transport failures, or ``UNKNOWN_ERROR``.
    """
    if isinstance(exc, SubmissionError):
        return exc.code
    if isinstance(exc, httpx.TimeoutException | asyncio.TimeoutError):
        return TIMEOUT
    if isinstance(exc, httpx.ConnectError):
        return CONNECTION_ERROR
    if isinstance(exc, httpx.HTTPStatusError):
        return _HTTP_STATUS_CODES.get(exc.response.status_code, UNKNOWN_ERROR)
    return UNKNOWN_ERROR


def to_submission_error(exc: Exception) -> SubmissionError:
    """Wrap any exception as a :class:`SubmissionError` (idempotent)."""
    if isinstance(exc, SubmissionError):
        return exc
    return SubmissionError(error_code_for(exc), str(exc) or type(exc).__name__)
