"""Async client for the invoicing provider.

The client posts the prepared invoice document to the provider and turns
every failure into a :class:`~invoice_delivery.errors.SubmissionError`, so
callers only ever deal with one tagged error type.
"""

from __future__ import annotations

from typing import Any, Protocol

import httpx

from invoice_delivery import errors
from invoice_delivery.errors import SubmissionError, to_submission_error
from invoice_delivery.invoices.models import Invoice, SubmissionResult
from invoice_delivery.logging import get_logger

log = get_logger("invoice_delivery.invoices.submitter")

# Numeric provider error codes with a known meaning.
PROVIDER_ERROR_CODES: dict[int, str] = {
    51: errors.NAV_TEMPORARY_ERROR,
    100: errors.SERVICE_UNAVAILABLE,
    101: errors.TIMEOUT,
    102: errors.RATE_LIMIT,
    103: errors.CONNECTION_ERROR,
}

# HTTP statuses the provider uses for rejected (non-transient) requests.
_REJECTION_STATUS_CODES: dict[int, str] = {
    400: errors.INVALID_INVOICE_DATA,
    401: errors.AUTH_ERROR,
    403: errors.AUTH_ERROR,
    409: errors.DUPLICATE_INVOICE,
    422: errors.INVALID_INVOICE_DATA,
}


def normalise_provider_code(raw: Any) -> str:
    """Map a provider error code (numeric or symbolic) to a delivery code."""
    if raw is None or raw == "":
        return errors.UNKNOWN_ERROR
    try:
        numeric = int(raw)
    except (TypeError, ValueError):
        return str(raw).upper()
    return PROVIDER_ERROR_CODES.get(numeric, f"PROVIDER_{numeric}")


class Submitter(Protocol):
    """Submits one invoice; raises :class:`SubmissionError` on failure."""

    async def submit(self, invoice: Invoice) -> SubmissionResult: ...


class HttpSubmitter:
    """Submit invoices to the provider's HTTP API."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 30.0,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the submitter.

        Args:
            base_url: Base URL of the provider API.
            api_key: Provider API key.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (used by tests).
        """
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

        log.info("submitter_initialized", base_url=self._base_url)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {"Accept": "application/json"}
            if self._api_key:
                headers["X-API-Key"] = self._api_key
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=headers,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
            log.debug("submitter_closed")

    async def submit(self, invoice: Invoice) -> SubmissionResult:
        """Submit *invoice* to the provider.

        Raises:
            SubmissionError: For any failure, tagged with a delivery code.
        """
        log.debug(
            "submitting_invoice",
            invoice_id=invoice.id,
            tenant_id=invoice.tenant_id,
        )
        try:
            client = await self._get_client()
            response = await client.post(
                "/invoices",
                json={
                    "tenantId": invoice.tenant_id,
                    "invoiceNumber": invoice.internal_number,
                    "invoice": invoice.payload,
                },
                headers={"Idempotency-Key": invoice.id},
            )
            rejection = _REJECTION_STATUS_CODES.get(response.status_code)
            if rejection is not None:
                raise SubmissionError(
                    rejection,
                    _reply_message(response),
                    details={"http_status": response.status_code},
                )
            response.raise_for_status()
            data = response.json()
        except SubmissionError:
            raise
        except (httpx.HTTPError, ValueError) as e:
            # ValueError: malformed JSON body
            error = to_submission_error(e)
            log.warning(
                "submission_transport_failed",
                invoice_id=invoice.id,
                code=error.code,
                error=str(e),
            )
            raise error from e

        if not isinstance(data, dict):
            log.warning(
                "submission_reply_malformed",
                invoice_id=invoice.id,
                body_type=type(data).__name__,
            )
            raise SubmissionError(
                errors.UNKNOWN_ERROR,
                "Unexpected response body from provider",
                details={"http_status": response.status_code},
            )

        if not data.get("success", False):
            code = normalise_provider_code(data.get("errorCode"))
            message = data.get("message") or data.get("errorMessage") or "Unknown API error"
            log.warning(
                "submission_rejected",
                invoice_id=invoice.id,
                code=code,
                error=message,
            )
            raise SubmissionError(code, message, details={"provider_code": data.get("errorCode")})

        result = SubmissionResult(
            transaction_id=data.get("transactionId"),
            status=data.get("status"),
            external_number=data.get("invoiceNumber"),
        )
        log.info(
            "invoice_submitted",
            invoice_id=invoice.id,
            transaction_id=result.transaction_id,
        )
        return result


def _reply_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        return str(data.get("message") or data.get("errorMessage") or data)
    return str(data)
