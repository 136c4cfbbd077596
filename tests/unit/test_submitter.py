"""Tests for the HTTP submitter."""

from __future__ import annotations

import json
from collections.abc import Callable

import httpx
import pytest

from invoice_delivery import errors
from invoice_delivery.errors import SubmissionError
from invoice_delivery.invoices.models import Invoice
from invoice_delivery.invoices.submitter import HttpSubmitter, normalise_provider_code

Handler = Callable[[httpx.Request], httpx.Response]


def _submitter(handler: Handler, api_key: str | None = "secret-key") -> HttpSubmitter:
    return HttpSubmitter(
        "https://provider.test/api/",
        api_key=api_key,
        transport=httpx.MockTransport(handler),
    )


async def _submit_expecting_error(handler: Handler, invoice: Invoice) -> SubmissionError:
    submitter = _submitter(handler)
    try:
        with pytest.raises(SubmissionError) as exc_info:
            await submitter.submit(invoice)
    finally:
        await submitter.close()
    return exc_info.value


class TestNormaliseProviderCode:
    @pytest.mark.parametrize(
        ("raw", "code"),
        [
            (None, errors.UNKNOWN_ERROR),
            ("", errors.UNKNOWN_ERROR),
            (51, errors.NAV_TEMPORARY_ERROR),
            ("51", errors.NAV_TEMPORARY_ERROR),
            (100, errors.SERVICE_UNAVAILABLE),
            (101, errors.TIMEOUT),
            (102, errors.RATE_LIMIT),
            (103, errors.CONNECTION_ERROR),
            (7, "PROVIDER_7"),
            ("invalid_tax_number", errors.INVALID_TAX_NUMBER),
        ],
    )
    def test_mapping(self, raw: object, code: str) -> None:
        assert normalise_provider_code(raw) == code


class TestHttpSubmitter:
    @pytest.mark.asyncio
    async def test_success(self, invoice: Invoice) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "transactionId": "tx-77",
                    "status": "ACCEPTED",
                    "invoiceNumber": "E-2026-77",
                },
            )

        submitter = _submitter(handler)
        result = await submitter.submit(invoice)
        await submitter.close()

        assert result.transaction_id == "tx-77"
        assert result.status == "ACCEPTED"
        assert result.external_number == "E-2026-77"

        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/api/invoices"
        assert request.headers["X-API-Key"] == "secret-key"
        assert request.headers["Idempotency-Key"] == invoice.id
        body = json.loads(request.content)
        assert body == {
            "tenantId": invoice.tenant_id,
            "invoiceNumber": invoice.internal_number,
            "invoice": invoice.payload,
        }

    @pytest.mark.asyncio
    async def test_no_api_key_header_when_unset(self, invoice: Invoice) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"success": True})

        submitter = _submitter(handler, api_key=None)
        await submitter.submit(invoice)
        await submitter.close()

        assert "X-API-Key" not in seen[0].headers

    @pytest.mark.asyncio
    async def test_provider_temporary_error(self, invoice: Invoice) -> None:
        err = await _submit_expecting_error(
            lambda r: httpx.Response(
                200, json={"success": False, "errorCode": 51, "message": "NAV busy"}
            ),
            invoice,
        )
        assert err.code == errors.NAV_TEMPORARY_ERROR
        assert err.message == "NAV busy"
        assert err.details == {"provider_code": 51}

    @pytest.mark.asyncio
    async def test_provider_symbolic_error(self, invoice: Invoice) -> None:
        err = await _submit_expecting_error(
            lambda r: httpx.Response(
                200,
                json={
                    "success": False,
                    "errorCode": "INVALID_TAX_NUMBER",
                    "errorMessage": "Tax number invalid",
                },
            ),
            invoice,
        )
        assert err.code == errors.INVALID_TAX_NUMBER
        assert err.message == "Tax number invalid"

    @pytest.mark.asyncio
    async def test_provider_error_without_details(self, invoice: Invoice) -> None:
        err = await _submit_expecting_error(
            lambda r: httpx.Response(200, json={"success": False}), invoice
        )
        assert err.code == errors.UNKNOWN_ERROR
        assert err.message == "Unknown API error"

    @pytest.mark.parametrize(
        ("status", "code"),
        [
            (400, errors.INVALID_INVOICE_DATA),
            (401, errors.AUTH_ERROR),
            (403, errors.AUTH_ERROR),
            (409, errors.DUPLICATE_INVOICE),
            (422, errors.INVALID_INVOICE_DATA),
            (429, errors.RATE_LIMIT),
            (503, errors.SERVICE_UNAVAILABLE),
            (500, errors.UNKNOWN_ERROR),
        ],
    )
    @pytest.mark.asyncio
    async def test_http_status_mapping(self, invoice: Invoice, status: int, code: str) -> None:
        err = await _submit_expecting_error(
            lambda r: httpx.Response(status, json={"message": "nope"}), invoice
        )
        assert err.code == code

    @pytest.mark.asyncio
    async def test_rejection_keeps_reply_message(self, invoice: Invoice) -> None:
        err = await _submit_expecting_error(
            lambda r: httpx.Response(409, json={"message": "Invoice already exists"}), invoice
        )
        assert err.message == "Invoice already exists"
        assert err.details == {"http_status": 409}

    @pytest.mark.asyncio
    async def test_rejection_with_text_body(self, invoice: Invoice) -> None:
        err = await _submit_expecting_error(
            lambda r: httpx.Response(401, text="Forbidden"), invoice
        )
        assert err.code == errors.AUTH_ERROR
        assert err.message == "Forbidden"

    @pytest.mark.asyncio
    async def test_connect_error(self, invoice: Invoice) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        err = await _submit_expecting_error(handler, invoice)
        assert err.code == errors.CONNECTION_ERROR

    @pytest.mark.asyncio
    async def test_timeout(self, invoice: Invoice) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("read timed out", request=request)

        err = await _submit_expecting_error(handler, invoice)
        assert err.code == errors.TIMEOUT

    @pytest.mark.asyncio
    async def test_malformed_json(self, invoice: Invoice) -> None:
        err = await _submit_expecting_error(
            lambda r: httpx.Response(200, text="<html>oops</html>"), invoice
        )
        assert err.code == errors.UNKNOWN_ERROR

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [[1, 2], "accepted", 42])
    async def test_non_object_json_reply(self, invoice: Invoice, body: object) -> None:
        err = await _submit_expecting_error(lambda r: httpx.Response(200, json=body), invoice)
        assert err.code == errors.UNKNOWN_ERROR
        assert err.details == {"http_status": 200}

    @pytest.mark.asyncio
    async def test_client_is_reused_and_closed(self, invoice: Invoice) -> None:
        submitter = _submitter(lambda r: httpx.Response(200, json={"success": True}))

        await submitter.submit(invoice)
        client = submitter._client
        await submitter.submit(invoice)
        assert submitter._client is client

        await submitter.close()
        assert submitter._client is None
