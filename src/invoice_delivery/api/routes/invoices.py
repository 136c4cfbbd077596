"""Invoice submission endpoint."""

from __future__ import annotations

from aiohttp import web

from invoice_delivery.errors import DeliveryConflictError, InvoiceNotFoundError


async def handle_submit_invoice(request: web.Request) -> web.Response:
    """POST /api/v1/invoices/{invoice_id}/submit"""
    delivery = request.app["delivery_service"]
    invoice_id = request.match_info["invoice_id"]

    try:
        outcome = await delivery.submit(invoice_id)
    except InvoiceNotFoundError as e:
        return web.json_response(
            {"success": False, "error": {"code": "NOT_FOUND", "message": str(e)}},
            status=404,
        )
    except DeliveryConflictError as e:
        return web.json_response(
            {"success": False, "error": {"code": e.code, "message": e.message}},
            status=409,
        )

    status = 200 if outcome.success else 202 if outcome.queued else 422
    return web.json_response(outcome.to_dict(), status=status)
