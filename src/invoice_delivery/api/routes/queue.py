"""Retry queue endpoints: read-only stats and the manual "process now" trigger."""

from __future__ import annotations

from aiohttp import web

from invoice_delivery.logging import get_logger

log = get_logger("invoice_delivery.api.routes.queue")


async def handle_queue_stats(request: web.Request) -> web.Response:
    """GET /api/v1/invoices/queue/stats?tenantId=..."""
    queue = request.app.get("invoice_queue")
    if queue is None:
        return web.json_response({"enabled": False})

    tenant_id = request.query.get("tenantId") or None
    stats = await queue.get_queue_stats(tenant_id)
    body: dict[str, object] = {"enabled": True, "stats": stats.to_dict()}

    processor = queue.processor
    if processor is not None:
        body["processor"] = {
            "running": processor.is_running,
            "processing": processor.is_processing,
            **processor.stats.to_dict(),
        }
    return web.json_response(body)


async def handle_queue_process(request: web.Request) -> web.Response:
    """POST /api/v1/invoices/queue/process — request an extra pass."""
    queue = request.app.get("invoice_queue")
    if queue is None or queue.processor is None:
        return web.json_response(
            {
                "success": False,
                "error": {
                    "code": "QUEUE_DISABLED",
                    "message": "Queue processing is not enabled",
                },
            },
            status=400,
        )

    queue.trigger_processing()
    log.info("queue_processing_requested", remote=request.remote)
    return web.json_response(
        {"success": True, "message": "Queue processing triggered"},
        status=202,
    )
