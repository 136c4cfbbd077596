"""Health check endpoint."""

from aiohttp import web

from invoice_delivery import __version__


async def handle_health(request: web.Request) -> web.Response:
    """GET /api/v1/health — no auth required."""
    processor = request.app.get("queue_processor")
    return web.json_response(
        {
            "status": "healthy",
            "version": __version__,
            "queue_running": bool(processor and processor.is_running),
        }
    )
