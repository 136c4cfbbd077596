"""Operational HTTP API for the invoice delivery service.

Exposes a read-only queue stats endpoint, a manual "process now" trigger and
an endpoint to submit a single invoice. Runs as an aiohttp app in the same
event loop as the queue processor.
"""

from __future__ import annotations

import hmac
from typing import Any

from aiohttp import web

from invoice_delivery.api.routes.health import handle_health
from invoice_delivery.api.routes.invoices import handle_submit_invoice
from invoice_delivery.api.routes.queue import handle_queue_process, handle_queue_stats
from invoice_delivery.invoices.delivery import InvoiceDeliveryService
from invoice_delivery.logging import get_logger
from invoice_delivery.queue.service import InvoiceQueue

log = get_logger("invoice_delivery.api.server")

# Paths that don't require authentication
PUBLIC_PATHS = frozenset({"/api/v1/health"})


class OperationsAPIServer:
    """aiohttp server for operational endpoints."""

    def __init__(
        self,
        delivery_service: InvoiceDeliveryService,
        invoice_queue: InvoiceQueue | None = None,
        *,
        api_secret: str | None = None,
        host: str = "0.0.0.0",  # nosec B104 - Intentional for Docker container
        port: int = 8080,
    ) -> None:
        self._delivery_service = delivery_service
        self._invoice_queue = invoice_queue
        self._api_secret = api_secret
        self._host = host
        self._port = port
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

        log.info("operations_api_initialized", host=host, port=port)

    def _check_auth(self, request: web.Request) -> bool:
        """True if authenticated or no secret is configured."""
        if not self._api_secret:
            return True

        provided = request.headers.get("X-API-Secret")
        return provided is not None and hmac.compare_digest(provided, self._api_secret)

    @web.middleware
    async def auth_middleware(
        self,
        request: web.Request,
        handler: Any,
    ) -> web.StreamResponse:
        """Reject requests without a valid ``X-API-Secret`` header."""
        if request.path not in PUBLIC_PATHS and not self._check_auth(request):
            log.warning("operations_api_unauthorized", path=request.path)
            return web.json_response({"error": "Unauthorized"}, status=401)

        response: web.StreamResponse = await handler(request)
        return response

    def create_app(self) -> web.Application:
        """Create and configure the aiohttp application."""
        app = web.Application(middlewares=[self.auth_middleware])

        app["delivery_service"] = self._delivery_service
        app["invoice_queue"] = self._invoice_queue
        if self._invoice_queue is not None:
            app["queue_processor"] = self._invoice_queue.processor

        app.router.add_get("/api/v1/health", handle_health)
        app.router.add_get("/api/v1/invoices/queue/stats", handle_queue_stats)
        app.router.add_post("/api/v1/invoices/queue/process", handle_queue_process)
        app.router.add_post("/api/v1/invoices/{invoice_id}/submit", handle_submit_invoice)

        self._app = app
        return app

    async def start(self) -> None:
        """Start the server."""
        if self._app is None:
            self.create_app()

        if self._app is None:  # pragma: no cover
            raise RuntimeError("create_app() must be called first")

        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()

        log.info("operations_api_started", host=self._host, port=self._port)

    async def stop(self) -> None:
        """Stop the server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            log.info("operations_api_stopped")
