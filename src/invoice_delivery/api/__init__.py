"""Operational HTTP API: queue stats, manual processing trigger, submission."""

from invoice_delivery.api.server import OperationsAPIServer

__all__ = ["OperationsAPIServer"]
