"""Retry/backoff delivery of invoices to the tax-authority e-invoicing API."""

__version__ = "0.1.0"
