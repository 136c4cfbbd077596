"""Structured logging for the invoice delivery service.

Console output is coloured in development and JSON elsewhere; the rotating
file log is always JSON. Every event carries the service name and
environment, and events emitted while an invoice is being delivered also
carry its ``invoice_id`` and ``tenant_id`` (see :func:`invoice_context`).
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

from invoice_delivery.config import Settings, get_settings

SERVICE_NAME = "invoice-delivery"

# Third-party loggers that are too chatty at INFO.
_QUIET_LOGGERS = ("asyncpg", "httpx", "httpcore", "aiohttp.access")


def _add_service_context(environment: str) -> structlog.types.Processor:
    def processor(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("service", SERVICE_NAME)
        event_dict.setdefault("environment", environment)
        return event_dict

    return processor


def _file_handler(settings: Settings, level: int) -> RotatingFileHandler | None:
    """Rotating JSON file handler, or ``None`` if the log directory is unusable."""
    try:
        Path(settings.log_directory).mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            filename=settings.log_file_path,
            maxBytes=settings.log_file_max_bytes,
            backupCount=settings.log_file_backup_count,
            encoding="utf-8",
        )
    except OSError as e:
        print(f"Warning: file logging disabled: {e}", file=sys.stderr)
        return None
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer(),
            ]
        )
    )
    return handler


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structlog on top of stdlib logging.

    Args:
        settings: Settings to use; defaults to :func:`get_settings`.
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                (
                    structlog.dev.ConsoleRenderer(colors=True)  # type: ignore[list-item]
                    if settings.is_development
                    else structlog.processors.JSONRenderer()
                ),
            ]
        )
    )
    handlers: list[logging.Handler] = [console]
    if settings.log_to_file:
        file_handler = _file_handler(settings, level)
        if file_handler is not None:
            handlers.append(file_handler)

    logging.basicConfig(format="%(message)s", level=level, handlers=handlers, force=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _add_service_context(settings.environment),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]


@contextmanager
def invoice_context(invoice_id: str, tenant_id: str) -> Iterator[None]:
    """Attach ``invoice_id`` and ``tenant_id`` to every event logged inside the block."""
    with structlog.contextvars.bound_contextvars(invoice_id=invoice_id, tenant_id=tenant_id):
        yield
