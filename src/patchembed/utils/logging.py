"""Structured logging for the embedding pipeline, built on structlog.

Every event logged while a batch runs carries the image, model and region it
belongs to, taken from context variables the PipelineDriver sets. Output is
JSON lines (``LOG_FORMAT=json``) or a coloured console view.
"""

import logging
import sys
from collections.abc import MutableMapping
from contextvars import ContextVar
from typing import Any, cast

import structlog
from structlog.types import Processor

from patchembed.config import settings

_CORRELATION_FIELDS: dict[str, ContextVar[Any]] = {
    "image_id": ContextVar("image_id", default=None),
    "model_id": ContextVar("model_id", default=None),
    "region_index": ContextVar("region_index", default=None),
}


def set_correlation_context(
    image_id: str | None = None,
    model_id: str | None = None,
    region_index: int | None = None,
) -> None:
    """Attach batch identifiers to subsequent log events in this context.

    Arguments left as None keep their current value.
    """
    values = {"image_id": image_id, "model_id": model_id, "region_index": region_index}
    for name, value in values.items():
        if value is not None:
            _CORRELATION_FIELDS[name].set(value)


def clear_correlation_context() -> None:
    """Drop all batch identifiers."""
    for var in _CORRELATION_FIELDS.values():
        var.set(None)


def _add_correlation_ids(
    logger: logging.Logger,
    method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    _ = logger, method_name  # Required by structlog processor signature
    for name, var in _CORRELATION_FIELDS.items():
        value = var.get()
        if value is not None:
            event_dict[name] = value
    return event_dict


def _renderer_chain(log_format: str) -> list[Processor]:
    if log_format == "json":
        return [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    return [structlog.dev.ConsoleRenderer(colors=True)]


def configure_logging(
    level: str | None = None,
    log_format: str | None = None,
) -> None:
    """Configure structlog and the stdlib root logger.

    Safe to call more than once; the latest call wins.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
            Defaults to settings.LOG_LEVEL.
        log_format: "json" or "console". Defaults to settings.LOG_FORMAT.
    """
    level = level or settings.LOG_LEVEL
    log_format = log_format or settings.LOG_FORMAT

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        _add_correlation_ids,
        *_renderer_chain(log_format),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper()),
        force=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger, normally called as get_logger(__name__)."""
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))
