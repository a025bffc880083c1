"""
Structured logging for the transaction engine.

Lifecycle components log through structlog (event-style) or stdlib module
loggers; both end up in one handler. ``lifecycle_context`` binds a record id and
account to every log line emitted while it is being submitted and watched.
"""

import logging
import sys
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator, Optional

import structlog

from .config import settings

if TYPE_CHECKING:
    from .core.execution.models import TransactionRecord


def _add_service(logger, method_name, event_dict):
    event_dict.setdefault("service", "txwarden")
    return event_dict


def setup_logging(log_level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """Configure structlog and route stdlib logging through it.

    Args:
        log_level: Override log level (default: settings.log_level)
        log_format: "json" or "console" (default: settings.log_format)
    """
    level = getattr(logging, (log_level or settings.log_level).upper(), logging.INFO)
    fmt = (log_format or settings.log_format).lower()

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _add_service,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if fmt == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # Watch loops poll every few seconds
    for name in ("httpcore", "httpx"):
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def lifecycle_context(record: "TransactionRecord") -> Iterator[None]:
    """Bind record_id and account for logs in this context.

    Tasks created inside the block (watch loops) inherit the binding.
    """
    with structlog.contextvars.bound_contextvars(record_id=record.record_id, account=record.account):
        yield
