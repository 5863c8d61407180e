"""Structured logging for the audit trail layer.

Log entries are structlog events with snake_case names and keyword context
(`logger.info("audit_query_executed", entity_type=..., total=...)`). The id
of the HTTP request being served, if any, is attached to every entry.
"""

import logging
import sys
from contextvars import ContextVar
from pathlib import Path

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Id of the request currently being served ("" outside requests)
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")


def get_request_id() -> str:
    """Return the id of the request being served, or "" outside a request."""
    return request_id_ctx.get()


def set_request_id(request_id: str) -> None:
    """Bind a request id to the current context ("" clears it)."""
    request_id_ctx.set(request_id)


def add_request_id(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """structlog processor copying the current request id into the entry."""
    request_id = get_request_id()
    if request_id:
        event_dict.setdefault("request_id", request_id)
    return event_dict


def _processors(json_output: bool) -> list[Processor]:
    renderer: Processor = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        add_request_id,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ]


def setup_logging(
    level: str = "INFO",
    log_file: str | None = None,
    json_output: bool = True,
) -> None:
    """Configure structlog on top of the standard logging module.

    Args:
        level: Log level name; unknown names fall back to INFO
        log_file: Also write entries to this file (parent dirs are created)
        json_output: Render JSON lines; False renders for a terminal
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", level=numeric_level, stream=sys.stdout)
    logging.getLogger().setLevel(numeric_level)

    structlog.configure(
        processors=_processors(json_output),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path)
        handler.setLevel(numeric_level)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logging.getLogger().addHandler(handler)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger, normally named after the calling module."""
    return structlog.get_logger(name)


def setup_dev_logging() -> None:
    """Human-readable DEBUG output for local runs."""
    setup_logging(level="DEBUG", json_output=False)


__all__ = [
    "add_request_id",
    "get_logger",
    "get_request_id",
    "request_id_ctx",
    "set_request_id",
    "setup_dev_logging",
    "setup_logging",
]
