"""
Logging for the call core.

Events are snake_case names with the call's SIDs and addresses as
key-value pairs (``logger.info("call_tracked", call_id=..., status=...)``).
Requests are tagged with a ``trace_id`` by the request middleware, and
provider webhooks additionally tag every line with the ``call_id`` of the
leg Twilio is asking about, so one call's callbacks can be grepped out of
the stream. JSON in production, colored console output otherwise.
"""

from __future__ import annotations

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any

import structlog

from callbridge.config import get_settings

trace_id_var: ContextVar[str] = ContextVar("trace_id", default="")
call_id_var: ContextVar[str] = ContextVar("call_id", default="")

# Libraries that log each outbound HTTP request at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "twilio.http_client", "urllib3", "asyncio", "hpack")


def add_call_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Tag the entry with the current request and call leg.

    An explicit ``call_id`` on the event wins over the webhook's, since a
    handler may log about a parent or child leg.
    """
    trace_id = trace_id_var.get()
    if trace_id:
        event_dict["trace_id"] = trace_id

    call_id = call_id_var.get()
    if call_id:
        event_dict.setdefault("call_id", call_id)
    return event_dict


def generate_trace_id() -> str:
    return uuid.uuid4().hex[:12]


def setup_logging() -> None:
    settings = get_settings()

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        add_call_context,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.is_production:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # uvicorn and twilio records go through the same renderer
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
