"""
Structured logging for the flow metrics engine using structlog.

Engines log through loggers bound with the organisation and engine name.
Event values that are enums, datetimes or intervals are rendered as plain
strings so JSON output stays serialisable.
"""

import logging
import sys
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import structlog
from structlog.types import EventDict, Processor

from flowmetrics.config import Settings, get_settings
from flowmetrics.models.intervals import Interval


def add_severity(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add severity level for structured logging."""
    event_dict["severity"] = method_name.upper()
    return event_dict


def _render_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Interval):
        return f"{value.start.isoformat()}/{value.end.isoformat()}"
    if isinstance(value, (list, tuple)):
        return [_render_value(v) for v in value]
    return value


def render_flow_values(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Render aggregation keys, scenarios, timestamps and periods as strings."""
    for key, value in event_dict.items():
        if key != "event":
            event_dict[key] = _render_value(value)
    return event_dict


def configure_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog on top of the stdlib logging module.

    JSON lines outside development, the console renderer otherwise.

    Args:
        settings: Settings to read the level and format from; the cached
            process settings when omitted
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    if settings.log_format == "json" and not settings.dev_mode:
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=settings.dev_mode)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            render_flow_values,
            add_severity,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_engine_logger(engine: str, org_id: Optional[str] = None) -> Any:
    """Logger bound with the calculation engine name and, when known, the org."""
    logger = structlog.get_logger("flowmetrics.engine").bind(engine=engine)
    if org_id:
        logger = logger.bind(org_id=org_id)
    return logger
