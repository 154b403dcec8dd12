"""structlog-rendered output for calwatch's stdlib loggers.

Modules keep using ``logging.getLogger(__name__)`` and pass context through
``extra=``; the root handler renders every record either for a terminal
(``text``) or as one JSON object per line (``json``).  Each record carries
the service name and, inside a span, the OTel trace and span ids.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

_service: ContextVar[str | None] = ContextVar("calwatch_service", default=None)

# Chatty per-request loggers from the HTTP stack.
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def set_service(name: str) -> None:
    _service.set(name)


def get_service() -> str | None:
    return _service.get()


def add_service(logger, method_name, event_dict: dict) -> dict:  # noqa: ARG001
    event_dict["service"] = _service.get()
    return event_dict


def add_otel_context(logger, method_name, event_dict: dict) -> dict:  # noqa: ARG001
    """Attach ``trace_id`` / ``span_id`` when a valid span is current."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = trace.format_trace_id(span_context.trace_id)
        event_dict["span_id"] = trace.format_span_id(span_context.span_id)
    return event_dict


def _pre_chain(timestamp_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_fmt),
        add_service,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(
    renderer: structlog.types.Processor, timestamp_fmt: str
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=_pre_chain(timestamp_fmt),
    )


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    service_name: str = "calwatch",
) -> None:
    """Install calwatch's handlers on the root logger, replacing any existing ones.

    With *log_root* set, records are also appended as JSON to
    ``{log_root}/{service_name}.log`` regardless of *fmt*.
    """
    set_service(service_name)

    if fmt == "json":
        console = _formatter(structlog.processors.JSONRenderer(), "iso")
    else:
        console = _formatter(structlog.dev.ConsoleRenderer(), "%H:%M:%S")

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(console)
    root.addHandler(stream)

    if log_root is not None:
        directory = Path(log_root)
        directory.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(directory / f"{service_name}.log")
        file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), "iso"))
        root.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    # structlog-native loggers go through the same handlers.
    structlog.configure(
        processors=[
            *_pre_chain("iso" if fmt == "json" else "%H:%M:%S"),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
