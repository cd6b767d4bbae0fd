"""Logging setup for the sync engine.

Call sites use plain ``logging.getLogger(__name__)``; :func:`configure_logging`
routes those records through structlog's ProcessorFormatter.  Records emitted
while a sync runs carry the ``user`` being synced and, inside an adapter run,
the ``provider``.  Records emitted inside a sync span carry its trace ids.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

_sync_user: ContextVar[str | None] = ContextVar("timeflow_sync_user", default=None)
_sync_provider: ContextVar[str | None] = ContextVar("timeflow_sync_provider", default=None)

# Per-request chatter from the HTTP stack; provider errors are logged by the clients.
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")

_installed: list[logging.Handler] = []


def set_user_context(user_id: str | None) -> None:
    _sync_user.set(user_id)


def get_user_context() -> str | None:
    return _sync_user.get()


@contextmanager
def provider_context(provider: str) -> Iterator[None]:
    """Tag records logged inside the block with *provider*."""
    token = _sync_provider.set(provider)
    try:
        yield
    finally:
        _sync_provider.reset(token)


def add_sync_context(logger: object, method_name: str, event_dict: dict) -> dict:
    user = _sync_user.get()
    if user is not None:
        event_dict.setdefault("user", user)
    provider = _sync_provider.get()
    if provider is not None:
        event_dict.setdefault("provider", provider)
    return event_dict


def add_trace_ids(logger: object, method_name: str, event_dict: dict) -> dict:
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def _pre_chain(timestamp_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_fmt, utc=True),
        add_sync_context,
        add_trace_ids,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(
    renderer: structlog.types.Processor, pre_chain: list[structlog.types.Processor]
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_file: Path | None = None,
) -> None:
    """Install the console handler (and an optional JSON-lines file handler).

    ``fmt`` is ``"text"`` for a coloured console or ``"json"`` for JSON lines.
    Calling it again replaces the handlers installed by the previous call.
    """
    if fmt == "json":
        console_chain = _pre_chain("iso")
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        console_chain = _pre_chain("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    root = logging.getLogger()
    root.handlers.clear()
    while _installed:
        _installed.pop().close()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, console_chain))
    root.addHandler(console)
    _installed.append(console)
    root.setLevel(logging.getLevelNamesMapping().get(level.upper(), logging.INFO))

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            _formatter(structlog.processors.JSONRenderer(), _pre_chain("iso"))
        )
        root.addHandler(file_handler)
        _installed.append(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[*console_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
