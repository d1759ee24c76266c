"""Structured logging for calsync.

Every ``logging.getLogger(__name__)`` call site is rendered through structlog's
``ProcessorFormatter``. Context travels in ``structlog.contextvars``:

- ``user`` is bound once at start-up (:func:`set_user_context`).
- Sync passes bind ``sync_pass`` and ``calendar_id``; scheduler ticks bind
  ``tick`` and, while a reminder is dispatched, ``reminder_id``
  (:func:`operation_context`).

Credential-bearing keys passed through ``extra=`` are masked before rendering.

With ``log_root`` set, records are also appended as JSON lines to
``{log_root}/{user}.log``; httpx/httpcore/asyncpg records go to
``{log_root}/{user}.http.log`` instead of the console.
"""

from __future__ import annotations

import logging
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import structlog
from opentelemetry import trace

TRANSPORT_LOGGERS = ("httpx", "httpcore", "asyncpg")

REDACTED = "<REDACTED>"
_SECRET_KEYS = frozenset(
    {
        "access_token",
        "refresh_token",
        "client_secret",
        "auth_token",
        "private_key",
        "accessToken",
        "authorization",
    }
)


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


def set_user_context(user: str) -> None:
    """Bind the active user for this task and every task it spawns."""
    structlog.contextvars.bind_contextvars(user=user)


def get_user_context() -> str | None:
    return structlog.contextvars.get_contextvars().get("user")


def new_operation_id() -> str:
    """Short id correlating the records of one sync pass or scheduler tick."""
    return uuid.uuid4().hex[:12]


@contextmanager
def operation_context(**keys: Any) -> Iterator[None]:
    """Bind *keys* for the duration of the block, restoring prior values after."""
    with structlog.contextvars.bound_contextvars(**keys):
        yield


# ---------------------------------------------------------------------------
# Processors
# ---------------------------------------------------------------------------


def redact_secrets(logger: Any, method_name: str, event_dict: dict) -> dict:  # noqa: ARG001
    for key in _SECRET_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def add_trace_ids(logger: Any, method_name: str, event_dict: dict) -> dict:  # noqa: ARG001
    """Attach the active OTel span's ids; records outside a span get none."""
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
        structlog.processors.TimeStamper(fmt=timestamp_fmt, utc=timestamp_fmt == "iso"),
        structlog.stdlib.ExtraAdder(),
        add_trace_ids,
        redact_secrets,
    ]


def _handler(
    target: Path | None, renderer: structlog.types.Processor, timestamp_fmt: str
) -> logging.Handler:
    handler: logging.Handler
    if target is None:
        handler = logging.StreamHandler(sys.stderr)
    else:
        handler = logging.FileHandler(target, encoding="utf-8")
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=_pre_chain(timestamp_fmt),
        )
    )
    return handler


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    user: str | None = None,
) -> None:
    """Install calsync's handlers on the root logger, replacing any present.

    ``fmt`` selects the console renderer (``"text"`` or ``"json"``); log
    files are always JSON.
    """
    if user:
        set_user_context(user)

    if fmt == "json":
        console = _handler(None, structlog.processors.JSONRenderer(), "iso")
    else:
        console = _handler(None, structlog.dev.ConsoleRenderer(), "%H:%M:%S")

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    transport_handler: logging.Handler | None = None
    if log_root is not None:
        log_dir = Path(log_root).expanduser()
        log_dir.mkdir(parents=True, exist_ok=True)
        stem = user or "calsync"
        file_renderer = structlog.processors.JSONRenderer()
        root.addHandler(_handler(log_dir / f"{stem}.log", file_renderer, "iso"))
        transport_handler = _handler(log_dir / f"{stem}.http.log", file_renderer, "iso")

    for name in TRANSPORT_LOGGERS:
        transport = logging.getLogger(name)
        transport.setLevel(logging.WARNING)
        transport.handlers.clear()
        if transport_handler is not None:
            transport.addHandler(transport_handler)
            transport.propagate = False
        else:
            transport.propagate = True

    structlog.configure(
        processors=[
            *_pre_chain("iso" if fmt == "json" else "%H:%M:%S"),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
