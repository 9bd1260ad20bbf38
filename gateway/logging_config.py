"""Centralised logging configuration for the gateway server.

Usage:
    from logging_config import setup_logging, bind_exchange

    # At process startup:
    setup_logging("Server")

    # Around one exchange (done by services/exchange.py):
    with bind_exchange(exchange_id, conversation_id):
        ...

Plain ``logging.getLogger(__name__)`` calls pick the context up through
``ContextFilter``. The router runs adapter calls inside a copy of the caller's
context and binds ``backend_var``, so provider-side log lines carry the
exchange, conversation and backend they belong to.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path

STREAM_HANDLER_NAME = "_gateway_stream"
FILE_HANDLER_NAME = "_gateway_file"

NOISY_LOGGERS = ("httpx", "httpcore", "openai", "anthropic", "websockets", "urllib3")

# ── Context variables ──────────────────────────────────────────────────────

exchange_id_var: ContextVar[str] = ContextVar("exchange_id_var", default="")
conversation_id_var: ContextVar[str] = ContextVar("conversation_id_var", default="")
backend_var: ContextVar[str] = ContextVar("backend_var", default="")

# (record attribute, context var, prefix label, max chars shown)
_CONTEXT_FIELDS = (
    ("exchange_id", exchange_id_var, "Exch", 8),
    ("conversation_id", conversation_id_var, "Conv", 8),
    ("backend", backend_var, "Backend", None),
)


@contextmanager
def bind_exchange(exchange_id: str, conversation_id: str = ""):
    """Tag every log line emitted inside the block with the exchange ids."""
    exchange_token = exchange_id_var.set(exchange_id)
    conversation_token = conversation_id_var.set(conversation_id)
    try:
        yield
    finally:
        conversation_id_var.reset(conversation_token)
        exchange_id_var.reset(exchange_token)


class ContextFilter(logging.Filter):
    """Stamps ``role`` plus the current exchange context onto each record."""

    def __init__(self, role: str) -> None:
        super().__init__()
        self.role = role

    def filter(self, record: logging.LogRecord) -> bool:
        record.role = self.role  # type: ignore[attr-defined]
        for attr, var, _label, _width in _CONTEXT_FIELDS:
            setattr(record, attr, var.get())
        return True


class ContextFormatter(logging.Formatter):
    """Produces lines like:

    2026-02-17 14:30:00 [Server][INFO] main:52 - Generation backends: openai, anthropic
    2026-02-17 14:30:01 [Server][Exch 1a2b3c4d][Conv 9f8e7d6c][Backend openai][INFO] services.backends:140 - Backend openai replied in 812ms, tokens: 57
    """

    def format(self, record: logging.LogRecord) -> str:
        prefix = ""
        role = getattr(record, "role", "")
        if role:
            prefix += f"[{role}]"
        for attr, _var, label, width in _CONTEXT_FIELDS:
            value = getattr(record, attr, "")
            if value:
                prefix += f"[{label} {value[:width] if width else value}]"
        prefix += f"[{record.levelname}]"

        line = (
            f"{self.formatTime(record, self.datefmt)} {prefix} "
            f"{record.name}:{record.lineno} - {record.getMessage()}"
        )
        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        extras = [text for text in (record.exc_text, record.stack_info) if text]
        return "\n".join([line, *extras])


def _attach(root: logging.Logger, handler: logging.Handler, name: str, role: str) -> None:
    handler.name = name
    handler.addFilter(ContextFilter(role))
    handler.setFormatter(ContextFormatter(datefmt="%Y-%m-%d %H:%M:%S"))
    root.addHandler(handler)


def setup_logging(role: str) -> None:
    """Configure the root logger for *role* (e.g. ``"Server"``).

    Always logs to stderr; also to a rotating file when ``settings.LOG_FILE``
    is set. Safe to call more than once.
    """
    from config import settings

    root = logging.getLogger()
    if any(getattr(h, "name", None) == STREAM_HANDLER_NAME for h in root.handlers):
        return

    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    _attach(root, logging.StreamHandler(sys.stderr), STREAM_HANDLER_NAME, role)

    if settings.LOG_FILE:
        log_path = Path(settings.LOG_FILE)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        rotating = logging.handlers.RotatingFileHandler(
            str(log_path),
            maxBytes=settings.LOG_MAX_BYTES,
            backupCount=settings.LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        _attach(root, rotating, FILE_HANDLER_NAME, role)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    # uvicorn installs its own handlers; route its records through ours instead
    for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers.clear()
        uv_logger.propagate = True
