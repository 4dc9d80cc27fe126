"""
Structured logging with automatic execution context propagation.

The workflow executor stores workflow_id / execution_id once at run start and
node_id before each node; pollers store trigger_id. Every logger.info() call
made underneath picks those fields up through a ContextVar, so nothing needs
to pass ids around by hand.

    WorkflowExecutor.run()  -> set_trace_context(workflow_id=..., execution_id=...)
        node fold           -> set_trace_context(node_id=...)
            executor code   -> logger.info("...")  # carries all of the above
"""

import json
import logging
import os
import re
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m|\033\[[0-9;]*m")

# Record attributes (passed via ``extra=``) copied into JSON lines
_EXTRA_FIELDS = ("latency_ms", "tokens_used", "node_id", "model", "cost")

# Context field -> (label, how many trailing characters to show; None for all)
_PREFIX_FIELDS = (
    ("workflow_id", "wf", None),
    ("execution_id", "exec", 8),
    ("node_id", "node", None),
    ("trigger_id", "trigger", None),
)


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI escape codes from text for clean JSON logging."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    One object per line with timestamp, level, logger, message, every
    trace-context field, and selected ``extra`` fields.
    """

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}

        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
        }
        log_entry.update(context)

        event = getattr(record, "event", None)
        if event is not None:
            log_entry["event"] = strip_ansi_codes(event) if isinstance(event, str) else event

        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value

        if record.exc_info:
            log_entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Colorized single-line logs with a short context prefix."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    @staticmethod
    def _context_prefix(context: dict[str, Any]) -> str:
        parts = [
            f"{label}:{str(context[key])[-tail:] if tail else context[key]}"
            for key, label, tail in _PREFIX_FIELDS
            if context.get(key)
        ]
        return f"[{' | '.join(parts)}] " if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        prefix = self._context_prefix(trace_context.get() or {})
        color = self.COLORS.get(record.levelname, "")
        event = getattr(record, "event", None)
        suffix = f" [{event}]" if event is not None else ""

        line = f"{color}[{record.levelname:<8}]{self.RESET} {prefix}{record.getMessage()}{suffix}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


_CLIENT_LOGGERS = ("LiteLLM", "httpcore", "httpx")


def _resolve_format(requested: str) -> str:
    if requested != "auto":
        return requested
    if os.getenv("LOG_FORMAT", "").lower() == "json":
        return "json"
    return "json" if os.getenv("ENV", "development").lower() == "production" else "human"


def configure_logging(
    level: str = "INFO",
    format: str = "auto",  # "json", "human", or "auto"
) -> None:
    """
    Configure logging for the process. Call once at startup.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: "json", "human", or "auto" (JSON if LOG_FORMAT=json or
            ENV=production, else human)
    """
    json_output = _resolve_format(format) == "json"
    if json_output:
        os.environ["NO_COLOR"] = "1"

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter() if json_output else HumanReadableFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    if json_output:
        # LiteLLM and httpx install their own handlers; send them through ours
        for name in _CLIENT_LOGGERS:
            client_logger = logging.getLogger(name)
            client_logger.handlers.clear()
            client_logger.propagate = True


def set_trace_context(**kwargs: Any) -> None:
    """Merge fields into the current execution's trace context."""
    current = trace_context.get() or {}
    trace_context.set({**current, **kwargs})


def get_trace_context() -> dict:
    """Return a copy of the current trace context (empty if unset)."""
    context = trace_context.get() or {}
    return context.copy()


def clear_trace_context() -> None:
    trace_context.set(None)


@contextmanager
def trace_scope(**kwargs: Any) -> Iterator[None]:
    """Merge fields into the trace context for the duration of a block, then restore it."""
    token = trace_context.set({**(trace_context.get() or {}), **kwargs})
    try:
        yield
    finally:
        trace_context.reset(token)
