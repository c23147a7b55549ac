"""
Structured logging with automatic run context propagation.

Plain logger.info() calls inside the engine pick up the ids of the run,
branch and node they happen in, without passing them around:

    WorkflowScheduler._run()     -> sets run_id, workflow_id
        ↓ (ContextVar, copied into every branch task)
    WorkflowScheduler._advance() -> sets branch_id
        ↓
    node dispatch                -> sets node_id
        ↓
    logger.info("message")       -> carries all of the above

Branch tasks get a copy of the context at creation, so a branch setting its
own node_id never leaks into a sibling.
"""

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

_ANSI = re.compile(r"\x1b\[[0-9;]*m")

# Optional `extra=` fields copied into JSON entries
_EXTRA_FIELDS = ("event", "node_id", "attempt", "latency_ms")

# Context keys shown in the human-readable prefix, with their labels
_PREFIX_FIELDS = (("run_id", "run"), ("workflow_id", "wf"), ("branch_id", "branch"))


def _plain(value: Any) -> Any:
    return _ANSI.sub("", value) if isinstance(value, str) else value


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line.

    Each entry has timestamp, level, logger and message, the current trace
    context (run_id, workflow_id, branch_id, node_id), and any of the known
    `extra` fields. An `extra` node_id overrides the context one.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": _plain(record.getMessage()),
            **(trace_context.get() or {}),
        }
        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = _plain(value)
        if record.exc_info:
            entry["exception"] = _plain(self.formatException(record.exc_info))
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Colorized development output:

        [INFO    ] [run:3f2a9c1e | wf:pr-review | branch:main/split[1]] ▶ Step 2: lint (step)

    The main branch is left out of the prefix.
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}
        parts = []
        for key, label in _PREFIX_FIELDS:
            value = context.get(key)
            if not value or (key == "branch_id" and value == "main"):
                continue
            parts.append(f"{label}:{value[:8] if key == 'run_id' else value}")
        prefix = f"[{' | '.join(parts)}] " if parts else ""

        color = self.LEVEL_COLORS.get(record.levelno, "")
        line = f"{color}[{record.levelname:<8}]{self.RESET} {prefix}{record.getMessage()}"

        event = getattr(record, "event", None)
        if event is not None:
            line += f" [{event}]"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(level: str | None = None, format: str | None = None) -> None:
    """
    Install one stream handler on the root logger. Call once at startup.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL. Defaults to the
            "logging.level" setting of the graphflow config file.
        format: "json", "human" or "auto". Defaults to the "logging.format"
            setting. "auto" picks JSON when LOG_FORMAT=json or ENV=production.

    Examples:
        configure_logging()
        configure_logging(level="DEBUG", format="human")
    """
    from graphflow.config import get_log_settings

    configured_level, configured_format = get_log_settings()
    level = level or configured_level
    format = format or configured_format

    if format == "auto":
        wants_json = os.getenv("LOG_FORMAT", "").lower() == "json"
        production = os.getenv("ENV", "development").lower() == "production"
        format = "json" if wants_json or production else "human"

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter() if format == "json" else HumanReadableFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())


def set_trace_context(**kwargs: Any) -> None:
    """
    Add fields to the trace context of the current task.

    Called by the scheduler at run start (run_id, workflow_id), on branch
    start (branch_id) and on every node dispatch (node_id).
    """
    trace_context.set({**(trace_context.get() or {}), **kwargs})


def get_trace_context() -> dict:
    return dict(trace_context.get() or {})


def clear_trace_context() -> None:
    trace_context.set(None)
