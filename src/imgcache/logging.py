"""
Structured logging for the image cache.

Every record carries the operation and cache key of the code that emitted
it. Both live in context variables, so concurrent tasks working on
different keys keep their own values. Records go to a rich console handler
and, when a log file is configured, to a JSON-lines file.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator

from rich.console import Console
from rich.logging import RichHandler
from rich.text import Text

PACKAGE_LOGGER = "imgcache"
QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncio")

_operation_var: ContextVar[str | None] = ContextVar("operation", default=None)
_cache_key_var: ContextVar[str | None] = ContextVar("cache_key", default=None)


def get_operation() -> str | None:
    return _operation_var.get()


def get_cache_key() -> str | None:
    return _cache_key_var.get()


def _context_fields() -> dict[str, str]:
    """Context values that are currently set, by field name."""
    fields = {"operation": _operation_var.get(), "cache_key": _cache_key_var.get()}
    return {name: value for name, value in fields.items() if value}


@contextmanager
def log_context(
    operation: str | None = None,
    cache_key: str | None = None,
) -> Generator[None, None, None]:
    """Scope the operation name and cache key attached to log records.

    Arguments left as None keep the enclosing value. Each asyncio task runs
    in a copy of the context, so concurrent operations on different keys
    don't see each other's values.
    """
    tokens = []
    if operation is not None:
        tokens.append((_operation_var, _operation_var.set(operation)))
    if cache_key is not None:
        tokens.append((_cache_key_var, _cache_key_var.set(cache_key)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class JSONFormatter(logging.Formatter):
    """One JSON object per line: level, logger, message, context and extras."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context_fields(),
        }
        if hasattr(record, "extra"):
            entry["extra"] = record.extra
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class ContextRichHandler(RichHandler):
    """Rich console handler that prefixes the level with the current context."""

    def get_level_text(self, record: logging.LogRecord) -> Text:
        level_text = super().get_level_text(record)
        context = _context_fields()

        parts: list[str] = []
        if "cache_key" in context:
            # Keys are 64 hex chars; a prefix is enough to tell them apart
            parts.append(f"[dim]{context['cache_key'][:8]}[/dim]")
        if "operation" in context:
            parts.append(f"[cyan]{context['operation']}[/cyan]")

        if not parts:
            return level_text
        return Text.from_markup(f"{level_text} {' '.join(parts)}")


class ContextLogger:
    """Logger whose keyword arguments become structured fields.

        logger.info("Stored blob", size=12)

    puts ``size`` and the current context under the record's ``extra``.
    """

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _log(self, level: int, msg: str, *args: Any, exc_info: bool = False, **fields: Any) -> None:
        extra = {**fields.pop("extra", {}), **_context_fields(), **fields}
        self._logger.log(level, msg, *args, exc_info=exc_info, extra={"extra": extra})

    def debug(self, msg: str, *args: Any, **fields: Any) -> None:
        self._log(logging.DEBUG, msg, *args, **fields)

    def info(self, msg: str, *args: Any, **fields: Any) -> None:
        self._log(logging.INFO, msg, *args, **fields)

    def warning(self, msg: str, *args: Any, **fields: Any) -> None:
        self._log(logging.WARNING, msg, *args, **fields)

    def error(self, msg: str, *args: Any, exc_info: bool = False, **fields: Any) -> None:
        self._log(logging.ERROR, msg, *args, exc_info=exc_info, **fields)

    def exception(self, msg: str, *args: Any, **fields: Any) -> None:
        """Log at ERROR with the active exception's traceback."""
        self._log(logging.ERROR, msg, *args, exc_info=True, **fields)


_console: Console | None = None
_setup_done: bool = False


def setup_logging(
    log_level: str = "INFO",
    log_file: Path | None = None,
    console_output: bool = True,
) -> None:
    """Replace the handlers of the package logger.

    Args:
        log_level: Level for the package logger and the console.
        log_file: JSON-lines file that receives every record the package
            logger passes on.
        console_output: Whether to log to stderr through rich.
    """
    global _console, _setup_done

    level = logging.getLevelName(log_level.upper())
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(level)
    package_logger.handlers.clear()
    package_logger.propagate = False

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(JSONFormatter())
        file_handler.setLevel(logging.DEBUG)
        package_logger.addHandler(file_handler)

    if console_output:
        if _console is None:
            _console = Console(stderr=True)
        rich_handler = ContextRichHandler(
            console=_console,
            show_path=False,
            rich_tracebacks=True,
            markup=True,
        )
        rich_handler.setLevel(level)
        package_logger.addHandler(rich_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _setup_done = True


def get_logger(name: str) -> ContextLogger:
    """Get a ContextLogger under the package logger, configuring defaults once."""
    if not _setup_done:
        setup_logging()

    if name != PACKAGE_LOGGER and not name.startswith(f"{PACKAGE_LOGGER}."):
        name = f"{PACKAGE_LOGGER}.{name}"
    return ContextLogger(logging.getLogger(name))
