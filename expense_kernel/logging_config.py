"""
Structured logging for the expense kernel.

Every record under the ``expense_kernel`` logger becomes one JSON object
per line.  Fields come from three places, later ones never overriding
earlier ones:

1. the fixed header: ``ts``, ``level``, ``logger``, ``message``;
2. fields bound with ``LogContext.bind`` (the workflow service binds
   ``request_id`` around each submission and decision);
3. the ``extra=`` mapping passed to the logging call.

A logged exception is rendered as a nested ``exception`` object carrying
the kernel error ``code`` and the error's public attributes
(``current_status``, ``field_errors``, ...), plus the traceback.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any, TextIO

__all__ = [
    "LOGGER_NAMESPACE",
    "ExpenseLogFormatter",
    "LogContext",
    "configure_logging",
    "get_logger",
    "reset_logging",
]

LOGGER_NAMESPACE = "expense_kernel"

_EMPTY: Mapping[str, Any] = MappingProxyType({})
_bound: ContextVar[Mapping[str, Any]] = ContextVar("expense_log_fields", default=_EMPTY)


class LogContext:
    """Fields attached to every record logged in the current context.

    Worker threads see the caller's fields only when the task is run
    through ``contextvars.copy_context().run``.
    """

    @staticmethod
    @contextmanager
    def bind(**fields: Any) -> Iterator[Mapping[str, Any]]:
        merged = {**_bound.get(), **{k: v for k, v in fields.items() if v is not None}}
        token = _bound.set(MappingProxyType(merged))
        try:
            yield _bound.get()
        finally:
            _bound.reset(token)

    @staticmethod
    def current() -> dict[str, Any]:
        return dict(_bound.get())

    @staticmethod
    def clear() -> None:
        _bound.set(_EMPTY)


# Attributes every LogRecord carries; anything else arrived through extra=.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    return value


class ExpenseLogFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in _bound.get().items():
            entry.setdefault(key, value)
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS:
                entry.setdefault(key, value)
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self._describe_exception(record)
        return json.dumps(_jsonable(entry), default=str)

    def _describe_exception(self, record: logging.LogRecord) -> dict[str, Any]:
        exc = record.exc_info[1]
        described: dict[str, Any] = {
            "type": type(exc).__name__,
            "message": str(exc),
        }
        code = getattr(exc, "code", None)
        if code is not None:
            described["code"] = code
        described.update(
            (k, v) for k, v in vars(exc).items() if not k.startswith("_")
        )
        described["traceback"] = self.formatException(record.exc_info)
        return described


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{name}")


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: TextIO | None = None,
    handler: logging.Handler | None = None,
) -> None:
    """Send the kernel's records to ``handler`` (default: stderr) as JSON.

    Calling it again while a kernel handler is installed only changes
    the level.
    """
    namespace = logging.getLogger(LOGGER_NAMESPACE)
    namespace.setLevel(level)
    if any(getattr(h, "_expense_kernel", False) for h in namespace.handlers):
        return
    target = handler or logging.StreamHandler(stream or sys.stderr)
    target.setFormatter(ExpenseLogFormatter())
    target._expense_kernel = True
    namespace.addHandler(target)
    namespace.propagate = False


def reset_logging() -> None:
    """Drop kernel handlers and hand records back to the root logger."""
    namespace = logging.getLogger(LOGGER_NAMESPACE)
    for h in list(namespace.handlers):
        namespace.removeHandler(h)
    namespace.setLevel(logging.NOTSET)
    namespace.propagate = True
