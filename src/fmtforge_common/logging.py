"""Structured logging helpers with correlation IDs.

This module provides a :class:`LoggerAdapter` that injects the structured
fields fmtforge emits on every record (``operation``, ``status``,
``correlation_id`` and ``duration_ms``) together with a JSON formatter for
applications that want machine-readable logs. Library modules only ever call
:func:`get_logger`; handler configuration is left to the host through
:func:`setup_logging`.

Examples
--------
>>> from fmtforge_common.logging import get_logger
>>> logger = get_logger(__name__)
>>> logger.info("step_state_resolved", extra={"operation": "resolve", "step": "black"})
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import time
from contextlib import AbstractContextManager
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Self, cast

if TYPE_CHECKING:
    from collections.abc import Mapping
    from types import TracebackType

    from fmtforge_common.types import JsonValue

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "fmtforge_correlation_id", default=None
)

_STRUCTURED_FIELDS = ("correlation_id", "operation", "status", "duration_ms")

_RESERVED_ATTRIBUTES = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
        "ts",
    }
)


class JsonFormatter(logging.Formatter):
    """Render log records as single-line JSON documents.

    Structured fields set through ``extra`` are copied onto the payload when
    they are JSON-compatible; the correlation id falls back to the value bound
    in the current context.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format ``record`` as JSON.

        Parameters
        ----------
        record : logging.LogRecord
            Record to format.

        Returns
        -------
        str
            JSON-encoded log entry.
        """
        data: dict[str, JsonValue] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        for field in _STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                data[field] = value

        if "correlation_id" not in data:
            ctx_correlation_id = _correlation_id.get()
            if ctx_correlation_id is not None:
                data["correlation_id"] = ctx_correlation_id

        for key, value in record.__dict__.items():
            if (
                key not in _RESERVED_ATTRIBUTES
                and key not in data
                and not key.startswith("_")
                and value is not None
                and isinstance(value, (str, int, float, bool, list, dict))
            ):
                data[key] = value

        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(data, default=str)


class LoggerAdapter(logging.LoggerAdapter):  # type: ignore[type-arg]
    """Logger adapter that injects structured context fields.

    Parameters
    ----------
    logger : logging.Logger
        Base logger instance to wrap.
    extra : Mapping[str, object] | None, optional
        Fields injected into every record emitted through this adapter.
    """

    logger: logging.Logger

    def process(self, msg: str, kwargs: Mapping[str, Any]) -> tuple[str, Any]:
        """Merge adapter fields and context values into ``extra``.

        Parameters
        ----------
        msg : str
            Log message.
        kwargs : Mapping[str, Any]
            Keyword arguments of the logging call.

        Returns
        -------
        tuple[str, Any]
            Message and kwargs with the structured fields populated.
        """
        if not isinstance(kwargs, dict):
            return msg, kwargs

        extra = kwargs.setdefault("extra", {})
        if isinstance(self.extra, dict):
            for key, value in self.extra.items():
                extra.setdefault(key, value)

        if "correlation_id" not in extra:
            ctx_correlation_id = _correlation_id.get()
            if ctx_correlation_id is not None:
                extra["correlation_id"] = ctx_correlation_id

        extra.setdefault("operation", "unknown")
        return msg, kwargs

    def log(self, level: int, msg: object, *args: object, **kwargs: Any) -> None:
        """Log ``msg`` at ``level`` and infer ``status`` from the level when absent."""
        if not self.isEnabledFor(level):
            return
        extra = kwargs.setdefault("extra", {})
        if "status" not in extra:
            if level >= logging.ERROR:
                extra["status"] = "error"
            elif level >= logging.WARNING:
                extra["status"] = "warning"
            else:
                extra["status"] = "success"
        super().log(level, msg, *args, **kwargs)

    def log_success(
        self,
        message: str,
        *,
        operation: str | None = None,
        duration_ms: float | None = None,
        **fields: object,
    ) -> None:
        """Log a successful operation.

        Parameters
        ----------
        message : str
            Event message.
        operation : str | None, optional
            Operation name. Defaults to ``None``.
        duration_ms : float | None, optional
            Duration in milliseconds. Defaults to ``None``.
        **fields : object
            Additional structured fields.
        """
        extra: dict[str, object] = {"status": "success"}
        if operation is not None:
            extra["operation"] = operation
        if duration_ms is not None:
            extra["duration_ms"] = duration_ms
        extra.update(fields)
        self.info(message, extra=extra)

    def log_failure(
        self,
        message: str,
        *,
        exception: BaseException | None = None,
        operation: str | None = None,
        duration_ms: float | None = None,
        **fields: object,
    ) -> None:
        """Log a failed operation with the error type and detail attached.

        Parameters
        ----------
        message : str
            Event message.
        exception : BaseException | None, optional
            Exception describing the failure. Defaults to ``None``.
        operation : str | None, optional
            Operation name. Defaults to ``None``.
        duration_ms : float | None, optional
            Duration in milliseconds. Defaults to ``None``.
        **fields : object
            Additional structured fields.
        """
        extra: dict[str, object] = {"status": "error"}
        if operation is not None:
            extra["operation"] = operation
        if duration_ms is not None:
            extra["duration_ms"] = duration_ms
        if exception is not None:
            extra["error_type"] = type(exception).__name__
            extra["error_detail"] = str(exception)
        extra.update(fields)
        self.error(message, extra=extra)


def get_logger(name: str) -> LoggerAdapter:
    """Return a structured logger adapter for ``name``.

    A ``NullHandler`` is attached when the logger has no handlers so library
    modules never emit "no handler" warnings. Applications configure output
    through :func:`setup_logging`.

    Parameters
    ----------
    name : str
        Logger name, typically ``__name__``.

    Returns
    -------
    LoggerAdapter
        Adapter injecting structured fields.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        logger.addHandler(logging.NullHandler())
    return LoggerAdapter(logger, {})


def setup_logging(level: int | str = logging.INFO) -> None:
    """Configure the root logger with JSON output on stdout.

    Parameters
    ----------
    level : int | str, optional
        Logging threshold. Defaults to ``logging.INFO``.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    logging.basicConfig(level=level, handlers=[handler], force=True)


def set_correlation_id(correlation_id: str | None) -> None:
    """Bind ``correlation_id`` to the current context."""
    _correlation_id.set(correlation_id)


def get_correlation_id() -> str | None:
    """Return the correlation id bound to the current context."""
    return _correlation_id.get()


class _WithFieldsContext(AbstractContextManager[LoggerAdapter]):
    """Context manager yielding an adapter with extra bound fields."""

    def __init__(self, logger: LoggerAdapter, fields: Mapping[str, object]) -> None:
        self._logger = logger
        self._fields = dict(fields)
        self._token: contextvars.Token[str | None] | None = None

    def __enter__(self) -> LoggerAdapter:
        correlation_id = self._fields.get("correlation_id")
        if isinstance(correlation_id, str):
            self._token = _correlation_id.set(correlation_id)
        base_extra = cast("dict[str, object]", self._logger.extra or {})
        return LoggerAdapter(self._logger.logger, {**base_extra, **self._fields})

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        if self._token is not None:
            _correlation_id.reset(self._token)
            self._token = None


def with_fields(logger: LoggerAdapter, **fields: object) -> AbstractContextManager[LoggerAdapter]:
    """Bind ``fields`` to every record logged inside the ``with`` block.

    Parameters
    ----------
    logger : LoggerAdapter
        Adapter to extend.
    **fields : object
        Fields to attach. A string ``correlation_id`` is also bound to the
        context so nested loggers pick it up.

    Returns
    -------
    AbstractContextManager[LoggerAdapter]
        Context manager yielding the extended adapter.

    Examples
    --------
    >>> logger = get_logger(__name__)
    >>> with with_fields(logger, operation="format", file="a.py") as log:
    ...     log.info("file_formatted")
    """
    return _WithFieldsContext(logger, fields)


class Stopwatch:
    """Measure elapsed wall time in milliseconds."""

    __slots__ = ("_start",)

    def __init__(self) -> None:
        self._start = time.monotonic()

    def __enter__(self) -> Self:
        self._start = time.monotonic()
        return self

    def __exit__(self, *_exc: object) -> None:
        return None

    @property
    def elapsed_ms(self) -> float:
        """Return milliseconds since the stopwatch started."""
        return (time.monotonic() - self._start) * 1000


__all__ = [
    "JsonFormatter",
    "LoggerAdapter",
    "Stopwatch",
    "get_correlation_id",
    "get_logger",
    "set_correlation_id",
    "setup_logging",
    "with_fields",
]
