"""Thread-safe runtime cell primitive for lazily built step state."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from threading import Condition, RLock
from typing import Literal, final

from fmtforge_common.logging import get_logger

LOGGER = get_logger(__name__)

CellState = Literal["empty", "initializing", "ready", "failed", "closed"]
CloseStatus = Literal["ok", "error", "noop"]


@dataclass(slots=True, frozen=True)
class RuntimeCellCloseResult:
    """Immutable payload describing a close outcome."""

    cell: str
    had_payload: bool
    close_called: bool
    status: CloseStatus
    duration_ms: float
    error: Exception | None


@final
class RuntimeCell[T]:
    """Lazy holder with single-flight initialization and exactly-once disposal.

    Concurrent callers of :meth:`get_or_initialize` block while one of them
    runs the factory. When the factory fails, every waiter receives the same
    exception and the cell returns to the ``failed`` state so a later call may
    try again. :meth:`close` disposes the payload at most once per
    initialization: a second call finds the cell empty and is a no-op.
    """

    __slots__ = ("_condition", "_last_error", "_lock", "_name", "_state", "_value")

    def __init__(self, *, name: str | None = None) -> None:
        self._lock = RLock()
        self._condition = Condition(self._lock)
        self._value: T | None = None
        self._name = name or "runtime"
        self._state: CellState = "empty"
        self._last_error: BaseException | None = None

    def __repr__(self) -> str:
        """Return a representation that does not expose the payload."""
        return f"RuntimeCell(name={self._name!r}, state={self._state})"

    @property
    def name(self) -> str:
        """Return the diagnostic name of the cell."""
        return self._name

    @property
    def state(self) -> CellState:
        """Return the current lifecycle state."""
        with self._lock:
            return self._state

    def peek(self) -> T | None:
        """Return the cached payload without triggering initialization."""
        with self._lock:
            return self._value if self._state == "ready" else None

    def get_or_initialize(self, factory: Callable[[], T]) -> T:
        """Return the payload, building it with ``factory`` on first use.

        Parameters
        ----------
        factory : Callable[[], T]
            Builder invoked by exactly one caller while others wait.

        Returns
        -------
        T
            Cached payload.

        Raises
        ------
        BaseException
            Whatever ``factory`` raised, re-raised to the initializing caller
            and to every caller that was waiting on it.
        """
        with self._condition:
            while True:
                if self._state == "ready":
                    return self._value  # type: ignore[return-value]
                if self._state == "initializing":
                    self._condition.wait()
                    if self._state == "failed" and self._last_error is not None:
                        raise self._last_error
                    continue
                self._state = "initializing"
                break
        return self._run_initializer(factory)

    def close(self, *, silent: bool = True) -> RuntimeCellCloseResult:
        """Clear the payload and release its resources.

        The payload's ``close()`` is called when present, otherwise its
        ``__exit__``. Disposal errors are logged and suppressed unless
        ``silent`` is false.

        Parameters
        ----------
        silent : bool, optional
            Suppress disposal errors. Defaults to True.

        Returns
        -------
        RuntimeCellCloseResult
            Outcome of the close.
        """
        with self._condition:
            current = self._value
            had_payload = self._state == "ready"
            self._value = None
            self._state = "closed" if had_payload else self._state_after_noop_close()
            self._last_error = None
            self._condition.notify_all()

        start = time.monotonic()
        if not had_payload:
            LOGGER.debug("runtime_cell_close_noop", extra={"cell_type": self._name, "status": "noop"})
            return RuntimeCellCloseResult(
                cell=self._name,
                had_payload=False,
                close_called=False,
                status="noop",
                duration_ms=0.0,
                error=None,
            )

        disposer, close_called = self._resolve_disposer(current)
        try:
            if disposer is not None:
                disposer()
        except Exception as exc:
            duration_ms = (time.monotonic() - start) * 1000
            LOGGER.warning(
                "runtime_cell_dispose_failed",
                extra={
                    "cell_type": self._name,
                    "payload_type": type(current).__name__,
                    "error": str(exc),
                },
            )
            if not silent:
                raise
            return RuntimeCellCloseResult(
                cell=self._name,
                had_payload=True,
                close_called=close_called,
                status="error",
                duration_ms=duration_ms,
                error=exc,
            )
        duration_ms = (time.monotonic() - start) * 1000
        LOGGER.debug(
            "runtime_cell_closed",
            extra={
                "cell_type": self._name,
                "payload_type": type(current).__name__,
                "duration_ms": duration_ms,
                "close_called": close_called,
            },
        )
        return RuntimeCellCloseResult(
            cell=self._name,
            had_payload=True,
            close_called=close_called,
            status="ok",
            duration_ms=duration_ms,
            error=None,
        )

    def _state_after_noop_close(self) -> CellState:
        # An in-flight initializer keeps ownership; its result lands afterwards.
        return "initializing" if self._state == "initializing" else "empty"

    @staticmethod
    def _resolve_disposer(value: object) -> tuple[Callable[[], None] | None, bool]:
        closer = getattr(value, "close", None)
        if callable(closer):
            return closer, True
        exit_fn = getattr(value, "__exit__", None)
        if callable(exit_fn):

            def _run_exit() -> None:
                exit_fn(None, None, None)

            return _run_exit, False
        return None, False

    def _run_initializer(self, factory: Callable[[], T]) -> T:
        start = time.monotonic()
        try:
            created = factory()
        except BaseException as exc:
            with self._condition:
                self._value = None
                self._state = "failed"
                self._last_error = exc
                self._condition.notify_all()
            LOGGER.warning(
                "runtime_cell_init_failed",
                extra={
                    "cell_type": self._name,
                    "exc_type": type(exc).__name__,
                    "error_message": str(exc),
                },
            )
            raise
        duration_ms = (time.monotonic() - start) * 1000
        with self._condition:
            self._value = created
            self._state = "ready"
            self._last_error = None
            self._condition.notify_all()
        LOGGER.debug(
            "runtime_cell_initialized",
            extra={
                "cell_type": self._name,
                "payload_type": type(created).__name__,
                "duration_ms": duration_ms,
            },
        )
        return created


__all__ = [
    "CellState",
    "RuntimeCell",
    "RuntimeCellCloseResult",
]
