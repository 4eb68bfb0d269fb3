"""Embedded single-threaded runtime bridge.

Some formatters are asynchronous: they hand back a coroutine, or report their
result through ``resolve``/``reject`` callbacks scheduled on an event loop.
:class:`EmbeddedBridge` owns a private :mod:`asyncio` loop that nothing else
drives. While a call is pending the caller pumps that loop itself, one bounded
slice at a time, until the result arrives or the per-call budget runs out.
Running out of budget is an environment failure: the pending work is
cancelled and the bridge refuses further calls.

The loop is not thread-safe, so calls are serialized by a lock.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from threading import Lock
from typing import Any, Final

from pydantic import BaseModel, ConfigDict, Field

from fmtforge.equality import EqualityState
from fmtforge.step import ClosingFunc, LazyFormatterStep, build_spec, callable_identity, create_step
from fmtforge.worker.protocol import FormatRequest
from fmtforge_common.errors import RuntimeFormattingError, WorkerEnvironmentError
from fmtforge_common.logging import get_logger
from fmtforge_common.settings import WorkerConfig, load_section

LOGGER = get_logger(__name__)

# Upper bound on one pump slice; the loop also stops as soon as the call resolves.
PUMP_SLICE_SECONDS: Final[float] = 0.05


def target_identity(target: Callable[..., Any]) -> str:
    """Return ``module.qualname`` for ``target``."""
    module = getattr(target, "__module__", None) or "?"
    qualname = getattr(target, "__qualname__", None) or type(target).__qualname__
    return f"{module}.{qualname}"


class EmbeddedBridge:
    """Drive an asynchronous formatter on a private event loop.

    Parameters
    ----------
    target : Callable[..., Any]
        Coroutine-style targets are called as ``target(text, options, file)``
        and may return an awaitable or a plain value. Callback-style targets
        are called as ``target(text, options, resolve, reject)``.
    callback_style : bool, optional
        Select the callback calling convention. Defaults to False.
    budget_seconds : float | None, optional
        Time allowed per call. Defaults to ``embedded_budget_seconds``.
    name : str, optional
        Diagnostic name.
    """

    def __init__(
        self,
        target: Callable[..., Any],
        *,
        callback_style: bool = False,
        budget_seconds: float | None = None,
        name: str = "embedded",
    ) -> None:
        self._target = target
        self._callback_style = callback_style
        if budget_seconds is None:
            budget_seconds = load_section(WorkerConfig).embedded_budget_seconds
        self._budget = budget_seconds
        self._name = name
        self._loop = asyncio.new_event_loop()
        self._lock = Lock()
        self._failed = False
        self._closed = False

    def __repr__(self) -> str:
        """Return the bridge name and status."""
        return f"EmbeddedBridge(name={self._name!r}, failed={self._failed}, closed={self._closed})"

    @property
    def failed(self) -> bool:
        """Return whether a call overran its budget."""
        return self._failed

    @property
    def closed(self) -> bool:
        """Return whether the bridge was torn down."""
        return self._closed

    def call(self, request: FormatRequest, *, step: str | None = None, path: Path | None = None) -> str:
        """Run one request to completion on the private loop.

        Raises
        ------
        RuntimeFormattingError
            If the target rejected the input; the bridge stays usable.
        WorkerEnvironmentError
            If the bridge is closed or failed, or the call overran its budget.
        """
        label = step or self._name
        with self._lock:
            if self._closed or self._failed:
                state = "closed" if self._closed else "failed"
                message = f"Embedded runtime '{self._name}' is {state}"
                raise WorkerEnvironmentError(message, context={"worker": self._name})
            task = self._loop.create_task(self._invoke(request))
            deadline = time.monotonic() + self._budget
            while not task.done():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._abandon(task)
                    message = (
                        f"Embedded runtime '{self._name}' did not finish within "
                        f"{self._budget} seconds"
                    )
                    raise WorkerEnvironmentError(
                        message, context={"worker": self._name, "budget_seconds": self._budget}
                    )
                self._pump(task, min(PUMP_SLICE_SECONDS, remaining))
            error = task.exception()
        if error is None:
            return task.result()
        if isinstance(error, (RuntimeFormattingError, WorkerEnvironmentError)):
            raise error
        message = f"{type(error).__name__}: {error}"
        raise RuntimeFormattingError(message, step=label, path=path, cause=error) from error

    def _pump(self, task: asyncio.Task[str], seconds: float) -> None:
        self._loop.run_until_complete(asyncio.wait({task}, timeout=seconds))

    def _abandon(self, task: asyncio.Task[str]) -> None:
        self._failed = True
        task.cancel()
        self._pump(task, PUMP_SLICE_SECONDS)
        LOGGER.warning(
            "embedded_budget_exceeded",
            extra={"operation": "embedded_call", "worker": self._name, "budget_seconds": self._budget},
        )

    async def _invoke(self, request: FormatRequest) -> str:
        if self._callback_style:
            outcome: asyncio.Future[str | None] = self._loop.create_future()

            def resolve(value: str | None) -> None:
                if not outcome.done():
                    outcome.set_result(value)

            def reject(reason: object) -> None:
                if outcome.done():
                    return
                if isinstance(reason, BaseException):
                    outcome.set_exception(reason)
                else:
                    outcome.set_exception(RuntimeFormattingError(str(reason), step=self._name))

            self._target(request.text, request.options, resolve, reject)
            result = await outcome
        else:
            result = self._target(request.text, request.options, request.file)
            if inspect.isawaitable(result):
                result = await result
        if result is None:
            return request.text
        if not isinstance(result, str):
            message = f"{target_identity(self._target)} returned {type(result).__name__}"
            raise RuntimeFormattingError(message, step=self._name)
        return result

    def close(self) -> None:
        """Cancel pending work and close the loop. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            pending = asyncio.all_tasks(self._loop)
            for task in pending:
                task.cancel()
            if pending:
                self._loop.run_until_complete(asyncio.wait(pending, timeout=PUMP_SLICE_SECONDS))
            self._loop.run_until_complete(self._loop.shutdown_asyncgens())
            self._loop.close()
        LOGGER.debug("embedded_closed", extra={"operation": "close_embedded", "worker": self._name})


def _identify(target: Callable[..., Any]) -> str:
    resolved = callable_identity(target, "embedded target")
    if isinstance(resolved, str):
        return resolved
    return f"{target_identity(target)}:{EqualityState.of(target=resolved).digest()}"


class EmbeddedStepConfig(BaseModel):
    """Configuration record for :func:`embedded_step`."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    target: str
    options: dict[str, Any] = Field(default_factory=dict)
    callback_style: bool = False


def embedded_step(
    name: str,
    target: Callable[..., Any],
    *,
    options: Mapping[str, Any] | None = None,
    callback_style: bool = False,
    budget_seconds: float | None = None,
    identity: str | None = None,
) -> LazyFormatterStep[EmbeddedStepConfig]:
    """Build a step around an :class:`EmbeddedBridge`.

    The target is identified in the step's equality by ``identity`` when
    given, otherwise by its qualified name or its ``equality_fields()``.

    Raises
    ------
    ConfigurationError
        If no ``identity`` is given and ``target`` is a lambda, a nested
        function or another callable without a stable identity.
    """
    spec = build_spec(
        EmbeddedStepConfig,
        target=identity if identity is not None else _identify(target),
        options=dict(options or {}),
        callback_style=callback_style,
    )

    def _state(config: EmbeddedStepConfig) -> EqualityState:
        return EqualityState.of(
            target=config.target, options=config.options, callback_style=config.callback_style
        )

    def _func(config: EmbeddedStepConfig, _resolved: EqualityState) -> ClosingFunc:
        bridge = EmbeddedBridge(
            target,
            callback_style=config.callback_style,
            budget_seconds=budget_seconds,
            name=name,
        )

        def _apply(text: str, path: Path | None) -> str:
            request = FormatRequest(
                text=text, options=config.options, file=path.as_posix() if path else None
            )
            return bridge.call(request, step=name, path=path)

        return ClosingFunc(_apply, bridge)

    return create_step(name, spec, _state, _func)


__all__ = [
    "EmbeddedBridge",
    "EmbeddedStepConfig",
    "embedded_step",
    "target_identity",
]
