"""Formatter step contract and the two-phase lazy step implementation.

A step is described by a cheap *spec* (configuration only, no I/O) that
answers equality questions immediately. The first ``format`` call resolves the
spec into an :class:`~fmtforge.equality.EqualityState` (versions, resolved
files) and then into a runnable :class:`FormatterFunc` that may hold live
resources. Both phases run single-flight and are reused for every later file
in the run; :meth:`LazyFormatterStep.close` releases the func exactly once.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from pathlib import Path
from threading import Lock
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ValidationError

from fmtforge.cells import RuntimeCell
from fmtforge.equality import EqualityState, normalize_value
from fmtforge_common.errors import ConfigurationError, WorkerEnvironmentError
from fmtforge_common.logging import Stopwatch, get_logger

LOGGER = get_logger(__name__)

type FormatFunction = Callable[[str, Path | None], str | None]
type StateBuilder[S] = Callable[[S], EqualityState]
type FuncBuilder[S] = Callable[[S, EqualityState], FormatterFunc]


@runtime_checkable
class FormatterFunc(Protocol):
    """Runnable formatting closure produced from a resolved state."""

    def apply(self, text: str, path: Path | None) -> str | None:
        """Return the formatted text, or ``None`` when nothing changes."""
        ...


@runtime_checkable
class FormatterStep(Protocol):
    """A named, comparable text transform applied by the pipeline."""

    @property
    def name(self) -> str:
        """Return the step name."""
        ...

    def spec_key(self) -> bytes:
        """Return the cheap, I/O-free identity of the step configuration."""
        ...

    def equality_state(self) -> EqualityState:
        """Return the fully resolved equality snapshot."""
        ...

    def format(self, text: str, path: Path | None = None) -> str | None:
        """Format ``text`` (``\\n`` line endings) for ``path``."""
        ...

    def close(self) -> None:
        """Release resources held by the step."""
        ...


class FunctionFunc:
    """Adapt a plain function to :class:`FormatterFunc`."""

    __slots__ = ("_function",)

    def __init__(self, function: FormatFunction) -> None:
        self._function = function

    def apply(self, text: str, path: Path | None) -> str | None:
        """Call the wrapped function."""
        return self._function(text, path)


class ClosingFunc:
    """Pair a formatting function with the resource it runs against.

    Parameters
    ----------
    function : FormatFunction
        Formatting function.
    resource : object
        Object exposing ``close()``; closed once with the func.
    """

    __slots__ = ("_closed", "_function", "_lock", "_resource")

    def __init__(self, function: FormatFunction, resource: Any) -> None:
        self._function = function
        self._resource = resource
        self._closed = False
        self._lock = Lock()

    @property
    def resource(self) -> Any:
        """Return the held resource."""
        return self._resource

    def apply(self, text: str, path: Path | None) -> str | None:
        """Call the wrapped function."""
        return self._function(text, path)

    def close(self) -> None:
        """Close the resource; later calls do nothing."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._resource.close()


def build_spec[M: BaseModel](model: type[M], /, **options: object) -> M:
    """Validate ``options`` into a step configuration record.

    Raises
    ------
    ConfigurationError
        If the options do not validate.

    Examples
    --------
    >>> from pydantic import BaseModel, ConfigDict
    >>> class Options(BaseModel):
    ...     model_config = ConfigDict(frozen=True, extra="forbid")
    ...     width: int = 80
    >>> build_spec(Options, width=100).width
    100
    """
    try:
        return model(**options)
    except ValidationError as exc:
        message = f"Invalid {model.__name__} options: {exc}"
        raise ConfigurationError(
            message, cause=exc, context={"model": model.__name__, "errors": exc.error_count()}
        ) from exc


class LazyFormatterStep[S]:
    """Step built in two lazy phases from a cheap spec.

    Parameters
    ----------
    name : str
        Step name, unique within a pipeline by convention.
    spec : S
        Configuration record. Must be encodable by
        :func:`~fmtforge.equality.normalize_value`.
    state_builder : StateBuilder[S]
        Resolves the spec into an equality state. May perform I/O.
    func_builder : FuncBuilder[S]
        Turns the spec and its resolved state into a runnable func.

    Raises
    ------
    ConfigurationError
        If the name is empty or the spec cannot be encoded.
    """

    def __init__(
        self,
        name: str,
        spec: S,
        state_builder: StateBuilder[S],
        func_builder: FuncBuilder[S],
    ) -> None:
        if not name.strip():
            message = "Step name must not be empty"
            raise ConfigurationError(message)
        self._name = name
        self._spec = spec
        self._spec_key = EqualityState.of(name=name, spec=spec).encode()
        self._state_builder = state_builder
        self._func_builder = func_builder
        self._state: RuntimeCell[EqualityState] = RuntimeCell(name=f"{name}:state")
        self._func: RuntimeCell[FormatterFunc] = RuntimeCell(name=f"{name}:func")
        self._closed = False
        self._lock = Lock()

    def __repr__(self) -> str:
        """Return a representation naming the step and its func state."""
        return f"LazyFormatterStep(name={self._name!r}, func={self._func.state})"

    def __eq__(self, other: object) -> bool:
        """Compare steps by name and spec encoding."""
        if not isinstance(other, LazyFormatterStep):
            return NotImplemented
        return self._name == other._name and self._spec_key == other._spec_key

    def __hash__(self) -> int:
        """Hash the name and spec encoding."""
        return hash((self._name, self._spec_key))

    @property
    def name(self) -> str:
        """Return the step name."""
        return self._name

    @property
    def spec(self) -> S:
        """Return the configuration record."""
        return self._spec

    @property
    def closed(self) -> bool:
        """Return whether :meth:`close` was called."""
        return self._closed

    def spec_key(self) -> bytes:
        """Return the encoded ``(name, spec)`` identity."""
        return self._spec_key

    def equality_state(self) -> EqualityState:
        """Return the resolved equality state, building it on first use."""
        return self._state.get_or_initialize(self._build_state)

    def format(self, text: str, path: Path | None = None) -> str | None:
        """Format ``text`` with the lazily built func.

        A func whose build finishes after the step was closed is released
        immediately instead of being cached.

        Raises
        ------
        WorkerEnvironmentError
            If the step was already closed.
        """
        with self._lock:
            closed = self._closed
        if not closed:
            func = self._func.get_or_initialize(self._build_func)
            with self._lock:
                closed = self._closed
            if not closed:
                return func.apply(text, path)
            self._release()
        message = f"Step '{self._name}' is closed"
        raise WorkerEnvironmentError(message, context={"step": self._name})

    def close(self) -> None:
        """Release the func; later calls do nothing."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._release()

    def _release(self) -> None:
        result = self._func.close(silent=True)
        if result.error is not None:
            LOGGER.warning(
                "step_close_failed",
                extra={"operation": "close_step", "step": self._name, "error": str(result.error)},
            )

    def _build_state(self) -> EqualityState:
        with Stopwatch() as watch:
            state = self._state_builder(self._spec)
        if not isinstance(state, EqualityState):
            message = (
                f"State builder for '{self._name}' returned {type(state).__name__}, "
                "expected EqualityState"
            )
            raise ConfigurationError(message)
        LOGGER.info(
            "step_state_resolved",
            extra={
                "operation": "resolve_step_state",
                "step": self._name,
                "digest": state.digest(),
                "duration_ms": watch.elapsed_ms,
            },
        )
        return state

    def _build_func(self) -> FormatterFunc:
        func = self._func_builder(self._spec, self.equality_state())
        if not isinstance(func, FormatterFunc):
            message = f"Func builder for '{self._name}' returned {type(func).__name__}"
            raise ConfigurationError(message)
        return func


def create_step[S](
    name: str,
    spec: S,
    state_builder: StateBuilder[S],
    func_builder: FuncBuilder[S],
) -> LazyFormatterStep[S]:
    """Create a lazily materialized step.

    Parameters
    ----------
    name : str
        Step name.
    spec : S
        Cheap configuration record.
    state_builder : StateBuilder[S]
        Spec to equality state.
    func_builder : FuncBuilder[S]
        Spec and state to runnable func.

    Returns
    -------
    LazyFormatterStep[S]
        The step. Nothing is resolved until the first ``format`` or
        ``equality_state`` call.
    """
    return LazyFormatterStep(name, spec, state_builder, func_builder)


def simple_step(name: str, function: FormatFunction, *, spec: object = None) -> LazyFormatterStep[object]:
    """Create a step around a pure function whose behaviour ``spec`` fully describes.

    Examples
    --------
    >>> step = simple_step("upper", lambda text, path: text.upper())
    >>> step.format("abc")
    'ABC'
    """

    def _state(current: object) -> EqualityState:
        return EqualityState.of(name=name, spec=current)

    def _func(_spec: object, _resolved: EqualityState) -> FormatterFunc:
        return FunctionFunc(function)

    return create_step(name, spec, _state, _func)


def never_up_to_date(name: str, function: FormatFunction) -> LazyFormatterStep[str]:
    """Create a step that never compares equal to any other step.

    Each call mints a fresh token, so caches keyed on the step's identity are
    always invalidated.
    """
    token = uuid.uuid4().hex

    def _state(current: str) -> EqualityState:
        return EqualityState.of(name=name, token=current)

    def _func(_spec: str, _resolved: EqualityState) -> FormatterFunc:
        return FunctionFunc(function)

    return create_step(name, token, _state, _func)


def callable_identity(target: Callable[..., Any], role: str) -> object:
    """Return a stable equality identity for ``target``.

    Objects exposing ``equality_fields()`` are their own identity. Plain
    functions are identified by ``module.qualname``, which is only unique for
    module-level definitions, so lambdas, nested functions and other callables
    without a qualified name are rejected.

    Raises
    ------
    ConfigurationError
        If ``target`` has no stable identity.

    Examples
    --------
    >>> isinstance(callable_identity(SuffixFilter(".py"), "filter"), SuffixFilter)
    True
    """
    if callable(getattr(target, "equality_fields", None)):
        return target
    qualname = getattr(target, "__qualname__", None)
    if not isinstance(qualname, str) or "<lambda>" in qualname or "<locals>" in qualname:
        label = qualname if isinstance(qualname, str) else type(target).__qualname__
        message = (
            f"Cannot identify {role} {label!r}: use a module-level function or an object "
            "with equality_fields()"
        )
        raise ConfigurationError(message, context={"role": role, "callable": label})
    return f"{getattr(target, '__module__', None) or '?'}.{qualname}"


class FilteredStep:
    """Apply ``step`` only to files accepted by ``predicate``.

    Text without a path, and files the predicate rejects, pass through
    unchanged.
    """

    def __init__(self, step: FormatterStep, predicate: Callable[[Path], bool]) -> None:
        self._step = step
        self._predicate = predicate
        identity = callable_identity(predicate, "file filter")
        normalize_value(identity, "filter")
        self._filter = identity

    def __eq__(self, other: object) -> bool:
        """Compare the wrapped step and the filter identity."""
        if not isinstance(other, FilteredStep):
            return NotImplemented
        return self.spec_key() == other.spec_key()

    def __hash__(self) -> int:
        """Hash the combined identity."""
        return hash(self.spec_key())

    @property
    def name(self) -> str:
        """Return the wrapped step's name."""
        return self._step.name

    @property
    def step(self) -> FormatterStep:
        """Return the wrapped step."""
        return self._step

    def spec_key(self) -> bytes:
        """Return the wrapped identity plus the filter."""
        return EqualityState.of(step=self._step.spec_key(), filter=self._filter).encode()

    def equality_state(self) -> EqualityState:
        """Return the wrapped state plus the filter."""
        return EqualityState.of(step=self._step.equality_state(), filter=self._filter)

    def format(self, text: str, path: Path | None = None) -> str | None:
        """Delegate when ``path`` matches; otherwise report no change."""
        if path is None or not self._predicate(path):
            return None
        return self._step.format(text, path)

    def close(self) -> None:
        """Close the wrapped step."""
        self._step.close()


class SuffixFilter:
    """Predicate accepting paths whose suffix is one of ``suffixes``.

    Examples
    --------
    >>> SuffixFilter(".py")(Path("a.py"))
    True
    """

    __slots__ = ("_suffixes",)

    def __init__(self, *suffixes: str) -> None:
        self._suffixes = tuple(sorted({suffix.lower() for suffix in suffixes}))

    def __call__(self, path: Path) -> bool:
        """Return whether ``path`` has an accepted suffix."""
        return path.suffix.lower() in self._suffixes

    def equality_fields(self) -> dict[str, object]:
        """Return the accepted suffixes."""
        return {"suffixes": list(self._suffixes)}


def filter_by_file(step: FormatterStep, predicate: Callable[[Path], bool]) -> FilteredStep:
    """Restrict ``step`` to files accepted by ``predicate``."""
    return FilteredStep(step, predicate)


__all__ = [
    "ClosingFunc",
    "FilteredStep",
    "FormatFunction",
    "FormatterFunc",
    "FormatterStep",
    "FunctionFunc",
    "LazyFormatterStep",
    "SuffixFilter",
    "build_spec",
    "callable_identity",
    "create_step",
    "filter_by_file",
    "never_up_to_date",
    "simple_step",
]
