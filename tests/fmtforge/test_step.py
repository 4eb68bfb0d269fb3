"""Tests for the step contract and lazy step construction."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest
from pydantic import BaseModel, ConfigDict

from fmtforge.equality import EqualityState
from fmtforge.step import (
    ClosingFunc,
    FilteredStep,
    FormatterStep,
    LazyFormatterStep,
    SuffixFilter,
    build_spec,
    callable_identity,
    create_step,
    filter_by_file,
    never_up_to_date,
    simple_step,
)
from fmtforge_common.errors import ConfigurationError, WorkerEnvironmentError


class _IndentConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    width: int = 4


class _Counter:
    def __init__(self) -> None:
        self.states = 0
        self.funcs = 0
        self.closed = 0

    def close(self) -> None:
        self.closed += 1


def _indent_step(counter: _Counter, width: int = 4) -> LazyFormatterStep[_IndentConfig]:
    def _state(config: _IndentConfig) -> EqualityState:
        counter.states += 1
        return EqualityState.of(width=config.width)

    def _func(config: _IndentConfig, _resolved: EqualityState) -> ClosingFunc:
        counter.funcs += 1
        return ClosingFunc(lambda text, path: text.replace("\t", " " * config.width), counter)

    return create_step("indent", build_spec(_IndentConfig, width=width), _state, _func)


class TestLazyFormatterStep:
    """Tests for two-phase lazy construction."""

    def test_nothing_resolved_until_used(self) -> None:
        """Creating a step runs neither builder."""
        counter = _Counter()
        step = _indent_step(counter)
        assert isinstance(step, FormatterStep)
        assert counter.states == 0
        assert counter.funcs == 0

    def test_builders_run_once(self) -> None:
        """State and func are built once and reused for every file."""
        counter = _Counter()
        step = _indent_step(counter, width=2)
        assert step.format("\tx") == "  x"
        assert step.format("\ty", Path("b.py")) == "  y"
        assert step.equality_state() == EqualityState.of(width=2)
        assert counter.states == 1
        assert counter.funcs == 1

    def test_concurrent_first_use(self) -> None:
        """Concurrent first calls build the func once."""
        counter = _Counter()
        step = _indent_step(counter)
        barrier = threading.Barrier(16)

        def worker() -> None:
            barrier.wait()
            step.format("\tx")

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert counter.states == 1
        assert counter.funcs == 1

    def test_equal_configuration_equal_steps(self) -> None:
        """Steps from separate factory calls with equal options are equal."""
        first = _indent_step(_Counter(), width=4)
        second = _indent_step(_Counter(), width=4)
        third = _indent_step(_Counter(), width=8)
        assert first == second
        assert hash(first) == hash(second)
        assert first.spec_key() == second.spec_key()
        assert first != third
        assert first.spec_key() != third.spec_key()

    def test_close_releases_once(self) -> None:
        """Closing twice closes the func's resource once."""
        counter = _Counter()
        step = _indent_step(counter)
        step.format("\tx")
        step.close()
        step.close()
        assert counter.closed == 1
        assert step.closed

    def test_format_after_close(self) -> None:
        """A closed step refuses to format."""
        step = _indent_step(_Counter())
        step.close()
        with pytest.raises(WorkerEnvironmentError, match="closed"):
            step.format("x")

    def test_close_during_func_build(self) -> None:
        """A func finishing its build after close is released, not leaked."""
        counter = _Counter()
        building = threading.Event()
        proceed = threading.Event()
        errors: list[BaseException] = []

        def _func(_spec: object, _resolved: EqualityState) -> ClosingFunc:
            building.set()
            proceed.wait(timeout=10)
            return ClosingFunc(lambda text, path: text, counter)

        step = create_step("slow-build", None, lambda spec: EqualityState.of(), _func)

        def worker() -> None:
            try:
                step.format("x")
            except WorkerEnvironmentError as exc:
                errors.append(exc)

        thread = threading.Thread(target=worker)
        thread.start()
        assert building.wait(timeout=10)
        step.close()
        proceed.set()
        thread.join(timeout=10)
        assert len(errors) == 1
        assert counter.closed == 1
        step.close()
        assert counter.closed == 1

    def test_empty_name_rejected(self) -> None:
        """Step names must not be blank."""
        with pytest.raises(ConfigurationError):
            simple_step("  ", lambda text, path: text)

    def test_state_builder_type_checked(self) -> None:
        """A state builder must return an EqualityState."""
        step = create_step("bad", None, lambda spec: {"not": "a state"}, lambda spec, state: None)  # type: ignore[arg-type,return-value]
        with pytest.raises(ConfigurationError, match="expected EqualityState"):
            step.format("x")

    def test_state_builder_failure_retried(self) -> None:
        """A failing state builder is retried on the next call."""
        attempts: list[int] = []

        def _state(_spec: object) -> EqualityState:
            attempts.append(1)
            if len(attempts) == 1:
                message = "transient"
                raise OSError(message)
            return EqualityState.of(ok=True)

        step = create_step("retry", None, _state, lambda spec, state: ClosingFunc(lambda t, p: t, _Counter()))
        with pytest.raises(OSError, match="transient"):
            step.equality_state()
        assert step.equality_state() == EqualityState.of(ok=True)


class TestBuildSpec:
    """Tests for build_spec."""

    def test_valid(self) -> None:
        """Valid options produce the record."""
        assert build_spec(_IndentConfig, width=3).width == 3

    def test_invalid_option(self) -> None:
        """Unknown or invalid options become ConfigurationError."""
        with pytest.raises(ConfigurationError, match="Invalid _IndentConfig options") as exc_info:
            build_spec(_IndentConfig, depth=3)
        assert exc_info.value.context["model"] == "_IndentConfig"


class TestFactories:
    """Tests for simple_step and never_up_to_date."""

    def test_simple_step(self) -> None:
        """Simple steps apply their function and compare by name and spec."""
        upper = simple_step("upper", lambda text, path: text.upper(), spec={"mode": "upper"})
        again = simple_step("upper", lambda text, path: text.upper(), spec={"mode": "upper"})
        assert upper.format("abc") == "ABC"
        assert upper == again

    def test_never_up_to_date(self) -> None:
        """Never-up-to-date steps differ from every other instance."""

        def identity(text: str, _path: Path | None) -> str:
            return text

        first = never_up_to_date("stamp", identity)
        second = never_up_to_date("stamp", identity)
        assert first != second
        assert first.equality_state() != second.equality_state()


class TestFilterByFile:
    """Tests for file filtering."""

    def test_applies_to_matching_paths(self) -> None:
        """Only matching files are formatted."""
        step = filter_by_file(simple_step("upper", lambda text, path: text.upper()), SuffixFilter(".py"))
        assert isinstance(step, FilteredStep)
        assert step.name == "upper"
        assert step.format("abc", Path("a.py")) == "ABC"
        assert step.format("abc", Path("a.txt")) is None
        assert step.format("abc") is None

    def test_equality_includes_filter(self) -> None:
        """The filter is part of the step identity."""
        inner = simple_step("upper", lambda text, path: text.upper())
        python = filter_by_file(inner, SuffixFilter(".py"))
        same = filter_by_file(inner, SuffixFilter(".PY"))
        java = filter_by_file(inner, SuffixFilter(".java"))
        assert python == same
        assert python != java
        assert python.equality_state() != java.equality_state()

    def test_module_function_filter(self) -> None:
        """Module-level predicates are identified by their qualified name."""
        inner = simple_step("upper", lambda text, path: text.upper())
        assert filter_by_file(inner, _is_python) == filter_by_file(inner, _is_python)
        assert filter_by_file(inner, _is_python) != filter_by_file(inner, _is_script)

    def test_anonymous_filter_rejected(self) -> None:
        """Lambdas and nested predicates cannot be told apart, so they are refused."""
        inner = simple_step("upper", lambda text, path: text.upper())

        def nested(path: Path) -> bool:
            return path.suffix == ".js"

        with pytest.raises(ConfigurationError, match="Cannot identify file filter"):
            filter_by_file(inner, lambda path: path.suffix == ".py")
        with pytest.raises(ConfigurationError, match="equality_fields"):
            filter_by_file(inner, nested)


class TestCallableIdentity:
    """Tests for callable_identity."""

    def test_equality_fields_object(self) -> None:
        """Objects describing themselves are their own identity."""
        predicate = SuffixFilter(".py")
        assert callable_identity(predicate, "filter") is predicate

    def test_module_function(self) -> None:
        """Module-level functions use module and qualified name."""
        assert str(callable_identity(_is_python, "filter")).endswith("test_step._is_python")

    def test_callable_instance_without_fields(self) -> None:
        """Instances carry state a name cannot capture."""
        with pytest.raises(ConfigurationError):
            callable_identity(_Matcher(".py"), "filter")


def _is_python(path: Path) -> bool:
    return path.suffix == ".py"


def _is_script(path: Path) -> bool:
    return path.suffix in {".py", ".sh"}


class _Matcher:
    def __init__(self, suffix: str) -> None:
        self.suffix = suffix

    def __call__(self, path: Path) -> bool:
        return path.suffix == self.suffix
