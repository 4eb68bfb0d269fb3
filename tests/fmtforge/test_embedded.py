"""Tests for the embedded single-threaded runtime bridge."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from fmtforge.formatter import Formatter
from fmtforge.worker.embedded import EmbeddedBridge, embedded_step, target_identity
from fmtforge.worker.protocol import FormatRequest
from fmtforge_common.errors import ConfigurationError, RuntimeFormattingError, WorkerEnvironmentError


async def strip_async(text: str, options: dict[str, object], file: str | None) -> str:
    await asyncio.sleep(0)
    return text.strip() + str(options.get("suffix", ""))


async def never_finishes(text: str, options: dict[str, object], file: str | None) -> str:
    await asyncio.sleep(3600)
    return text


async def reject_bad(text: str, options: dict[str, object], file: str | None) -> str:
    await asyncio.sleep(0)
    if text == "bad":
        message = "unexpected token"
        raise ValueError(message)
    return text.upper()


def upper_later(
    text: str,
    options: dict[str, object],
    resolve: Callable[[str | None], None],
    reject: Callable[[object], None],
) -> None:
    loop = asyncio.get_running_loop()
    if text == "bad":
        loop.call_later(0.01, reject, "cannot parse input")
    else:
        loop.call_later(0.01, resolve, text.upper())


def returns_number(text: str, options: dict[str, object], file: str | None) -> int:
    return 42


class TestEmbeddedBridge:
    """Tests for EmbeddedBridge.call."""

    def test_coroutine_target(self) -> None:
        """Coroutine results are pumped to completion."""
        bridge = EmbeddedBridge(strip_async, budget_seconds=5)
        try:
            assert bridge.call(FormatRequest(text="  x  ", options={"suffix": ";"})) == "x;"
        finally:
            bridge.close()

    def test_callback_target(self) -> None:
        """Callback targets resolve through the pumped loop."""
        bridge = EmbeddedBridge(upper_later, callback_style=True, budget_seconds=5)
        try:
            assert bridge.call(FormatRequest(text="abc")) == "ABC"
        finally:
            bridge.close()

    def test_callback_rejection_keeps_bridge_usable(self) -> None:
        """A rejected input does not poison the bridge."""
        bridge = EmbeddedBridge(upper_later, callback_style=True, budget_seconds=5, name="cb")
        try:
            with pytest.raises(RuntimeFormattingError, match="cannot parse input"):
                bridge.call(FormatRequest(text="bad"))
            assert not bridge.failed
            assert bridge.call(FormatRequest(text="ok")) == "OK"
        finally:
            bridge.close()

    def test_target_exception_is_rejection(self) -> None:
        """Exceptions raised by the target reject the input with the cause chained."""
        bridge = EmbeddedBridge(reject_bad, budget_seconds=5)
        try:
            with pytest.raises(RuntimeFormattingError, match="ValueError: unexpected token") as exc_info:
                bridge.call(FormatRequest(text="bad"), step="upper", path=Path("a.js"))
            assert isinstance(exc_info.value.__cause__, ValueError)
            assert exc_info.value.context["path"] == "a.js"
            assert bridge.call(FormatRequest(text="fine")) == "FINE"
        finally:
            bridge.close()

    def test_non_text_result(self) -> None:
        """A target returning something other than text is a rejection."""
        bridge = EmbeddedBridge(returns_number, budget_seconds=5)
        try:
            with pytest.raises(RuntimeFormattingError, match="returned int"):
                bridge.call(FormatRequest(text="x"))
        finally:
            bridge.close()

    def test_budget_overrun(self) -> None:
        """Exceeding the budget is a fatal environment error."""
        bridge = EmbeddedBridge(never_finishes, budget_seconds=0.2, name="slow")
        try:
            with pytest.raises(WorkerEnvironmentError, match="did not finish within"):
                bridge.call(FormatRequest(text="x"))
            assert bridge.failed
            with pytest.raises(WorkerEnvironmentError, match="is failed"):
                bridge.call(FormatRequest(text="x"))
        finally:
            bridge.close()

    def test_close_idempotent(self) -> None:
        """Closing twice is harmless and later calls are refused."""
        bridge = EmbeddedBridge(strip_async, budget_seconds=5)
        bridge.close()
        bridge.close()
        assert bridge.closed
        with pytest.raises(WorkerEnvironmentError, match="is closed"):
            bridge.call(FormatRequest(text="x"))


class TestEmbeddedStep:
    """Tests for embedded_step."""

    def test_identity(self) -> None:
        """Targets are identified by their qualified name."""
        assert target_identity(strip_async).endswith("test_embedded.strip_async")

    def test_equality(self) -> None:
        """Steps compare by target identity and options."""
        first = embedded_step("strip", strip_async, options={"suffix": ";"})
        second = embedded_step("strip", strip_async, options={"suffix": ";"})
        other = embedded_step("strip", strip_async, options={"suffix": "."})
        assert first == second
        assert first != other

    def test_anonymous_target_rejected(self) -> None:
        """Lambdas would all share one identity, so they need an explicit one."""
        with pytest.raises(ConfigurationError, match="Cannot identify embedded target"):
            embedded_step("fmt", lambda text, options, file: text.upper())

    def test_explicit_identity(self) -> None:
        """An explicit identity tells otherwise anonymous targets apart."""
        upper = embedded_step("fmt", lambda text, options, file: text.upper(), identity="upper-v1")
        lower = embedded_step("fmt", lambda text, options, file: text.lower(), identity="lower-v1")
        assert upper != lower
        assert upper.equality_state() != lower.equality_state()
        try:
            assert upper.format("aB") == "AB"
            assert lower.format("aB") == "ab"
        finally:
            upper.close()
            lower.close()

    def test_in_pipeline(self) -> None:
        """The bridge is created lazily and closed with the pipeline."""
        step = embedded_step("strip", strip_async, options={"suffix": ";"}, budget_seconds=5)
        with Formatter([step], line_ending="unix") as formatter:
            assert formatter.format_text("  x  ").text == "x;"
        with pytest.raises(WorkerEnvironmentError):
            step.format("x")

    def test_budget_overrun_fatal_under_lenient(self) -> None:
        """A stuck runtime is never downgraded to a lint."""
        step = embedded_step("slow", never_finishes, budget_seconds=0.2)
        with Formatter([step], policy="lenient") as formatter, pytest.raises(WorkerEnvironmentError):
            formatter.format_text("x")
