"""Apply an ordered list of steps to one file.

Text enters the pipeline through :func:`~fmtforge.line_endings.to_unix`,
flows through every step in configured order (the output of one step is the
input of the next) and is converted to the configured line ending only at the
end. The :class:`ExceptionPolicy` decides what a step failure means for the
file: abort it, or record a :class:`~fmtforge.lint.Lint` and carry on with the
text as it was before the failing step.
"""

from __future__ import annotations

import codecs
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from types import TracebackType
from typing import TYPE_CHECKING, Self

from fmtforge.line_endings import LineEnding, from_unix, to_unix
from fmtforge.lint import Lint, LintsError, LintState
from fmtforge_common.errors import (
    ConfigurationError,
    ResolutionError,
    RuntimeFormattingError,
    WorkerEnvironmentError,
)
from fmtforge_common.logging import get_logger
from fmtforge_common.settings import PipelineConfig, load_section

if TYPE_CHECKING:
    from fmtforge.step import FormatterStep

LOGGER = get_logger(__name__)

# Failures of the environment or configuration rather than of one input.
_FATAL_ERRORS: tuple[type[Exception], ...] = (
    ConfigurationError,
    ResolutionError,
    WorkerEnvironmentError,
)


class ExceptionPolicy(StrEnum):
    """How the pipeline reacts to a step failing on one file."""

    STRICT = "strict"
    LENIENT = "lenient"


@dataclass(slots=True, frozen=True)
class FormatOutcome:
    """Result of formatting one file's text.

    Attributes
    ----------
    path : Path | None
        File that was formatted.
    original : str
        Raw input text.
    text : str
        Output with the configured line endings applied.
    lints : LintState
        Lints recorded under the lenient policy.
    """

    path: Path | None
    original: str
    text: str
    lints: LintState

    @property
    def changed(self) -> bool:
        """Return whether formatting changed the text."""
        return self.text != self.original


class Formatter:
    """Ordered pipeline of formatter steps.

    Parameters
    ----------
    steps : Iterable[FormatterStep]
        Steps, applied in order.
    line_ending : LineEnding | str, optional
        Line ending written at the output boundary.
    encoding : str, optional
        Encoding used for bytes and files.
    policy : ExceptionPolicy | str, optional
        Reaction to step failures.

    Raises
    ------
    ConfigurationError
        If the line ending, encoding or policy is unknown.
    """

    def __init__(
        self,
        steps: Iterable[FormatterStep],
        *,
        line_ending: LineEnding | str = LineEnding.PLATFORM_NATIVE,
        encoding: str = "utf-8",
        policy: ExceptionPolicy | str = ExceptionPolicy.STRICT,
    ) -> None:
        self._steps: tuple[FormatterStep, ...] = tuple(steps)
        try:
            self._line_ending = LineEnding(line_ending)
            self._policy = ExceptionPolicy(policy)
        except ValueError as exc:
            message = f"Invalid pipeline option: {exc}"
            raise ConfigurationError(message, cause=exc) from exc
        try:
            self._encoding = codecs.lookup(encoding).name
        except LookupError as exc:
            message = f"Unknown encoding '{encoding}'"
            raise ConfigurationError(message, cause=exc, context={"encoding": encoding}) from exc
        self._line_ending_policy = self._line_ending.create_policy()
        self._closed = False

    @classmethod
    def from_config(cls, steps: Iterable[FormatterStep], config: PipelineConfig | None = None) -> Self:
        """Build a formatter with options from :class:`PipelineConfig`."""
        active = config or load_section(PipelineConfig)
        return cls(
            steps,
            line_ending=active.line_ending,
            encoding=active.encoding,
            policy=active.exception_policy,
        )

    def __repr__(self) -> str:
        """Return the step names and options."""
        names = ", ".join(step.name for step in self._steps)
        return (
            f"Formatter(steps=[{names}], line_ending={self._line_ending.value}, "
            f"encoding={self._encoding}, policy={self._policy.value})"
        )

    def __eq__(self, other: object) -> bool:
        """Compare steps, line-ending policy and encoding."""
        if not isinstance(other, Formatter):
            return NotImplemented
        return (
            self._steps == other._steps
            and self._line_ending == other._line_ending
            and self._encoding == other._encoding
        )

    def __hash__(self) -> int:
        """Hash the compared fields."""
        return hash((self._steps, self._line_ending, self._encoding))

    def __enter__(self) -> Self:
        """Return the formatter."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        """Close every step."""
        self.close()

    @property
    def steps(self) -> tuple[FormatterStep, ...]:
        """Return the steps in order."""
        return self._steps

    @property
    def line_ending(self) -> LineEnding:
        """Return the output line ending."""
        return self._line_ending

    @property
    def encoding(self) -> str:
        """Return the canonical codec name."""
        return self._encoding

    @property
    def policy(self) -> ExceptionPolicy:
        """Return the exception policy."""
        return self._policy

    def compute(self, unix_text: str, path: Path | None = None) -> str:
        """Apply every step under the strict policy.

        Raises
        ------
        RuntimeFormattingError
            If a step rejects the input.
        """
        text, _ = self._run(unix_text, path, ExceptionPolicy.STRICT)
        return text

    def compute_with_lint(self, unix_text: str, path: Path | None = None) -> tuple[str, LintState]:
        """Apply every step under the configured policy.

        Returns
        -------
        tuple[str, LintState]
            Formatted ``\\n`` text and the lints recorded for it.

        Raises
        ------
        RuntimeFormattingError
            Under the strict policy, if a step rejects the input.
        """
        return self._run(unix_text, path, self._policy)

    def compute_line_endings(self, unix_text: str, path: Path | None = None, raw_text: str | None = None) -> str:
        """Convert ``\\n`` text to the line ending chosen for ``path``."""
        return from_unix(unix_text, self._line_ending_policy.ending_for(path, raw_text))

    def format_text(self, raw: str, path: Path | None = None) -> FormatOutcome:
        """Normalize, format and re-apply line endings to ``raw``."""
        formatted, lints = self.compute_with_lint(to_unix(raw), path)
        output = self.compute_line_endings(formatted, path, raw)
        LOGGER.debug(
            "file_formatted",
            extra={
                "operation": "format_text",
                "path": path.as_posix() if path else None,
                "changed": output != raw,
                "lints": lints.summary(),
            },
        )
        return FormatOutcome(path=path, original=raw, text=output, lints=lints)

    def decode(self, raw: bytes, path: Path | None = None) -> str:
        """Decode ``raw`` with the configured encoding.

        Raises
        ------
        RuntimeFormattingError
            If ``raw`` is not valid in the encoding.
        """
        try:
            return raw.decode(self._encoding)
        except UnicodeDecodeError as exc:
            message = (
                f"Encoding error: file is not valid {self._encoding} at byte offset {exc.start}"
            )
            raise RuntimeFormattingError(
                message, path=path, cause=exc, context={"encoding": self._encoding, "offset": exc.start}
            ) from exc

    def encode(self, text: str, path: Path | None = None) -> bytes:
        """Encode ``text`` with the configured encoding.

        Raises
        ------
        RuntimeFormattingError
            If ``text`` cannot be represented in the encoding.
        """
        try:
            return text.encode(self._encoding)
        except UnicodeEncodeError as exc:
            message = f"Formatted text cannot be encoded as {self._encoding} at offset {exc.start}"
            raise RuntimeFormattingError(message, path=path, cause=exc) from exc

    def format_bytes(self, raw: bytes, path: Path | None = None) -> FormatOutcome:
        """Decode ``raw`` and format it."""
        return self.format_text(self.decode(raw, path), path)

    def format_file(self, path: Path) -> FormatOutcome:
        """Read ``path`` and format its content without writing it.

        Raises
        ------
        RuntimeFormattingError
            If the file cannot be read or decoded, or a step rejects it under
            the strict policy.
        """
        try:
            raw = path.read_bytes()
        except OSError as exc:
            message = f"Cannot read {path}: {exc}"
            raise RuntimeFormattingError(message, path=path, cause=exc) from exc
        return self.format_bytes(raw, path)

    def apply_to_file(self, path: Path) -> FormatOutcome:
        """Format ``path`` in place, writing only when the content changed."""
        outcome = self.format_file(path)
        if outcome.changed:
            path.write_bytes(self.encode(outcome.text, path))
        return outcome

    def close(self) -> None:
        """Close every step once, in order. Failures are logged, not raised."""
        if self._closed:
            return
        self._closed = True
        seen: set[int] = set()
        for step in self._steps:
            if id(step) in seen:
                continue
            seen.add(id(step))
            try:
                step.close()
            except Exception as exc:
                LOGGER.warning(
                    "step_close_failed",
                    extra={"operation": "close_formatter", "step": step.name, "error": str(exc)},
                )

    def _run(self, unix_text: str, path: Path | None, policy: ExceptionPolicy) -> tuple[str, LintState]:
        lints = LintState()
        current = unix_text
        for step in self._steps:
            try:
                result = step.format(current, path)
            except _FATAL_ERRORS:
                raise
            except Exception as exc:
                if policy is ExceptionPolicy.STRICT:
                    raise _strict_failure(step.name, path, exc) from exc
                lints.add(step.name, _lints_for(exc))
                LOGGER.warning(
                    "step_failed_lenient",
                    extra={
                        "operation": "compute_with_lint",
                        "step": step.name,
                        "path": path.as_posix() if path else None,
                        "error": str(exc),
                    },
                )
                continue
            if result is None or result == current:
                continue
            if "\r" in result:
                message = f"Step '{step.name}' returned text containing '\\r'; steps must emit '\\n' line endings"
                raise RuntimeFormattingError(message, step=step.name, path=path)
            current = result
        return current, lints


def _lints_for(exc: Exception) -> Sequence[Lint]:
    if isinstance(exc, LintsError) and exc.lints:
        return exc.lints
    return (Lint.from_exception(exc),)


def _strict_failure(step: str, path: Path | None, exc: Exception) -> RuntimeFormattingError:
    where = f" on {path}" if path is not None else ""
    detail = exc.message if isinstance(exc, RuntimeFormattingError) else f"{type(exc).__name__}: {exc}"
    context = dict(exc.context) if isinstance(exc, RuntimeFormattingError) else {}
    return RuntimeFormattingError(
        f"Step '{step}' failed{where}: {detail}",
        step=step,
        path=path,
        cause=exc,
        context=context,
    )


__all__ = [
    "ExceptionPolicy",
    "FormatOutcome",
    "Formatter",
]
