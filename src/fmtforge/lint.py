"""Non-fatal diagnostics collected by the lenient pipeline policy."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Self

from fmtforge_common.errors import FmtForgeError

# Attributes tried, in order, when reading a line number off an exception.
_LINE_ATTRIBUTES = ("lineno", "line", "line_number")


def _as_line(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value if value > 0 else None


@dataclass(slots=True, frozen=True)
class Lint:
    """Diagnostic attached to one file.

    Parameters
    ----------
    line_start : int | None
        First line (1-based), or ``None`` when the location is undefined.
    line_end : int | None
        Last line, or ``None`` for a single line or an undefined location.
    short_code : str
        Short machine-readable code, usually the exception type or step name.
    detail : str
        Human-readable message.
    """

    line_start: int | None
    line_end: int | None
    short_code: str
    detail: str

    @property
    def has_location(self) -> bool:
        """Return whether the lint points at a line."""
        return self.line_start is not None

    @classmethod
    def undefined(cls, short_code: str, detail: str) -> Self:
        """Return a lint without a location."""
        return cls(line_start=None, line_end=None, short_code=short_code, detail=detail)

    @classmethod
    def from_exception(cls, exc: BaseException, *, short_code: str | None = None) -> Self:
        """Return a lint at the best location ``exc`` carries.

        The location comes from a ``lineno``/``line``/``line_number``
        attribute (``SyntaxError`` sets ``lineno`` and ``end_lineno``), then
        from a ``line`` entry in a :class:`FmtForgeError` context, and is
        undefined otherwise.

        Examples
        --------
        >>> Lint.from_exception(SyntaxError("bad", ("f.py", 3, 1, "x", 3, 2))).line_start
        3
        >>> Lint.from_exception(ValueError("nope")).line_start is None
        True
        """
        start: int | None = None
        for attribute in _LINE_ATTRIBUTES:
            start = _as_line(getattr(exc, attribute, None))
            if start is not None:
                break
        if start is None and isinstance(exc, FmtForgeError):
            start = _as_line(exc.context.get("line"))
        end = _as_line(getattr(exc, "end_lineno", None)) if start is not None else None
        if end is not None and end <= start:  # type: ignore[operator]
            end = None
        detail = exc.message if isinstance(exc, FmtForgeError) else str(exc)
        return cls(
            line_start=start,
            line_end=end,
            short_code=short_code or type(exc).__name__,
            detail=detail or type(exc).__name__,
        )

    def describe(self, path: Path | None = None) -> str:
        """Return ``path:start-end code detail``.

        Examples
        --------
        >>> Lint(3, 5, "E1", "bad").describe(Path("a.py"))
        'a.py:3-5 E1 bad'
        >>> Lint.undefined("E2", "worse").describe()
        '<unknown>:LINE_UNDEFINED E2 worse'
        """
        where = path.as_posix() if path is not None else "<unknown>"
        if self.line_start is None:
            location = "LINE_UNDEFINED"
        elif self.line_end is None:
            location = str(self.line_start)
        else:
            location = f"{self.line_start}-{self.line_end}"
        return f"{where}:{location} {self.short_code} {self.detail}"


class LintsError(Exception):
    """Raised by steps that can report precise lints for an input."""

    def __init__(self, lints: Iterable[Lint], message: str | None = None) -> None:
        self.lints: tuple[Lint, ...] = tuple(lints)
        super().__init__(message or f"{len(self.lints)} lint(s) reported")


@dataclass(slots=True)
class LintState:
    """Lints collected for one file, grouped by step name."""

    by_step: dict[str, list[Lint]] = field(default_factory=dict)

    def add(self, step: str, lints: Iterable[Lint]) -> None:
        """Record ``lints`` for ``step``."""
        self.by_step.setdefault(step, []).extend(lints)

    @property
    def is_clean(self) -> bool:
        """Return ``True`` when no lints were recorded."""
        return not self.has_lints

    @property
    def has_lints(self) -> bool:
        """Return ``True`` when at least one lint was recorded."""
        return any(self.by_step.values())

    @property
    def lints(self) -> tuple[Lint, ...]:
        """Return every lint in step order."""
        return tuple(lint for items in self.by_step.values() for lint in items)

    def for_step(self, step: str) -> Sequence[Lint]:
        """Return the lints recorded for ``step``."""
        return tuple(self.by_step.get(step, ()))

    def summary(self) -> str:
        """Return a one-line count per step, for log records."""
        if self.is_clean:
            return "clean"
        return ", ".join(f"{step}={len(items)}" for step, items in self.by_step.items() if items)

    def describe(self, path: Path | None = None) -> str:
        """Return one line per lint, each prefixed with its step name."""
        return "\n".join(
            f"{lint.describe(path)} ({step})"
            for step, items in self.by_step.items()
            for lint in items
        )


__all__ = [
    "Lint",
    "LintState",
    "LintsError",
]
