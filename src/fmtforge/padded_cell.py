"""Idempotence checks for a formatter pipeline.

A well-behaved pipeline ``F`` satisfies ``F(F(x)) == F(x)``. When it does not,
:class:`PaddedCell` applies ``F`` repeatedly (at most :data:`MAX_CYCLE`
times) and classifies the sequence of outputs:

- ``CONVERGE``: the outputs settle on a fixed point;
- ``CYCLE``: an output repeats an earlier one, so the pipeline loops;
- ``DIVERGE``: neither happened within the limit.

A cycle is still resolvable: its canonical form is the shortest member, ties
broken lexicographically, so every run picks the same text.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, ClassVar, Final, Self

from fmtforge.line_endings import to_unix
from fmtforge_common.errors import ConfigurationError
from fmtforge_common.logging import get_logger

if TYPE_CHECKING:
    from fmtforge.formatter import Formatter

LOGGER = get_logger(__name__)

MAX_CYCLE: Final[int] = 10


class PaddedCellType(StrEnum):
    """Classification of repeated formatter application."""

    CONVERGE = "converge"
    CYCLE = "cycle"
    DIVERGE = "diverge"


@dataclass(slots=True, frozen=True)
class PaddedCell:
    """Outcome of applying a formatter until it settles.

    Attributes
    ----------
    path : Path | None
        File that was checked.
    kind : PaddedCellType
        Classification.
    outputs : tuple[str, ...]
        Successive outputs: the fixed point for ``CONVERGE``, the repeating
        members for ``CYCLE``, everything produced for ``DIVERGE``.
    """

    path: Path | None
    kind: PaddedCellType
    outputs: tuple[str, ...]

    @classmethod
    def check(
        cls,
        formatter: Formatter,
        path: Path | None,
        original_unix: str,
        max_length: int = MAX_CYCLE,
    ) -> Self:
        """Apply ``formatter`` repeatedly to ``original_unix`` and classify the result.

        Raises
        ------
        ConfigurationError
            If ``max_length`` is below 2.
        RuntimeFormattingError
            If a step rejects one of the intermediate texts.
        """
        if max_length < 2:
            message = "max_length must be at least 2"
            raise ConfigurationError(message)
        once = formatter.compute(original_unix, path)
        if once == original_unix:
            return cls(path, PaddedCellType.CONVERGE, (once,))
        twice = formatter.compute(once, path)
        if twice == once:
            return cls(path, PaddedCellType.CONVERGE, (once,))
        outputs = [once, twice]
        current = twice
        while len(outputs) < max_length:
            produced = formatter.compute(current, path)
            if produced == current:
                return cls(path, PaddedCellType.CONVERGE, tuple(outputs))
            if produced in outputs:
                start = outputs.index(produced)
                return cls(path, PaddedCellType.CYCLE, tuple(outputs[start:]))
            outputs.append(produced)
            current = produced
        return cls(path, PaddedCellType.DIVERGE, tuple(outputs))

    def misbehaved(self) -> bool:
        """Return ``True`` unless the formatter converged in one application."""
        return not (self.kind is PaddedCellType.CONVERGE and len(self.outputs) <= 1)

    def is_resolvable(self) -> bool:
        """Return ``True`` unless the outputs diverged."""
        return self.kind is not PaddedCellType.DIVERGE

    def canonical(self) -> str:
        """Return the canonical text.

        Raises
        ------
        ConfigurationError
            If the outputs diverged and no canonical form exists.
        """
        if self.kind is PaddedCellType.CONVERGE:
            return self.outputs[-1]
        if self.kind is PaddedCellType.CYCLE:
            return min(self.outputs, key=lambda text: (len(text), text))
        message = "No canonical form for a diverging result"
        raise ConfigurationError(message)

    def user_message(self) -> str:
        """Return a short description such as ``"cycles between 2 steps"``."""
        verb = {
            PaddedCellType.CONVERGE: "converges after",
            PaddedCellType.CYCLE: "cycles between",
            PaddedCellType.DIVERGE: "diverges after",
        }[self.kind]
        return f"{verb} {len(self.outputs)} steps"


@dataclass(slots=True, frozen=True)
class DirtyState:
    """Clean or dirty state of one file, with its canonical bytes when dirty."""

    canonical_bytes: bytes | None = None
    converged: bool = True

    CLEAN: ClassVar[DirtyState]
    DID_NOT_CONVERGE: ClassVar[DirtyState]

    @property
    def is_clean(self) -> bool:
        """Return whether the file is already canonical."""
        return self.converged and self.canonical_bytes is None

    @property
    def did_not_converge(self) -> bool:
        """Return whether no canonical form could be determined."""
        return not self.converged

    def require_canonical_bytes(self) -> bytes:
        """Return the canonical bytes of a dirty, converged file.

        Raises
        ------
        ConfigurationError
            If the state is clean or did not converge.
        """
        if self.canonical_bytes is None:
            message = "Check is_clean and did_not_converge before asking for canonical bytes"
            raise ConfigurationError(message)
        return self.canonical_bytes

    def write_canonical_to(self, path: Path) -> None:
        """Write the canonical bytes to ``path``."""
        path.write_bytes(self.require_canonical_bytes())

    @classmethod
    def of(cls, formatter: Formatter, path: Path | None, raw_bytes: bytes) -> DirtyState:
        """Compute the dirty state of ``raw_bytes``.

        ``F(input) == input`` is clean. Otherwise, when ``F`` is idempotent
        on its own output, that output is canonical. Otherwise the padded cell
        decides, and a diverging pipeline yields :attr:`DID_NOT_CONVERGE`.

        Raises
        ------
        RuntimeFormattingError
            If the bytes cannot be decoded or a step rejects the text.
        """
        raw = formatter.decode(raw_bytes, path)
        raw_unix = to_unix(raw)
        formatted_unix = formatter.compute(raw_unix, path)
        formatted_bytes = formatter.encode(formatter.compute_line_endings(formatted_unix, path, raw), path)
        if formatted_bytes == raw_bytes:
            return cls.CLEAN
        if formatter.compute(formatted_unix, path) == formatted_unix:
            return cls(canonical_bytes=formatted_bytes)
        cell = PaddedCell.check(formatter, path, raw_unix)
        LOGGER.warning(
            "padded_cell_misbehaved",
            extra={
                "operation": "dirty_state",
                "path": path.as_posix() if path else None,
                "result": cell.user_message(),
            },
        )
        if not cell.is_resolvable():
            return cls.DID_NOT_CONVERGE
        canonical = formatter.encode(formatter.compute_line_endings(cell.canonical(), path, raw), path)
        if canonical == raw_bytes:
            return cls.CLEAN
        return cls(canonical_bytes=canonical)

    @classmethod
    def of_file(cls, formatter: Formatter, path: Path) -> DirtyState:
        """Read ``path`` and compute its dirty state."""
        return cls.of(formatter, path, path.read_bytes())


DirtyState.CLEAN = DirtyState()
DirtyState.DID_NOT_CONVERGE = DirtyState(converged=False)


def check_idempotent(formatter: Formatter, text: str, path: Path | None = None) -> bool:
    """Return whether formatting ``text`` twice gives the same result as once.

    Examples
    --------
    >>> from fmtforge.formatter import Formatter
    >>> from fmtforge.step import simple_step
    >>> strip = simple_step("strip", lambda text, path: text.strip())
    >>> check_idempotent(Formatter([strip]), "  x  ")
    True
    """
    once = formatter.compute(to_unix(text), path)
    return formatter.compute(once, path) == once


__all__ = [
    "MAX_CYCLE",
    "DirtyState",
    "PaddedCell",
    "PaddedCellType",
    "check_idempotent",
]
