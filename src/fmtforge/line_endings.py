"""Line-ending normalization at the pipeline boundary.

Steps only ever see ``\n``. The pipeline converts raw text with
:func:`to_unix` on the way in, and a :class:`LineEndingPolicy` decides which
separator is written on the way out.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Final

WINDOWS_SEPARATOR: Final[str] = "\r\n"
UNIX_SEPARATOR: Final[str] = "\n"
MAC_CLASSIC_SEPARATOR: Final[str] = "\r"


def to_unix(text: str) -> str:
    r"""Return ``text`` with every line ending converted to ``\n``.

    Text containing ``\n`` is treated as Windows or Unix, so every ``\r`` is
    dropped; text without ``\n`` is treated as classic Mac, so ``\r`` becomes
    ``\n``.

    Examples
    --------
    >>> to_unix("a\r\nb\r\n")
    'a\nb\n'
    >>> to_unix("a\rb\r")
    'a\nb\n'
    """
    if "\n" in text:
        return text.replace("\r", "")
    return text.replace("\r", "\n")


def platform_separator() -> str:
    """Return the separator native to the running platform."""
    return WINDOWS_SEPARATOR if os.linesep == WINDOWS_SEPARATOR else UNIX_SEPARATOR


def detect_separator(text: str) -> str | None:
    r"""Return the first line separator found in ``text``, or ``None``.

    Examples
    --------
    >>> detect_separator("a\r\nb\n")
    '\r\n'
    """
    for index, char in enumerate(text):
        if char == "\n":
            return UNIX_SEPARATOR
        if char == "\r":
            if text[index + 1 : index + 2] == "\n":
                return WINDOWS_SEPARATOR
            return MAC_CLASSIC_SEPARATOR
    return None


def from_unix(text: str, separator: str) -> str:
    r"""Convert ``\n``-normalized ``text`` to ``separator``."""
    if separator == UNIX_SEPARATOR:
        return text
    return text.replace(UNIX_SEPARATOR, separator)


class LineEnding(StrEnum):
    """Line-ending conventions a pipeline can write."""

    PLATFORM_NATIVE = "platform_native"
    WINDOWS = "windows"
    UNIX = "unix"
    MAC_CLASSIC = "mac_classic"
    PRESERVE = "preserve"

    def create_policy(self) -> LineEndingPolicy:
        """Return the policy implementing this convention."""
        return LineEndingPolicy(self)


@dataclass(slots=True, frozen=True)
class LineEndingPolicy:
    """Decide the separator written for one file."""

    ending: LineEnding

    def ending_for(self, path: Path | None = None, raw_text: str | None = None) -> str:
        r"""Return the separator for ``path``.

        ``PRESERVE`` keeps the first separator found in ``raw_text`` and falls
        back to the platform separator when the text has none.

        Examples
        --------
        >>> LineEnding.PRESERVE.create_policy().ending_for(None, "a\r\nb")
        '\r\n'
        """
        if self.ending is LineEnding.PRESERVE:
            found = detect_separator(raw_text or "")
            return found if found is not None else platform_separator()
        fixed = _FIXED_SEPARATORS.get(self.ending)
        return fixed if fixed is not None else platform_separator()

    def equality_fields(self) -> dict[str, object]:
        """Return the configured convention."""
        return {"ending": self.ending}


_FIXED_SEPARATORS: Final[dict[LineEnding, str]] = {
    LineEnding.WINDOWS: WINDOWS_SEPARATOR,
    LineEnding.UNIX: UNIX_SEPARATOR,
    LineEnding.MAC_CLASSIC: MAC_CLASSIC_SEPARATOR,
}


__all__ = [
    "LineEnding",
    "LineEndingPolicy",
    "detect_separator",
    "from_unix",
    "platform_separator",
    "to_unix",
]
