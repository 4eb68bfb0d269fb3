"""Step for ``clang-format``, run as a native executable."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from fmtforge.steps.native import NativeStepConfig, native_config, native_step

if TYPE_CHECKING:
    from fmtforge.process import ProcessRunner
    from fmtforge.step import LazyFormatterStep

NAME = "clang-format"
VERSION_REGEX = r"clang-format version (\S*)"

INSTALL_HINTS = {
    "darwin": "run: brew install clang-format (and check with clang-format --version)",
    "linux": "run: apt install clang-format (it may be packaged as clang-format-{version})",
    "windows": "run: choco install llvm --version {version}",
}


def clang_format_config(version: str, *, path: Path | None = None, style: str | None = None) -> NativeStepConfig:
    """Return the native step options; the file name is passed with ``--assume-filename``."""
    return native_config(
        name=NAME,
        executable=NAME,
        version=version,
        path=path,
        arguments=(f"--style={style}",) if style else (),
        file_argument="--assume-filename={file}",
        version_regex=VERSION_REGEX,
        install_hints=INSTALL_HINTS,
        fix_wrong_version="You can use clang_format_step('{found}') to accept the version you have.",
    )


def clang_format_step(
    version: str,
    *,
    path: Path | None = None,
    style: str | None = None,
    runner: ProcessRunner | None = None,
) -> LazyFormatterStep[NativeStepConfig]:
    """Build a ``clang-format`` step pinned to ``version``."""
    return native_step(clang_format_config(version, path=path, style=style), runner=runner)


__all__ = ["clang_format_config", "clang_format_step"]
