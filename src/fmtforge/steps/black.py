"""Step for the ``black`` Python formatter, run as a native executable."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from fmtforge.steps.native import NativeStepConfig, native_config, native_step

if TYPE_CHECKING:
    from fmtforge.process import ProcessRunner
    from fmtforge.step import LazyFormatterStep

NAME = "black"
VERSION_REGEX = r"black, version (\S*)"


def black_config(version: str, *, path: Path | None = None, line_length: int | None = None) -> NativeStepConfig:
    """Return the native step options running ``black -q [--line-length N] -``."""
    arguments = ["-q"]
    if line_length is not None:
        arguments += ["--line-length", str(line_length)]
    arguments.append("-")
    return native_config(
        name=NAME,
        executable=NAME,
        version=version,
        path=path,
        arguments=tuple(arguments),
        version_regex=VERSION_REGEX,
        install_hints={
            "darwin": "run: pip install black=={version}",
            "linux": "run: pip install black=={version}",
            "windows": "run: pip install black=={version}",
        },
        fix_wrong_version="You can tell fmtforge to use the version you already have with black_step('{found}').",
    )


def black_step(
    version: str,
    *,
    path: Path | None = None,
    line_length: int | None = None,
    runner: ProcessRunner | None = None,
) -> LazyFormatterStep[NativeStepConfig]:
    """Build a ``black`` step pinned to ``version``."""
    return native_step(black_config(version, path=path, line_length=line_length), runner=runner)


__all__ = ["black_config", "black_step"]
