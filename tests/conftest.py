"""Shared pytest fixtures for the fmtforge test suite.

This module provides reusable fixtures for:
- Isolating the process-wide caches, process runner and worker build root
- Writing fake native executables (POSIX shell scripts) into ``tmp_path``
- Writing stdlib-only worker target modules into ``tmp_path``
- Sample non-commuting steps used by the pipeline tests
"""

from __future__ import annotations

import textwrap
from typing import TYPE_CHECKING

import pytest

from fmtforge.cache import reset_cache_services
from fmtforge.process import PathLocator, ProcessRunner, set_process_runner
from fmtforge.step import simple_step

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path

    from fmtforge.step import LazyFormatterStep


@pytest.fixture(autouse=True)
def _isolate_runtime(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Give every test fresh caches, the default runner and a private build root."""
    monkeypatch.setenv("FMTFORGE_WORKER_BUILD_ROOT", str(tmp_path / "workers"))
    reset_cache_services()
    set_process_runner(None)
    yield
    reset_cache_services()
    set_process_runner(None)


@pytest.fixture
def bin_dir(tmp_path: Path) -> Path:
    """Directory holding fake executables."""
    directory = tmp_path / "bin"
    directory.mkdir()
    return directory


@pytest.fixture
def fake_executable(bin_dir: Path) -> Callable[..., Path]:
    """Return a factory writing ``#!/bin/sh`` tools into :func:`bin_dir`.

    The tool prints ``version_output`` for ``--version`` and otherwise runs
    ``body`` (``cat`` by default, which echoes stdin).
    """

    def _make(name: str, version_output: str, body: str = "cat") -> Path:
        script = bin_dir / name
        script.write_text(
            textwrap.dedent(
                f"""\
                #!/bin/sh
                if [ "$1" = "--version" ]; then
                  echo "{version_output}"
                  exit 0
                fi
                {body}
                """
            ),
            encoding="utf-8",
        )
        script.chmod(0o755)
        return script

    return _make


@pytest.fixture
def path_runner(bin_dir: Path) -> ProcessRunner:
    """Runner whose executable lookup only sees :func:`bin_dir`."""
    return ProcessRunner(locator=PathLocator(search_path=str(bin_dir)))


@pytest.fixture
def target_module(tmp_path: Path) -> Callable[[str, str], Path]:
    """Return a factory writing ``<name>.py`` into a fresh directory and returning the directory."""

    def _make(name: str, source: str) -> Path:
        directory = tmp_path / "targets" / name
        directory.mkdir(parents=True)
        (directory / f"{name}.py").write_text(textwrap.dedent(source), encoding="utf-8")
        return directory

    return _make


def _append_semicolon(text: str, _path: Path | None) -> str:
    return text if text.endswith(";") else f"{text};"


def _strip_semicolons(text: str, _path: Path | None) -> str:
    return text.rstrip(";")


@pytest.fixture
def append_semicolon() -> LazyFormatterStep[object]:
    """Step appending a trailing semicolon when missing."""
    return simple_step("append-semicolon", _append_semicolon)


@pytest.fixture
def strip_semicolons() -> LazyFormatterStep[object]:
    """Step stripping every trailing semicolon."""
    return simple_step("strip-semicolons", _strip_semicolons)
