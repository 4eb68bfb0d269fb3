"""Tests for the native-tool step adapters.

The tools are shell scripts that print their arguments, so the tests check
the exact command line each adapter builds.
"""

from __future__ import annotations

import sys
from collections.abc import Callable
from pathlib import Path

import pytest

from fmtforge.formatter import Formatter
from fmtforge.foreign_exe import ForeignExecutable
from fmtforge.process import ProcessRunner
from fmtforge.steps import NativeStepConfig, black_step, clang_format_step, native_step
from fmtforge_common.errors import ConfigurationError, ResolutionError, RuntimeFormattingError

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="fake tools are POSIX shell scripts")

PRINT_ARGUMENTS = "printf '%s\\n' \"$@\""


@posix_only
class TestBlackStep:
    """Tests for black_step."""

    def test_command_line(self, fake_executable: Callable[..., Path], path_runner: ProcessRunner) -> None:
        """Quiet mode, line length and stdin are passed in order."""
        fake_executable("black", "black, version 24.1.0", PRINT_ARGUMENTS)
        step = black_step("24.1.0", line_length=100, runner=path_runner)
        assert step.format("x = 1\n") == "-q\n--line-length\n100\n-\n"

    def test_wrong_version(self, fake_executable: Callable[..., Path], path_runner: ProcessRunner) -> None:
        """A mismatched version names the step call that would accept it."""
        fake_executable("black", "black, version 23.0.0")
        step = black_step("24.1.0", runner=path_runner)
        with pytest.raises(ResolutionError) as exc_info:
            step.format("x = 1\n")
        assert "black_step('23.0.0')" in exc_info.value.message
        assert "pip install black==24.1.0" in exc_info.value.message

    def test_missing_tool(self, path_runner: ProcessRunner) -> None:
        """A missing tool is fatal even under the lenient policy."""
        step = black_step("24.1.0", runner=path_runner)
        with pytest.raises(ResolutionError, match="Unable to find black"):
            Formatter([step], policy="lenient").format_text("x = 1\n")

    def test_spec_key_tracks_options(self) -> None:
        """Different options give different step identities."""
        assert black_step("24.1.0").spec_key() != black_step("24.1.0", line_length=100).spec_key()
        assert black_step("24.1.0").spec_key() != black_step("24.2.0").spec_key()
        assert black_step("24.1.0") == black_step("24.1.0")


@posix_only
class TestClangFormatStep:
    """Tests for clang_format_step."""

    def test_style_and_file_name(self, fake_executable: Callable[..., Path], path_runner: ProcessRunner) -> None:
        """The file name is passed through ``--assume-filename``."""
        fake_executable("clang-format", "clang-format version 17.0.6", PRINT_ARGUMENTS)
        step = clang_format_step("17.0.6", style="Google", runner=path_runner)
        assert step.format("int x;\n", Path("src/a.cpp")) == "--style=Google\n--assume-filename=a.cpp\n"

    def test_unknown_file(self, fake_executable: Callable[..., Path], path_runner: ProcessRunner) -> None:
        """Without a file the file argument is left out."""
        fake_executable("clang-format", "clang-format version 17.0.6", PRINT_ARGUMENTS)
        step = clang_format_step("17.0.6", runner=path_runner)
        assert step.format("int x;\n") == ""

    def test_resolved_executable_in_state(
        self, fake_executable: Callable[..., Path], path_runner: ProcessRunner
    ) -> None:
        """The confirmed executable is part of the step's equality state."""
        fake_executable("clang-format", "clang-format version 17.0.6")
        state = clang_format_step("17.0.6", runner=path_runner).equality_state()
        assert isinstance(state.get("executable"), ForeignExecutable)
        assert state.get("file_argument") == "--assume-filename={file}"


@posix_only
class TestNativeStep:
    """Tests for native_step."""

    def test_echo_tool(self, fake_executable: Callable[..., Path], path_runner: ProcessRunner) -> None:
        """Text is piped through the tool's stdin and stdout."""
        fake_executable("tidy", "tidy version 1.0")
        step = native_step({"name": "tidy", "executable": "tidy", "version": "1.0"}, runner=path_runner)
        assert step.format("hello\n") == "hello\n"
        assert isinstance(step.spec, NativeStepConfig)

    def test_tool_failure_is_rejection(self, fake_executable: Callable[..., Path], path_runner: ProcessRunner) -> None:
        """A non-zero exit rejects the input and becomes a lint when lenient."""
        fake_executable("tidy", "tidy version 1.0", "echo 'parse error' >&2; exit 3")
        step = native_step({"name": "tidy", "executable": "tidy", "version": "1.0"}, runner=path_runner)
        with pytest.raises(RuntimeFormattingError, match="exited with status 3"):
            step.format("hello\n")
        outcome = Formatter([step], policy="lenient", line_ending="unix").format_text("hello\n")
        assert outcome.text == "hello\n"
        assert outcome.lints.has_lints


class TestNativeStepConfig:
    """Tests for option validation."""

    def test_file_argument_needs_placeholder(self) -> None:
        """``file_argument`` must reference the file."""
        with pytest.raises(ConfigurationError, match="Invalid NativeStepConfig options"):
            native_step({"name": "x", "executable": "x", "version": "1", "file_argument": "--stdin-name"})

    def test_unknown_option(self) -> None:
        """Unknown options are rejected."""
        with pytest.raises(ConfigurationError):
            native_step({"name": "x", "executable": "x", "version": "1", "colour": "blue"})
