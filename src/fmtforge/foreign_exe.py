"""Locate, version-check and invoke native formatter executables.

A :class:`ForeignExecutable` describes a native tool by logical name and
required version. On first use it resolves the tool (explicit path first,
then the search path), runs its version query, extracts the version with a
regular expression and compares it with the requirement. The confirmed
absolute path is cached for the lifetime of the object, which is the lifetime
of the owning step's state.

When the versions disagree the raised
:class:`~fmtforge_common.errors.ResolutionError` names both versions and
offers two ways out: accept the version that was found, or install the one
that was asked for, with a hint for the current platform.
"""

from __future__ import annotations

import re
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import TYPE_CHECKING, Final

from fmtforge.cells import RuntimeCell
from fmtforge.process import ProcessExecutionError, get_process_runner
from fmtforge_common.errors import ConfigurationError, ResolutionError, RuntimeFormattingError
from fmtforge_common.logging import get_logger

if TYPE_CHECKING:
    from fmtforge.process import ProcessRunner

LOGGER = get_logger(__name__)

DEFAULT_VERSION_REGEX: Final[str] = r"version (\S*)"
DEFAULT_VERSION_FLAG: Final[str] = "--version"
VERSION_PROBE_TIMEOUT: Final[float] = 30.0


def platform_key(platform: str | None = None) -> str:
    """Return ``"darwin"``, ``"windows"`` or ``"linux"`` for ``platform``."""
    current = platform or sys.platform
    if current.startswith("darwin"):
        return "darwin"
    if current.startswith(("win", "cygwin")):
        return "windows"
    return "linux"


def version_matches(required: str, found: str) -> bool:
    """Return whether ``found`` satisfies ``required``.

    A requirement ending in ``*`` is a version class: ``"2.*"`` accepts any
    version starting with ``"2."``. Anything else must match exactly.

    Examples
    --------
    >>> version_matches("2.0.0", "2.0.0")
    True
    >>> version_matches("2.*", "2.4.1")
    True
    >>> version_matches("2.0.0", "1.9.0")
    False
    """
    if required.endswith("*"):
        return found.startswith(required[:-1])
    return required == found


@dataclass(slots=True, frozen=True, eq=False)
class ForeignExecutable:
    """Native executable requirement.

    Parameters
    ----------
    name : str
        Logical executable name looked up on the search path.
    version : str
        Required version, or a version class such as ``"2.*"``.
    path_override : Path | None, optional
        Explicit executable path; takes precedence over the search path.
    version_flag : str, optional
        Argument that makes the tool print its version.
    version_regex : str, optional
        Pattern whose first group captures the version from the probe output.
    fix_cant_find : str | None, optional
        Remediation appended when the tool is missing. ``{version}`` is
        substituted.
    fix_wrong_version : str | None, optional
        Remediation appended on a version mismatch. ``{version}`` and
        ``{found}`` are substituted.
    install_hints : Mapping[str, str], optional
        Install command per platform key (``darwin``, ``linux``, ``windows``).
    allow_version_mismatch : bool, optional
        Accept whatever version is found instead of failing.
    """

    name: str
    version: str
    path_override: Path | None = None
    version_flag: str = DEFAULT_VERSION_FLAG
    version_regex: str = DEFAULT_VERSION_REGEX
    fix_cant_find: str | None = None
    fix_wrong_version: str | None = None
    install_hints: Mapping[str, str] = field(default_factory=dict)
    allow_version_mismatch: bool = False
    _resolved: RuntimeCell[Path] = field(
        default_factory=lambda: RuntimeCell(name="foreign_exe"),
        init=False,
        repr=False,
        compare=False,
    )

    def __post_init__(self) -> None:
        """Validate the requirement eagerly, without touching the filesystem."""
        if not self.name.strip():
            message = "ForeignExecutable requires a non-empty name"
            raise ConfigurationError(message)
        if not self.version.strip():
            message = f"ForeignExecutable '{self.name}' requires a version"
            raise ConfigurationError(message)
        try:
            pattern = re.compile(self.version_regex)
        except re.error as exc:
            message = f"Invalid version regex for '{self.name}': {exc}"
            raise ConfigurationError(message, cause=exc) from exc
        if pattern.groups < 1:
            message = f"Version regex for '{self.name}' must contain a capture group"
            raise ConfigurationError(message)

    def equality_fields(self) -> dict[str, object]:
        """Return the fields that influence the tool's output."""
        return {
            "name": self.name,
            "version": self.version,
            "path_override": self.path_override,
            "version_flag": self.version_flag,
            "version_regex": self.version_regex,
            "allow_version_mismatch": self.allow_version_mismatch,
        }

    def install_hint(self, platform: str | None = None) -> str:
        """Return the install hint for ``platform`` (the current one by default)."""
        key = platform_key(platform)
        hint = self.install_hints.get(key)
        if hint is None:
            return f"install {self.name} {self.version} and make sure it is on the PATH"
        return hint.format(version=self.version, name=self.name)

    def confirm_version_and_get_absolute_path(self, runner: ProcessRunner | None = None) -> Path:
        """Resolve, version-check and cache the executable path.

        Parameters
        ----------
        runner : ProcessRunner | None, optional
            Runner used for lookup and the version probe. Defaults to the
            shared runner.

        Returns
        -------
        Path
            Absolute path of a tool that satisfies the requirement.

        Raises
        ------
        ResolutionError
            If the tool is missing, its version cannot be parsed, or it does
            not match the requirement.
        """
        active = runner or get_process_runner()
        return self._resolved.get_or_initialize(lambda: self._resolve(active))

    def _resolve(self, runner: ProcessRunner) -> Path:
        executable = self._locate(runner)
        found = self._probe_version(runner, executable)
        if not version_matches(self.version, found):
            if not self.allow_version_mismatch:
                raise ResolutionError(
                    self._wrong_version_message(executable, found),
                    context={
                        "executable": executable.as_posix(),
                        "required_version": self.version,
                        "found_version": found,
                    },
                )
            LOGGER.warning(
                "foreign_exe_version_mismatch_accepted",
                extra={
                    "operation": "resolve_executable",
                    "executable": self.name,
                    "required_version": self.version,
                    "found_version": found,
                },
            )
        LOGGER.info(
            "foreign_exe_resolved",
            extra={
                "operation": "resolve_executable",
                "executable": self.name,
                "path": executable.as_posix(),
                "found_version": found,
            },
        )
        return executable

    def _locate(self, runner: ProcessRunner) -> Path:
        if self.path_override is not None:
            candidate = self.path_override.expanduser()
            if candidate.is_file():
                return candidate.resolve()
            raise ResolutionError(
                self._cant_find_message(f"at the configured path '{candidate}'"),
                context={"executable": self.name, "path": candidate.as_posix()},
            )
        located = runner.locator.locate(self.name)
        if located is None:
            raise ResolutionError(
                self._cant_find_message("on the search path"),
                context={"executable": self.name},
            )
        return located.resolve()

    def _probe_version(self, runner: ProcessRunner, executable: Path) -> str:
        try:
            result = runner.run(
                [str(executable), self.version_flag], timeout=VERSION_PROBE_TIMEOUT
            )
        except ProcessExecutionError as exc:
            message = f"Version query '{executable} {self.version_flag}' failed: {exc.message}"
            raise ResolutionError(message, cause=exc) from exc
        output = f"{result.stdout}\n{result.stderr}"
        match = re.search(self.version_regex, output)
        if match is None or not match.group(1):
            message = (
                f"Unable to determine the version of {self.name} at {executable}: "
                f"pattern {self.version_regex!r} did not match output {output.strip()!r}"
            )
            raise ResolutionError(message, context={"executable": executable.as_posix()})
        return match.group(1)

    def _cant_find_message(self, where: str) -> str:
        lines = [f"Unable to find {self.name} {where}."]
        if self.fix_cant_find:
            lines.append(self.fix_cant_find.format(version=self.version, name=self.name))
        lines.append(f"To install it: {self.install_hint()}")
        return "\n".join(lines)

    def _wrong_version_message(self, executable: Path, found: str) -> str:
        lines = [
            f"Required {self.name} version {self.version}, but found version {found} "
            f"at {executable}.",
        ]
        if self.fix_wrong_version:
            lines.append(
                self.fix_wrong_version.format(version=self.version, found=found, name=self.name)
            )
        lines.append(
            f"  - To use the version you already have, configure version '{found}' "
            "or allow the mismatch explicitly."
        )
        lines.append(f"  - To use version {self.version}, {self.install_hint()}")
        return "\n".join(lines)


class ExecutableInvocation:
    """Lazily built argument vector bound to a :class:`ForeignExecutable`.

    The executable is confirmed and the base argument vector assembled on the
    first :meth:`run`; later calls reuse it.
    """

    def __init__(
        self,
        executable: ForeignExecutable,
        arguments: Sequence[str] = (),
        *,
        runner: ProcessRunner | None = None,
        timeout: float | None = None,
    ) -> None:
        self._executable = executable
        self._arguments = tuple(arguments)
        self._runner = runner or get_process_runner()
        self._timeout = timeout
        self._argv: tuple[str, ...] | None = None
        self._lock = Lock()

    @property
    def executable(self) -> ForeignExecutable:
        """Return the executable requirement."""
        return self._executable

    def argv(self) -> tuple[str, ...]:
        """Return the base argument vector, confirming the executable on first use."""
        with self._lock:
            if self._argv is None:
                path = self._executable.confirm_version_and_get_absolute_path(self._runner)
                self._argv = (str(path), *self._arguments)
            return self._argv

    def run(
        self,
        text: str,
        *,
        extra_args: Sequence[str] = (),
        cwd: Path | None = None,
    ) -> str:
        """Feed ``text`` to the tool on stdin and return its stdout.

        Raises
        ------
        RuntimeFormattingError
            If the tool exits non-zero or times out on this input.
        """
        command = (*self.argv(), *extra_args)
        try:
            result = self._runner.run(command, stdin=text, cwd=cwd, timeout=self._timeout)
        except ProcessExecutionError as exc:
            message = f"{self._executable.name} did not finish: {exc.message}"
            raise RuntimeFormattingError(message, step=self._executable.name, cause=exc) from exc
        if not result.ok:
            detail = result.stderr.strip() or result.stdout.strip() or "no output"
            message = f"{self._executable.name} exited with status {result.returncode}: {detail}"
            raise RuntimeFormattingError(
                message,
                step=self._executable.name,
                context={"returncode": result.returncode},
            )
        return result.stdout


__all__ = [
    "DEFAULT_VERSION_FLAG",
    "DEFAULT_VERSION_REGEX",
    "ExecutableInvocation",
    "ForeignExecutable",
    "platform_key",
    "version_matches",
]
