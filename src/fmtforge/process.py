"""Subprocess execution for native formatters and worker tooling.

Every child process fmtforge starts (version probes, native formatters, pip
provisioning, isolated interpreters) goes through :class:`ProcessRunner` so
that executable lookup, environment sanitisation, timeouts and structured
logging live in one place.
"""

from __future__ import annotations

import os
import shutil
import subprocess
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Protocol, runtime_checkable

from fmtforge_common.errors import ErrorCode, FmtForgeError, ResolutionError
from fmtforge_common.logging import get_logger
from fmtforge_common.settings import ProcessConfig, load_section

LOGGER = get_logger(__name__)

Command = Sequence[str]


@dataclass(slots=True, frozen=True)
class ProcessResult:
    """Structured result of one subprocess invocation."""

    command: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    duration_seconds: float

    @property
    def ok(self) -> bool:
        """Return ``True`` when the process exited with status 0."""
        return self.returncode == 0


class ProcessExecutionError(FmtForgeError):
    """Raised when a subprocess times out or exits with a failure under ``check=True``.

    Parameters
    ----------
    message : str
        Human-readable error message.
    command : Sequence[str]
        Command that failed.
    returncode : int | None, optional
        Exit code when the process finished.
    streams : tuple[str, str] | None, optional
        ``(stdout, stderr)`` captured from the process.
    timed_out : bool, optional
        Whether the process was killed on timeout.
    """

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str],
        returncode: int | None = None,
        streams: tuple[str, str] | None = None,
        timed_out: bool = False,
    ) -> None:
        self.command: tuple[str, ...] = tuple(command)
        self.returncode = returncode
        self.stdout, self.stderr = streams if streams is not None else ("", "")
        self.timed_out = timed_out
        super().__init__(
            message,
            code=ErrorCode.RUNTIME_ERROR,
            http_status=504 if timed_out else 500,
            context={
                "command": list(self.command),
                "returncode": returncode,
                "timed_out": timed_out,
                "stderr": self.stderr[-2000:],
            },
        )


@runtime_checkable
class ExecutableLocator(Protocol):
    """Capability that finds an executable on the search path."""

    def locate(self, name: str) -> Path | None:
        """Return the absolute path of ``name`` or ``None`` when absent."""
        ...


@dataclass(slots=True, frozen=True)
class PathLocator:
    """Locate executables with :func:`shutil.which`.

    Parameters
    ----------
    search_path : str | None, optional
        Explicit ``PATH`` value; the process environment is used when None.
    """

    search_path: str | None = None

    def locate(self, name: str) -> Path | None:
        """Return the absolute path of ``name`` on the search path."""
        found = shutil.which(name, path=self.search_path)
        return Path(found).resolve() if found else None


@dataclass(slots=True, frozen=True)
class SanitisedEnvironment:
    """Environment policy that keeps baseline variables and applies overrides."""

    allowed_keys: frozenset[str] = frozenset(
        {
            "HOME",
            "PATH",
            "LANG",
            "LC_ALL",
            "LC_CTYPE",
            "SYSTEMROOT",
            "TMPDIR",
            "TEMP",
            "TMP",
            "TZ",
        }
    )
    passthrough: tuple[str, ...] = ()

    def build(self, overrides: Mapping[str, str] | None) -> dict[str, str]:
        """Return the child environment."""
        keep = self.allowed_keys | frozenset(self.passthrough)
        baseline = {key: value for key, value in os.environ.items() if key in keep}
        if overrides:
            baseline.update(overrides)
        return {key: str(value) for key, value in baseline.items()}


def _default_environment() -> SanitisedEnvironment:
    return SanitisedEnvironment(passthrough=load_section(ProcessConfig).passthrough_env)


def _default_timeout() -> float:
    return load_section(ProcessConfig).default_timeout


@dataclass(slots=True)
class ProcessRunner:
    """Execute subprocesses with shared lookup, environment and timeout policies.

    Parameters
    ----------
    locator : ExecutableLocator, optional
        Resolves bare executable names. Defaults to :class:`PathLocator`.
    environment : SanitisedEnvironment, optional
        Builds the child environment.
    default_timeout : float | None, optional
        Timeout used when a call passes none. Defaults to the configured
        ``FMTFORGE_PROCESS_DEFAULT_TIMEOUT``.
    """

    locator: ExecutableLocator = field(default_factory=PathLocator)
    environment: SanitisedEnvironment = field(default_factory=_default_environment)
    default_timeout: float | None = field(default_factory=_default_timeout)

    def resolve(self, executable: str) -> Path:
        """Resolve ``executable`` to an absolute path.

        Raises
        ------
        ResolutionError
            If the executable does not exist.
        """
        candidate = Path(executable)
        if candidate.is_absolute():
            if not candidate.exists():
                message = f"Executable '{executable}' does not exist"
                raise ResolutionError(message, context={"executable": executable})
            return candidate
        located = self.locator.locate(executable)
        if located is None:
            message = f"Executable '{executable}' could not be found on the search path"
            raise ResolutionError(message, context={"executable": executable})
        return located

    def run(
        self,
        command: Command,
        *,
        stdin: str | None = None,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        check: bool = False,
    ) -> ProcessResult:
        """Run ``command`` and capture its output as text.

        Parameters
        ----------
        command : Command
            Executable followed by its arguments.
        stdin : str | None, optional
            Text written to the process's standard input.
        cwd : Path | None, optional
            Working directory.
        env : Mapping[str, str] | None, optional
            Environment overrides applied on top of the sanitised baseline.
        timeout : float | None, optional
            Seconds before the process is killed; the runner default applies
            when omitted.
        check : bool, optional
            Raise :class:`ProcessExecutionError` on a non-zero exit.

        Returns
        -------
        ProcessResult
            Captured result.

        Raises
        ------
        ProcessExecutionError
            On timeout, or on a non-zero exit when ``check`` is set.
        ResolutionError
            If the executable cannot be found or started.
        """
        if not command:
            message = "Command must contain at least one argument"
            raise ProcessExecutionError(message, command=[])

        executable = self.resolve(command[0])
        final_command = (str(executable), *command[1:])
        effective_timeout = timeout if timeout is not None else self.default_timeout
        start = time.monotonic()
        try:
            completed = subprocess.run(  # noqa: S603
                final_command,
                input=stdin,
                cwd=str(cwd) if cwd else None,
                env=self.environment.build(env),
                text=True,
                encoding="utf-8",
                errors="replace",
                capture_output=True,
                timeout=effective_timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            LOGGER.warning(
                "process_timed_out",
                extra={"operation": "run_process", "command": list(final_command)},
            )
            message = f"Command '{final_command[0]}' timed out after {effective_timeout} seconds"
            raise ProcessExecutionError(
                message,
                command=final_command,
                streams=(_decode_stream(exc.stdout), _decode_stream(exc.stderr)),
                timed_out=True,
            ) from exc
        except OSError as exc:
            message = f"Executable '{final_command[0]}' could not be started: {exc}"
            raise ResolutionError(message, cause=exc, context={"executable": final_command[0]}) from exc

        result = ProcessResult(
            command=final_command,
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
            duration_seconds=time.monotonic() - start,
        )
        LOGGER.debug(
            "process_finished",
            extra={
                "operation": "run_process",
                "command": list(final_command),
                "returncode": result.returncode,
                "duration_ms": result.duration_seconds * 1000,
            },
        )
        if check and not result.ok:
            message = (
                f"Command '{final_command[0]}' exited with status {result.returncode}: "
                f"{result.stderr.strip() or 'no error output'}"
            )
            raise ProcessExecutionError(
                message,
                command=final_command,
                returncode=result.returncode,
                streams=(result.stdout, result.stderr),
            )
        return result

    def spawn(
        self,
        command: Command,
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        stdout: IO[bytes] | int | None = subprocess.DEVNULL,
        stderr: IO[bytes] | int | None = subprocess.DEVNULL,
    ) -> subprocess.Popen[bytes]:
        """Start a long-lived process with the runner's lookup and environment policy.

        The caller owns the returned process and must terminate it.

        Raises
        ------
        ResolutionError
            If the executable cannot be found or started.
        """
        if not command:
            message = "Command must contain at least one argument"
            raise ProcessExecutionError(message, command=[])
        executable = self.resolve(command[0])
        final_command = (str(executable), *command[1:])
        try:
            process = subprocess.Popen(  # noqa: S603
                final_command,
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=stderr,
                cwd=str(cwd) if cwd else None,
                env=self.environment.build(env),
            )
        except OSError as exc:
            message = f"Executable '{final_command[0]}' could not be started: {exc}"
            raise ResolutionError(message, cause=exc, context={"executable": final_command[0]}) from exc
        LOGGER.debug(
            "process_spawned",
            extra={"operation": "spawn_process", "command": list(final_command), "pid": process.pid},
        )
        return process


def _decode_stream(stream: object) -> str:
    if isinstance(stream, bytes):
        return stream.decode("utf-8", errors="replace")
    if stream is None:
        return ""
    return str(stream)


_RUNNER_STATE: list[ProcessRunner | None] = [None]


def get_process_runner() -> ProcessRunner:
    """Return the shared :class:`ProcessRunner`, creating it on first use."""
    runner = _RUNNER_STATE[0]
    if runner is None:
        runner = ProcessRunner()
        _RUNNER_STATE[0] = runner
    return runner


def set_process_runner(runner: ProcessRunner | None) -> None:
    """Override the shared runner; ``None`` restores the default on next use."""
    _RUNNER_STATE[0] = runner


__all__ = [
    "ExecutableLocator",
    "PathLocator",
    "ProcessExecutionError",
    "ProcessResult",
    "ProcessRunner",
    "SanitisedEnvironment",
    "get_process_runner",
    "set_process_runner",
]
