"""Run third-party formatters inside an isolated interpreter.

Every call of an :class:`IsolatedLoader` starts the configured interpreter in
isolated mode (``-I -S``): no user site, no site-packages, no environment
overrides. The bootstrap then prepends exactly the step's resolved dependency
files, plus any explicitly shared paths, to the standard library on
``sys.path``. Two steps pinning conflicting versions of one library therefore
never see each other's code.

The bootstrap imports a ``module:attribute`` entry point and calls it as
``target(text, options, file)``. One JSON request goes in on stdin and one
JSON response comes back on stdout, using the worker protocol. Anything the
target prints while it is imported or called is redirected to stderr, so
stdout carries nothing but the response.
"""

from __future__ import annotations

import json
import textwrap
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

from pydantic import BaseModel, ConfigDict, Field

from fmtforge.equality import EqualityState
from fmtforge.process import ProcessExecutionError, get_process_runner
from fmtforge.provisioning import DependencyResolver, DependencySet
from fmtforge.step import LazyFormatterStep, build_spec, create_step
from fmtforge.worker.protocol import (
    FormatRequest,
    decode_response,
    encode_request,
    parse_entry_point,
    unwrap_response,
)
from fmtforge_common.errors import ResolutionError, WorkerEnvironmentError
from fmtforge_common.logging import get_logger
from fmtforge_common.settings import WorkerConfig, load_section

if TYPE_CHECKING:
    from fmtforge.process import ProcessRunner

LOGGER = get_logger(__name__)

# Exit status the bootstrap uses when the entry point cannot be loaded.
LOAD_FAILURE_STATUS: Final[int] = 3

BOOTSTRAP: Final[str] = textwrap.dedent(
    """
    import contextlib
    import importlib
    import json
    import sys

    entry, paths = sys.argv[1], json.loads(sys.argv[2])
    sys.path[:0] = paths
    module_name, _, attribute = entry.partition(":")
    real_stdout = sys.stdout
    request = json.loads(sys.stdin.read())
    with contextlib.redirect_stdout(sys.stderr):
        try:
            target = getattr(importlib.import_module(module_name), attribute)
        except (ImportError, AttributeError) as exc:
            sys.stderr.write(f"cannot load {entry}: {exc!r}\\n")
            sys.exit(3)
        try:
            result = target(request["text"], request.get("options") or {}, request.get("file"))
        except Exception as exc:
            line = getattr(exc, "lineno", None)
            response = {
                "ok": False,
                "message": f"{type(exc).__name__}: {exc}",
                "line": line if isinstance(line, int) else None,
            }
        else:
            if result is None:
                result = request["text"]
            if isinstance(result, str):
                response = {"ok": True, "text": result}
            else:
                response = {"ok": False, "message": f"{entry} returned {type(result).__name__}"}
    real_stdout.write(json.dumps(response))
    """
)


class IsolatedLoader:
    """Execution namespace confined to one :class:`DependencySet`.

    Parameters
    ----------
    dependencies : DependencySet
        Resolved files placed on ``sys.path``.
    entry_point : str
        ``module:attribute`` of the formatting callable.
    shared_paths : Sequence[Path], optional
        Explicit extra paths visible to the callable.
    python_executable : str | None, optional
        Interpreter to launch. Defaults to the configured worker interpreter.
    runner : ProcessRunner | None, optional
        Process runner. Defaults to the shared runner.
    timeout : float | None, optional
        Seconds allowed per call. Defaults to the worker request timeout.
    """

    def __init__(
        self,
        dependencies: DependencySet,
        entry_point: str,
        *,
        shared_paths: Sequence[Path] = (),
        python_executable: str | None = None,
        runner: ProcessRunner | None = None,
        timeout: float | None = None,
    ) -> None:
        parse_entry_point(entry_point)
        config = load_section(WorkerConfig)
        self._dependencies = dependencies
        self._entry_point = entry_point
        self._shared_paths = tuple(Path(path) for path in shared_paths)
        self._python = python_executable or config.python_executable
        self._runner = runner or get_process_runner()
        self._timeout = timeout if timeout is not None else config.request_timeout

    @property
    def search_path(self) -> tuple[str, ...]:
        """Return the paths prepended to the standard library."""
        return tuple(
            path.as_posix() for path in (*self._dependencies.files, *self._shared_paths)
        )

    def command(self) -> list[str]:
        """Return the interpreter command line for one call."""
        return [
            self._python,
            "-I",
            "-S",
            "-c",
            BOOTSTRAP,
            self._entry_point,
            json.dumps(list(self.search_path)),
        ]

    def call(self, request: FormatRequest, *, step: str, path: Path | None = None) -> str:
        """Run one request through the isolated entry point.

        Raises
        ------
        RuntimeFormattingError
            If the callable rejected the input.
        ResolutionError
            If the entry point cannot be loaded or the interpreter crashed.
        WorkerEnvironmentError
            If the call timed out or produced an unreadable response.
        """
        try:
            result = self._runner.run(
                self.command(),
                stdin=encode_request(request).decode("utf-8"),
                timeout=self._timeout,
            )
        except ProcessExecutionError as exc:
            message = f"Isolated call to {self._entry_point} did not finish: {exc.message}"
            raise WorkerEnvironmentError(message, cause=exc, context={"step": step}) from exc
        if result.returncode != 0:
            reason = (
                "could not load its entry point"
                if result.returncode == LOAD_FAILURE_STATUS
                else f"exited with status {result.returncode}"
            )
            message = f"Isolated loader for '{step}' {reason}: {result.stderr.strip() or 'no output'}"
            raise ResolutionError(
                message,
                context={
                    "step": step,
                    "entry_point": self._entry_point,
                    "coordinates": list(self._dependencies.coordinates),
                },
            )
        return unwrap_response(decode_response(result.stdout), step=step, path=path)


class IsolatedStepConfig(BaseModel):
    """Configuration record for :func:`isolated_step`."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    coordinates: tuple[str, ...] = Field(min_length=1)
    entry_point: str
    options: dict[str, Any] = Field(default_factory=dict)
    shared_paths: tuple[Path, ...] = ()


class _LoaderFunc:
    __slots__ = ("_loader", "_name", "_options")

    def __init__(self, loader: IsolatedLoader, name: str, options: Mapping[str, Any]) -> None:
        self._loader = loader
        self._name = name
        self._options = dict(options)

    def apply(self, text: str, path: Path | None) -> str | None:
        request = FormatRequest(
            text=text, options=self._options, file=path.as_posix() if path else None
        )
        return self._loader.call(request, step=self._name, path=path)


def isolated_step(
    name: str,
    coordinates: Sequence[str],
    entry_point: str,
    *,
    resolver: DependencyResolver,
    options: Mapping[str, Any] | None = None,
    shared_paths: Sequence[Path] = (),
    runner: ProcessRunner | None = None,
) -> LazyFormatterStep[IsolatedStepConfig]:
    """Build a step that formats through an :class:`IsolatedLoader`.

    Dependencies are resolved on first use and recorded in the step's
    equality state; the loader is created once afterwards.

    Parameters
    ----------
    name : str
        Step name.
    coordinates : Sequence[str]
        Dependency coordinates handed to ``resolver``.
    entry_point : str
        ``module:attribute`` of the formatting callable.
    resolver : DependencyResolver
        Resolves the coordinates.
    options : Mapping[str, Any] | None, optional
        Options passed to the callable.
    shared_paths : Sequence[Path], optional
        Explicit extra paths visible to the callable.
    runner : ProcessRunner | None, optional
        Process runner for the loader.

    Returns
    -------
    LazyFormatterStep[IsolatedStepConfig]
        The step.
    """
    parse_entry_point(entry_point)
    spec = build_spec(
        IsolatedStepConfig,
        coordinates=tuple(coordinates),
        entry_point=entry_point,
        options=dict(options or {}),
        shared_paths=tuple(shared_paths),
    )

    def _state(config: IsolatedStepConfig) -> EqualityState:
        return EqualityState.of(
            entry_point=config.entry_point,
            options=config.options,
            dependencies=resolver.resolve(config.coordinates),
            shared_paths=list(config.shared_paths),
        )

    def _func(config: IsolatedStepConfig, state: EqualityState) -> _LoaderFunc:
        dependencies = state.get("dependencies")
        if not isinstance(dependencies, DependencySet):
            message = f"Step '{name}' has no resolved dependencies"
            raise ResolutionError(message)
        loader = IsolatedLoader(
            dependencies,
            config.entry_point,
            shared_paths=config.shared_paths,
            runner=runner,
        )
        LOGGER.info(
            "isolated_loader_ready",
            extra={
                "operation": "build_isolated_loader",
                "step": name,
                "entry_point": config.entry_point,
                "path_entries": len(loader.search_path),
            },
        )
        return _LoaderFunc(loader, name, config.options)

    return create_step(name, spec, _state, _func)


__all__ = [
    "BOOTSTRAP",
    "IsolatedLoader",
    "IsolatedStepConfig",
    "isolated_step",
]
