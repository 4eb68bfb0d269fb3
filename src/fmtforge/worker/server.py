"""Long-lived subprocess server worker.

A :class:`ServerWorker` runs the bootstrap script of a provisioned
:class:`~fmtforge.worker.environment.WorkerEnvironment` as a small HTTP server
bound to ``127.0.0.1``. The server picks a free port and publishes it in a
``server.port`` file inside a per-worker run directory; the host polls for
that file, then talks to the server with :mod:`httpx`.

The wire protocol is one request at a time, so calls are serialized. A tool
rejecting one input leaves the server usable; a transport failure or a dead
process marks the worker failed for good.
"""

from __future__ import annotations

import json
import shutil
import subprocess
import time
import uuid
from collections.abc import Mapping, Sequence
from pathlib import Path
from string import Template
from threading import Lock
from typing import TYPE_CHECKING, Any, Final, Literal

import httpx
from pydantic import BaseModel, ConfigDict, Field

from fmtforge.equality import EqualityState
from fmtforge.process import get_process_runner
from fmtforge.step import ClosingFunc, LazyFormatterStep, build_spec, create_step
from fmtforge.worker.environment import EnvironmentProvisioner, WorkerEnvironment
from fmtforge.worker.protocol import (
    FormatRequest,
    decode_response,
    encode_request,
    parse_entry_point,
    unwrap_response,
)
from fmtforge_common.errors import WorkerEnvironmentError
from fmtforge_common.logging import Stopwatch, get_logger
from fmtforge_common.settings import WorkerConfig, load_section

if TYPE_CHECKING:
    from fmtforge.process import ProcessRunner

LOGGER = get_logger(__name__)

WorkerState = Literal["new", "running", "failed", "closed"]

PORT_FILE: Final[str] = "server.port"
LOG_FILE: Final[str] = "server.log"
POLL_INTERVAL: Final[float] = 0.05

SERVE_SCRIPT: Final[Template] = Template(
    '''"""fmtforge server worker bootstrap (standard library only)."""
import importlib
import json
import shutil
import os
import sys
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

ENTRY_POINT = ${entry_point}
EXTRA_PATHS = ${extra_paths}


def main():
    root, port_file = sys.argv[1], sys.argv[2]
    sys.path[:0] = [*EXTRA_PATHS, os.path.join(root, "site")]
    module_name, _, attribute = ENTRY_POINT.partition(":")
    target = getattr(importlib.import_module(module_name), attribute)

    class Handler(BaseHTTPRequestHandler):
        def log_message(self, format, *args):
            sys.stderr.write("%s\\n" % (format % args))

        def _reply(self, payload):
            body = json.dumps(payload).encode("utf-8")
            self.send_response(200)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def do_POST(self):
            raw = self.rfile.read(int(self.headers.get("Content-Length") or 0))
            if self.path == "/shutdown":
                self._reply({"ok": True, "text": ""})
                threading.Thread(target=server.shutdown, daemon=True).start()
                return
            if self.path != "/format":
                self.send_error(404)
                return
            request = json.loads(raw)
            try:
                result = target(request["text"], request.get("options") or {}, request.get("file"))
            except Exception as exc:
                line = getattr(exc, "lineno", None)
                response = {
                    "ok": False,
                    "message": "%s: %s" % (type(exc).__name__, exc),
                    "line": line if isinstance(line, int) else None,
                }
            else:
                if result is None:
                    result = request["text"]
                if isinstance(result, str):
                    response = {"ok": True, "text": result}
                else:
                    response = {"ok": False, "message": "%s returned %s" % (ENTRY_POINT, type(result).__name__)}
            self._reply(response)

    server = HTTPServer(("127.0.0.1", 0), Handler)
    staging = port_file + ".tmp"
    with open(staging, "w", encoding="utf-8") as handle:
        handle.write(str(server.server_address[1]))
    os.replace(staging, port_file)
    try:
        server.serve_forever()
    finally:
        server.server_close()


if __name__ == "__main__":
    main()
'''
)


def serve_script(entry_point: str, extra_paths: Sequence[Path] = ()) -> str:
    """Render the bootstrap script hosting ``entry_point``.

    The entry point and extra paths are baked into the script, so they take
    part in the environment's content hash.

    Raises
    ------
    ConfigurationError
        If ``entry_point`` is not ``module:attribute``.
    """
    parse_entry_point(entry_point)
    return SERVE_SCRIPT.substitute(
        entry_point=json.dumps(entry_point),
        extra_paths=json.dumps([Path(path).as_posix() for path in extra_paths]),
    )


class ServerWorker:
    """Handle on one running server worker.

    Parameters
    ----------
    environment : WorkerEnvironment
        Provisioned environment whose bootstrap script is run.
    settings : WorkerConfig | None, optional
        Timeouts and interpreter. Defaults to the environment configuration.
    runner : ProcessRunner | None, optional
        Runner used to spawn the process. Defaults to the shared runner.
    name : str, optional
        Diagnostic name.
    """

    def __init__(
        self,
        environment: WorkerEnvironment,
        *,
        settings: WorkerConfig | None = None,
        runner: ProcessRunner | None = None,
        name: str = "server",
    ) -> None:
        self._environment = environment
        self._settings = settings or load_section(WorkerConfig)
        self._runner = runner or get_process_runner()
        self._name = name
        self._run_dir = environment.directory / "run" / uuid.uuid4().hex
        self._lock = Lock()
        self._state: WorkerState = "new"
        self._process: subprocess.Popen[bytes] | None = None
        self._client: httpx.Client | None = None
        self._port: int | None = None

    def __repr__(self) -> str:
        """Return the worker name, state and port."""
        return f"ServerWorker(name={self._name!r}, state={self._state}, port={self._port})"

    @property
    def state(self) -> WorkerState:
        """Return the lifecycle state."""
        return self._state

    @property
    def port(self) -> int | None:
        """Return the published port once started."""
        return self._port

    @property
    def port_file(self) -> Path:
        """Return the file the server publishes its port in."""
        return self._run_dir / PORT_FILE

    @property
    def log_file(self) -> Path:
        """Return the file capturing the server's output."""
        return self._run_dir / LOG_FILE

    def start(self) -> None:
        """Launch the server and wait until it publishes its port.

        Raises
        ------
        WorkerEnvironmentError
            If the process exits or does not publish a port within
            ``server_start_timeout``. The process is killed first.
        """
        with self._lock:
            if self._state != "new":
                message = f"Worker '{self._name}' cannot start from state '{self._state}'"
                raise WorkerEnvironmentError(message)
            self._run_dir.mkdir(parents=True, exist_ok=True)
            command = [
                self._settings.python_executable,
                "-I",
                str(self._environment.script_path),
                str(self._environment.directory),
                str(self.port_file),
            ]
            with Stopwatch() as watch, self.log_file.open("wb") as log:
                self._process = self._runner.spawn(
                    command, cwd=self._environment.directory, stdout=log, stderr=subprocess.STDOUT
                )
                port = self._await_port(self._process)
            self._port = port
            self._client = httpx.Client(
                base_url=f"http://127.0.0.1:{port}",
                timeout=self._settings.request_timeout,
                trust_env=False,
            )
            self._state = "running"
        LOGGER.info(
            "worker_started",
            extra={
                "operation": "start_worker",
                "worker": self._name,
                "manifest_hash": self._environment.manifest_hash,
                "port": port,
                "pid": self._process.pid,
                "duration_ms": watch.elapsed_ms,
            },
        )

    def _await_port(self, process: subprocess.Popen[bytes]) -> int:
        deadline = time.monotonic() + self._settings.server_start_timeout
        while True:
            port = self._read_port()
            if port is not None:
                return port
            if process.poll() is not None:
                self._state = "failed"
                message = (
                    f"Worker '{self._name}' exited with status {process.returncode} before "
                    f"publishing its port: {self._log_tail()}"
                )
                raise WorkerEnvironmentError(message, context=self._context())
            if time.monotonic() >= deadline:
                self._state = "failed"
                self._kill(process)
                message = (
                    f"Worker '{self._name}' did not publish its port within "
                    f"{self._settings.server_start_timeout} seconds"
                )
                raise WorkerEnvironmentError(message, context=self._context())
            time.sleep(POLL_INTERVAL)

    def _read_port(self) -> int | None:
        try:
            raw = self.port_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return int(raw) if raw.isdigit() else None

    def format(self, request: FormatRequest, *, step: str | None = None, path: Path | None = None) -> str:
        """Send ``request`` and return the formatted text.

        Raises
        ------
        RuntimeFormattingError
            If the tool rejected the input; the worker stays usable.
        WorkerEnvironmentError
            If the worker is not running, the transport fails, or the reply is
            unreadable; the worker is marked failed.
        """
        label = step or self._name
        with self._lock:
            if self._state != "running" or self._client is None:
                message = f"Worker '{self._name}' is not running (state '{self._state}')"
                raise WorkerEnvironmentError(message, context=self._context())
            try:
                reply = self._client.post(
                    "/format",
                    content=encode_request(request),
                    headers={"Content-Type": "application/json"},
                )
                reply.raise_for_status()
            except httpx.HTTPError as exc:
                self._state = "failed"
                message = f"Worker '{self._name}' failed during a request: {exc}"
                raise WorkerEnvironmentError(message, cause=exc, context=self._context()) from exc
            try:
                response = decode_response(reply.content)
            except WorkerEnvironmentError:
                self._state = "failed"
                raise
        return unwrap_response(response, step=label, path=path)

    def close(self) -> None:
        """Ask the server to stop, then terminate it if needed. Idempotent.

        The run directory is removed unless the worker failed, in which case
        its log is kept for diagnosis.
        """
        with self._lock:
            if self._state == "closed":
                return
            failed = self._state == "failed"
            self._state = "closed"
            client, process = self._client, self._process
            self._client = None
        if client is not None:
            try:
                client.post("/shutdown", timeout=self._settings.shutdown_timeout)
            except httpx.HTTPError as exc:
                LOGGER.debug(
                    "worker_shutdown_request_failed",
                    extra={"operation": "close_worker", "worker": self._name, "error": str(exc)},
                )
            finally:
                client.close()
        if process is not None:
            self._stop(process)
        if not failed:
            shutil.rmtree(self._run_dir, ignore_errors=True)
        LOGGER.info(
            "worker_closed",
            extra={
                "operation": "close_worker",
                "worker": self._name,
                "port": self._port,
                "kept_run_dir": failed,
            },
        )

    def _stop(self, process: subprocess.Popen[bytes]) -> None:
        try:
            process.wait(timeout=self._settings.shutdown_timeout)
        except subprocess.TimeoutExpired:
            process.terminate()
            try:
                process.wait(timeout=self._settings.shutdown_timeout)
            except subprocess.TimeoutExpired:
                self._kill(process)

    @staticmethod
    def _kill(process: subprocess.Popen[bytes]) -> None:
        process.kill()
        process.wait()

    def _log_tail(self, limit: int = 2000) -> str:
        try:
            text = self.log_file.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return "no output"
        return text[-limit:].strip() or "no output"

    def _context(self) -> dict[str, object]:
        return {
            "worker": self._name,
            "manifest_hash": self._environment.manifest_hash,
            "log_file": self.log_file.as_posix(),
        }


class ServerStepConfig(BaseModel):
    """Configuration record for :func:`server_step`."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    entry_point: str
    manifest: str = ""
    options: dict[str, Any] = Field(default_factory=dict)
    extra_paths: tuple[Path, ...] = ()


def server_step(
    name: str,
    entry_point: str,
    *,
    manifest: str = "",
    options: Mapping[str, Any] | None = None,
    extra_paths: Sequence[Path] = (),
    provisioner: EnvironmentProvisioner | None = None,
    settings: WorkerConfig | None = None,
) -> LazyFormatterStep[ServerStepConfig]:
    """Build a step backed by a :class:`ServerWorker`.

    The environment is provisioned into the step's equality state; the worker
    is started when the func is built and stopped by the step's ``close``.

    Parameters
    ----------
    name : str
        Step name.
    entry_point : str
        ``module:attribute`` called as ``target(text, options, file)``.
    manifest : str, optional
        pip requirements installed into the environment.
    options : Mapping[str, Any] | None, optional
        Options sent with every request.
    extra_paths : Sequence[Path], optional
        Paths placed before the installed dependencies.
    provisioner : EnvironmentProvisioner | None, optional
        Environment provisioner. Defaults to one on the configured build root.
    settings : WorkerConfig | None, optional
        Worker timeouts and interpreter.

    Returns
    -------
    LazyFormatterStep[ServerStepConfig]
        The step.
    """
    spec = build_spec(
        ServerStepConfig,
        entry_point=entry_point,
        manifest=manifest,
        options=dict(options or {}),
        extra_paths=tuple(extra_paths),
    )
    script = serve_script(spec.entry_point, spec.extra_paths)

    def _state(config: ServerStepConfig) -> EqualityState:
        active = provisioner or EnvironmentProvisioner()
        return EqualityState.of(
            entry_point=config.entry_point,
            options=config.options,
            environment=active.provision(config.manifest, script),
        )

    def _func(config: ServerStepConfig, state: EqualityState) -> ClosingFunc:
        environment = state.get("environment")
        if not isinstance(environment, WorkerEnvironment):
            message = f"Step '{name}' has no provisioned environment"
            raise WorkerEnvironmentError(message)
        worker = ServerWorker(environment, settings=settings, name=name)
        worker.start()

        def _apply(text: str, path: Path | None) -> str:
            request = FormatRequest(
                text=text, options=config.options, file=path.as_posix() if path else None
            )
            return worker.format(request, step=name, path=path)

        return ClosingFunc(_apply, worker)

    return create_step(name, spec, _state, _func)


__all__ = [
    "SERVE_SCRIPT",
    "ServerStepConfig",
    "ServerWorker",
    "serve_script",
    "server_step",
]
