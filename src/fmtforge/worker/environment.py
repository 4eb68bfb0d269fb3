"""Content-addressed worker environments.

A worker-based tool family ships a dependency manifest (pip requirements) and
a bootstrap script. Both are hashed together into :func:`manifest_hash`, and
the environment lives in ``{build_root}/{hash}/``:

- ``requirements.txt`` and ``bootstrap.py``: the inputs, written verbatim;
- ``site/``: dependencies installed with ``pip install --target``;
- ``.installed``: marker written last, once installation succeeded.

Identical inputs always map to the same directory, so a later run (or
another step in this run) reuses the installed environment. Any change to
either input changes the hash and therefore the directory; a stale install is
never patched in place. A directory without the marker is the remnant of an
interrupted install and is wiped before installing again.
"""

from __future__ import annotations

import hashlib
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Final, Protocol, runtime_checkable

from fmtforge.cache import get_cache_services
from fmtforge.process import ProcessExecutionError, get_process_runner
from fmtforge_common.errors import WorkerEnvironmentError
from fmtforge_common.logging import Stopwatch, get_logger
from fmtforge_common.settings import WorkerConfig, load_section

if TYPE_CHECKING:
    from fmtforge.cache import CacheService
    from fmtforge.process import ProcessRunner

LOGGER = get_logger(__name__)

HASH_PREFIX: Final[bytes] = b"fmtforge-worker-v1\x00"
MANIFEST_NAME: Final[str] = "requirements.txt"
SCRIPT_NAME: Final[str] = "bootstrap.py"
SITE_DIR: Final[str] = "site"
MARKER_NAME: Final[str] = ".installed"


def manifest_hash(manifest: str, script: str) -> str:
    """Return the content hash naming the environment for ``(manifest, script)``.

    The hash covers a version prefix, the UTF-8 manifest, a NUL separator and
    the UTF-8 script, in that order.

    Examples
    --------
    >>> manifest_hash("black==24.1.0", "print()") == manifest_hash("black==24.1.0", "print()")
    True
    >>> manifest_hash("black==24.1.0", "print()") == manifest_hash("black==24.2.0", "print()")
    False
    """
    digest = hashlib.sha256()
    digest.update(HASH_PREFIX)
    digest.update(manifest.encode("utf-8"))
    digest.update(b"\x00")
    digest.update(script.encode("utf-8"))
    return digest.hexdigest()


def has_requirements(manifest: str) -> bool:
    """Return whether ``manifest`` names at least one requirement."""
    for line in manifest.splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("#"):
            return True
    return False


@dataclass(slots=True, frozen=True)
class WorkerEnvironment:
    """Location of one content-addressed worker environment."""

    manifest_hash: str
    directory: Path

    @property
    def manifest_path(self) -> Path:
        """Return the path of the written manifest."""
        return self.directory / MANIFEST_NAME

    @property
    def script_path(self) -> Path:
        """Return the path of the written bootstrap script."""
        return self.directory / SCRIPT_NAME

    @property
    def site_dir(self) -> Path:
        """Return the directory holding installed dependencies."""
        return self.directory / SITE_DIR

    @property
    def marker_path(self) -> Path:
        """Return the completion marker path."""
        return self.directory / MARKER_NAME

    @property
    def installed(self) -> bool:
        """Return whether installation completed."""
        return self.marker_path.is_file()

    def equality_fields(self) -> dict[str, object]:
        """Return the content hash; where the environment is installed does not change what it runs."""
        return {"manifest_hash": self.manifest_hash}


@runtime_checkable
class Installer(Protocol):
    """Installs a manifest into an environment's ``site`` directory."""

    def install(self, environment: WorkerEnvironment) -> None:
        """Install ``environment.manifest_path`` into ``environment.site_dir``."""
        ...


@dataclass(slots=True)
class PipInstaller:
    """Install requirements with ``pip install --target``.

    Parameters
    ----------
    python_executable : str, optional
        Interpreter whose pip runs the install.
    runner : ProcessRunner | None, optional
        Process runner. Defaults to the shared runner.
    extra_args : tuple[str, ...], optional
        Additional pip arguments.
    timeout : float | None, optional
        Seconds allowed for the install. Defaults to the runner's timeout.
    """

    python_executable: str = sys.executable
    runner: ProcessRunner | None = None
    extra_args: tuple[str, ...] = ()
    timeout: float | None = None

    def install(self, environment: WorkerEnvironment) -> None:
        """Install the manifest, skipping pip when it names nothing.

        Raises
        ------
        WorkerEnvironmentError
            If pip fails.
        """
        environment.site_dir.mkdir(parents=True, exist_ok=True)
        if not has_requirements(environment.manifest_path.read_text(encoding="utf-8")):
            return
        runner = self.runner or get_process_runner()
        command = [
            self.python_executable,
            "-m",
            "pip",
            "install",
            "--disable-pip-version-check",
            "--no-input",
            "--target",
            str(environment.site_dir),
            *self.extra_args,
            "-r",
            str(environment.manifest_path),
        ]
        try:
            runner.run(command, timeout=self.timeout, check=True)
        except ProcessExecutionError as exc:
            message = f"Installing worker environment {environment.manifest_hash[:12]} failed: {exc.message}"
            raise WorkerEnvironmentError(
                message, cause=exc, context={"directory": environment.directory.as_posix()}
            ) from exc


class EnvironmentProvisioner:
    """Create worker environments at most once per manifest hash.

    Parameters
    ----------
    build_root : Path | None, optional
        Root of the environment cache. Defaults to the configured
        ``FMTFORGE_WORKER_BUILD_ROOT``.
    installer : Installer | None, optional
        Dependency installer. Defaults to :class:`PipInstaller` on the
        configured interpreter.
    cache : CacheService | None, optional
        In-process cache keyed by environment directory. Defaults to the
        shared environment cache.
    """

    def __init__(
        self,
        build_root: Path | None = None,
        installer: Installer | None = None,
        cache: CacheService[str, WorkerEnvironment] | None = None,
    ) -> None:
        config = load_section(WorkerConfig)
        self._build_root = Path(build_root or config.build_root).expanduser().resolve()
        self._installer = installer or PipInstaller(python_executable=config.python_executable)
        self._cache = cache

    @property
    def build_root(self) -> Path:
        """Return the absolute cache root."""
        return self._build_root

    def environment_for(self, manifest: str, script: str) -> WorkerEnvironment:
        """Return where the environment for ``(manifest, script)`` lives, without I/O."""
        digest = manifest_hash(manifest, script)
        return WorkerEnvironment(manifest_hash=digest, directory=self._build_root / digest)

    def provision(self, manifest: str, script: str) -> WorkerEnvironment:
        """Return an installed environment for ``(manifest, script)``.

        Raises
        ------
        WorkerEnvironmentError
            If the directory cannot be prepared or installation fails. The
            partial directory is removed so the next attempt starts clean.
        """
        environment = self.environment_for(manifest, script)
        cache = self._cache if self._cache is not None else get_cache_services().environments
        return cache.get_or_create(
            environment.directory.as_posix(),
            lambda: self._materialize(environment, manifest, script),
        )

    def _materialize(self, environment: WorkerEnvironment, manifest: str, script: str) -> WorkerEnvironment:
        fields = {
            "operation": "provision_environment",
            "manifest_hash": environment.manifest_hash,
            "directory": environment.directory.as_posix(),
        }
        if environment.installed:
            LOGGER.info("environment_install_skipped", extra=fields)
            return environment
        with Stopwatch() as watch:
            try:
                if environment.directory.exists():
                    LOGGER.warning("environment_incomplete_removed", extra=fields)
                    shutil.rmtree(environment.directory)
                environment.directory.mkdir(parents=True)
                environment.manifest_path.write_text(manifest, encoding="utf-8")
                environment.script_path.write_text(script, encoding="utf-8")
            except OSError as exc:
                message = f"Cannot prepare worker environment at {environment.directory}: {exc}"
                raise WorkerEnvironmentError(message, cause=exc, context=fields) from exc
            try:
                self._installer.install(environment)
            except WorkerEnvironmentError:
                shutil.rmtree(environment.directory, ignore_errors=True)
                raise
            except Exception as exc:
                shutil.rmtree(environment.directory, ignore_errors=True)
                message = f"Installer failed for worker environment {environment.manifest_hash[:12]}: {exc}"
                raise WorkerEnvironmentError(message, cause=exc, context=fields) from exc
            environment.marker_path.write_text(environment.manifest_hash, encoding="utf-8")
        LOGGER.info("environment_installed", extra={**fields, "duration_ms": watch.elapsed_ms})
        return environment


__all__ = [
    "EnvironmentProvisioner",
    "Installer",
    "PipInstaller",
    "WorkerEnvironment",
    "has_requirements",
    "manifest_hash",
]
