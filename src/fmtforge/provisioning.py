"""Resolve dependency coordinates to canonical artifact lists.

A step that runs third-party code names its dependencies as coordinates
(pip requirement specifiers such as ``"black==24.1.0"``). The host supplies a
:class:`Provisioner` that turns coordinates into files; the
:class:`DependencyResolver` canonicalizes the result into a sorted,
de-duplicated :class:`DependencySet` and memoizes it per unique coordinate
set through the shared :class:`~fmtforge.cache.CacheService`.

Resolution failures are fatal and never retried here: a half-finished
download may leave side effects that a blind retry would compound.
"""

from __future__ import annotations

import hashlib
import sys
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from fmtforge.cache import get_cache_services
from fmtforge.process import ProcessExecutionError, get_process_runner
from fmtforge_common.errors import ResolutionError
from fmtforge_common.logging import Stopwatch, get_logger

if TYPE_CHECKING:
    from fmtforge.cache import CacheService
    from fmtforge.process import ProcessRunner

LOGGER = get_logger(__name__)


@runtime_checkable
class Provisioner(Protocol):
    """Host capability that resolves coordinates to artifact files.

    Implementations must be deterministic for a fixed coordinate set.
    """

    def resolve(self, coordinates: Sequence[str]) -> set[Path]:
        """Return the artifact files satisfying ``coordinates``."""
        ...


def canonical_coordinates(coordinates: Iterable[str]) -> tuple[str, ...]:
    """Return ``coordinates`` stripped, de-duplicated and sorted.

    Examples
    --------
    >>> canonical_coordinates(["b==1", " a==2", "b==1"])
    ('a==2', 'b==1')
    """
    return tuple(sorted({item.strip() for item in coordinates if item.strip()}))


def coordinates_digest(coordinates: Sequence[str]) -> str:
    """Return a short, stable digest naming a coordinate set on disk."""
    joined = "\n".join(canonical_coordinates(coordinates)).encode("utf-8")
    return hashlib.sha256(joined).hexdigest()[:32]


@dataclass(slots=True, frozen=True)
class DependencySet:
    """Coordinates together with the canonical files they resolved to."""

    coordinates: tuple[str, ...]
    files: tuple[Path, ...]

    @classmethod
    def from_resolution(cls, coordinates: Sequence[str], files: Iterable[Path]) -> DependencySet:
        """Canonicalize ``files`` (absolute, unique, sorted) for ``coordinates``."""
        canonical = sorted({Path(item).resolve() for item in files}, key=lambda path: path.as_posix())
        return cls(coordinates=canonical_coordinates(coordinates), files=tuple(canonical))

    def equality_fields(self) -> dict[str, object]:
        """Return the coordinates and file list for equality snapshots."""
        return {"coordinates": list(self.coordinates), "files": list(self.files)}


@dataclass(slots=True)
class DependencyResolver:
    """Resolve coordinate sets once per run.

    Parameters
    ----------
    provisioner : Provisioner
        Host capability performing the actual resolution.
    cache : CacheService | None, optional
        Cache keyed by canonical coordinates. Defaults to the shared
        dependency cache.
    """

    provisioner: Provisioner
    cache: CacheService[tuple[str, ...], DependencySet] | None = field(default=None)

    def resolve(self, coordinates: Sequence[str]) -> DependencySet:
        """Return the :class:`DependencySet` for ``coordinates``.

        Raises
        ------
        ResolutionError
            If no coordinates are given, the provisioner fails, or it returns
            no files.
        """
        key = canonical_coordinates(coordinates)
        if not key:
            message = "At least one dependency coordinate is required"
            raise ResolutionError(message)
        cache = self.cache if self.cache is not None else get_cache_services().dependencies
        return cache.get_or_create(key, lambda: self._resolve_uncached(key))

    def _resolve_uncached(self, key: tuple[str, ...]) -> DependencySet:
        with Stopwatch() as watch:
            try:
                files = self.provisioner.resolve(list(key))
            except ResolutionError:
                raise
            except Exception as exc:
                message = f"Failed to resolve {', '.join(key)}: {exc}"
                raise ResolutionError(message, cause=exc, context={"coordinates": list(key)}) from exc
        if not files:
            message = f"Resolving {', '.join(key)} produced no artifacts"
            raise ResolutionError(message, context={"coordinates": list(key)})
        resolved = DependencySet.from_resolution(key, files)
        LOGGER.info(
            "dependencies_resolved",
            extra={
                "operation": "resolve_dependencies",
                "coordinates": list(key),
                "file_count": len(resolved.files),
                "duration_ms": watch.elapsed_ms,
            },
        )
        return resolved


@dataclass(slots=True)
class PipProvisioner:
    """Provision pip distributions into a per-coordinate-set download directory.

    ``pip download --no-deps`` fetches exactly the named distributions into
    ``{root}/{digest}``. Pure-Python wheels are zip-importable, so the
    downloaded files can be placed on an isolated interpreter's ``sys.path``
    as they are.

    Parameters
    ----------
    root : Path
        Directory receiving one sub-directory per coordinate set.
    python_executable : str, optional
        Interpreter whose pip performs the download.
    runner : ProcessRunner | None, optional
        Process runner. Defaults to the shared runner.
    extra_args : tuple[str, ...], optional
        Additional pip arguments, e.g. an index URL.
    """

    root: Path
    python_executable: str = sys.executable
    runner: ProcessRunner | None = None
    extra_args: tuple[str, ...] = ()

    def resolve(self, coordinates: Sequence[str]) -> set[Path]:
        """Download ``coordinates`` and return the downloaded files.

        Raises
        ------
        ResolutionError
            If pip fails.
        """
        destination = self.root / coordinates_digest(coordinates)
        destination.mkdir(parents=True, exist_ok=True)
        runner = self.runner or get_process_runner()
        command = [
            self.python_executable,
            "-m",
            "pip",
            "download",
            "--no-deps",
            "--only-binary=:all:",
            "--dest",
            str(destination),
            *self.extra_args,
            *coordinates,
        ]
        try:
            runner.run(command, check=True)
        except ProcessExecutionError as exc:
            message = f"pip could not download {', '.join(coordinates)}: {exc.stderr.strip() or exc.message}"
            raise ResolutionError(message, cause=exc, context={"coordinates": list(coordinates)}) from exc
        return {path for path in destination.iterdir() if path.is_file()}


__all__ = [
    "DependencyResolver",
    "DependencySet",
    "PipProvisioner",
    "Provisioner",
    "canonical_coordinates",
    "coordinates_digest",
]
