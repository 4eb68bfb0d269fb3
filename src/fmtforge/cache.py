"""Keyed caches with at-most-one builder per key.

Dependency resolution and worker environment provisioning are expensive and
shared by every step in a run. :class:`CacheService` memoizes them behind an
explicit ``get_or_create(key, builder)`` call: the service-wide lock only
guards the key to cell mapping, and each key's :class:`~fmtforge.cells.RuntimeCell`
runs its builder single-flight. Builders for different keys therefore run in
parallel, while two callers racing on the same key build it once.

The process-wide instances live in a :class:`CacheServices` holder reachable
through :func:`get_cache_services`; tests swap it with
:func:`set_cache_services` or :func:`reset_cache_services`.
"""

from __future__ import annotations

from collections.abc import Callable, Hashable
from dataclasses import dataclass, field
from threading import Lock
from typing import TYPE_CHECKING

from fmtforge.cells import RuntimeCell
from fmtforge_common.logging import get_logger

if TYPE_CHECKING:
    from fmtforge.provisioning import DependencySet
    from fmtforge.worker.environment import WorkerEnvironment

LOGGER = get_logger(__name__)


class CacheService[K: Hashable, V]:
    """Mutex-guarded map of single-flight cells.

    Parameters
    ----------
    name : str
        Diagnostic name used in log records.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._lock = Lock()
        self._cells: dict[K, RuntimeCell[V]] = {}

    def __repr__(self) -> str:
        """Return a short representation with the entry count."""
        return f"CacheService(name={self._name!r}, entries={len(self)})"

    def __len__(self) -> int:
        """Return the number of keys holding a built value."""
        with self._lock:
            cells = list(self._cells.values())
        return sum(1 for cell in cells if cell.state == "ready")

    def __contains__(self, key: object) -> bool:
        """Return ``True`` when ``key`` holds a built value."""
        with self._lock:
            cell = self._cells.get(key)  # type: ignore[call-overload]
        return cell is not None and cell.state == "ready"

    def peek(self, key: K) -> V | None:
        """Return the value cached for ``key`` without building it."""
        with self._lock:
            cell = self._cells.get(key)
        return None if cell is None else cell.peek()

    def get_or_create(self, key: K, builder: Callable[[], V]) -> V:
        """Return the value for ``key``, running ``builder`` at most once concurrently.

        A builder that raises leaves the key empty so the next call starts a
        fresh attempt; nothing is retried automatically.

        Parameters
        ----------
        key : K
            Cache key.
        builder : Callable[[], V]
            Callable producing the value.

        Returns
        -------
        V
            Cached or freshly built value.
        """
        with self._lock:
            cell = self._cells.get(key)
            if cell is None:
                cell = RuntimeCell(name=f"{self._name}:{key}")
                self._cells[key] = cell
        cached = cell.peek()
        if cached is not None:
            LOGGER.debug(
                "cache_hit",
                extra={"operation": "get_or_create", "cache": self._name, "key": str(key)},
            )
            return cached
        return cell.get_or_initialize(builder)

    def clear(self) -> None:
        """Drop every entry, closing values that hold resources."""
        with self._lock:
            cells = list(self._cells.values())
            self._cells.clear()
        for cell in cells:
            cell.close()


def _dependency_cache() -> CacheService[tuple[str, ...], DependencySet]:
    return CacheService("dependencies")


def _environment_cache() -> CacheService[str, WorkerEnvironment]:
    return CacheService("environments")


@dataclass(slots=True)
class CacheServices:
    """Process-wide caches shared by all steps in a run."""

    dependencies: CacheService[tuple[str, ...], DependencySet] = field(
        default_factory=_dependency_cache
    )
    environments: CacheService[str, WorkerEnvironment] = field(default_factory=_environment_cache)

    def clear(self) -> None:
        """Clear every cache."""
        self.dependencies.clear()
        self.environments.clear()


_SERVICES_STATE: list[CacheServices] = [CacheServices()]


def get_cache_services() -> CacheServices:
    """Return the active cache services."""
    return _SERVICES_STATE[0]


def set_cache_services(services: CacheServices) -> None:
    """Install ``services`` as the active cache services."""
    _SERVICES_STATE[0] = services


def reset_cache_services() -> CacheServices:
    """Replace the active cache services with fresh, empty ones.

    Returns
    -------
    CacheServices
        The newly installed services.
    """
    services = CacheServices()
    set_cache_services(services)
    return services


__all__ = [
    "CacheService",
    "CacheServices",
    "get_cache_services",
    "reset_cache_services",
    "set_cache_services",
]
