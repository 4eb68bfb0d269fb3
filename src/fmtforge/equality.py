"""Deterministic equality snapshots for formatter steps.

Two steps are interchangeable for caching purposes exactly when their
equality states encode to the same bytes. The encoding is structural and
versioned: an :class:`EqualityState` is an ordered tuple of ``(key, value)``
fields, each value is normalized to a tagged JSON tree, and the whole tree is
rendered by ``msgspec.json``. Nothing here relies on ``pickle`` or object
identity, so the encoding is stable across processes and interpreter
versions.

Supported field values
----------------------
``None``, ``bool``, ``int``, ``float``, ``str`` and ``bytes``; paths;
enumerations; lists and tuples (order kept); sets (sorted); string-keyed
mappings (sorted by key); pydantic models (declaration order, tagged with the
model class); :class:`FileSignature`; nested :class:`EqualityState`; and any
object exposing an ``equality_fields()`` method returning a mapping. Other
values raise :class:`~fmtforge_common.errors.ConfigurationError`, which keeps
transient resources such as process handles out of cache keys.
"""

from __future__ import annotations

import hashlib
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePath
from typing import Final, Self

import msgspec
from pydantic import BaseModel

from fmtforge_common.errors import ConfigurationError, ResolutionError

__all__ = [
    "ENCODING_VERSION",
    "EqualityState",
    "FileEntry",
    "FileSignature",
    "normalize_value",
]

ENCODING_VERSION: Final[int] = 1
_ENCODING_TAG: Final[str] = "fmtforge.equality"

_ENCODER = msgspec.json.Encoder()

type Normalized = None | bool | int | float | str | list[Normalized] | dict[str, Normalized]


@dataclass(slots=True, frozen=True)
class FileEntry:
    """One file recorded by a :class:`FileSignature`."""

    path: str
    size: int
    mtime_ns: int


@dataclass(slots=True, frozen=True)
class FileSignature:
    """Content signature over an ordered list of files.

    Each file contributes its canonical absolute path, size and modification
    time. Duplicates are dropped (first occurrence wins); the remaining order
    is kept unless the signature was built with ``ignore_order=True``, in which
    case entries are sorted by path.
    """

    entries: tuple[FileEntry, ...]

    @classmethod
    def sign(cls, files: Iterable[Path | str], *, ignore_order: bool = False) -> Self:
        """Sign ``files``.

        Parameters
        ----------
        files : Iterable[Path | str]
            Files to sign.
        ignore_order : bool, optional
            Sort entries by path so input order does not matter. Defaults to False.

        Returns
        -------
        FileSignature
            Signature over the canonical files.

        Raises
        ------
        ResolutionError
            If a file does not exist or is not a regular file.
        """
        seen: set[str] = set()
        entries: list[FileEntry] = []
        for raw in files:
            candidate = Path(raw)
            try:
                canonical = candidate.resolve(strict=True)
                stat = canonical.stat()
            except OSError as exc:
                message = f"Cannot sign '{candidate}': file does not exist"
                raise ResolutionError(message, cause=exc, context={"path": str(candidate)}) from exc
            if not canonical.is_file():
                message = f"Cannot sign '{canonical}': not a regular file"
                raise ResolutionError(message, context={"path": str(canonical)})
            key = canonical.as_posix()
            if key in seen:
                continue
            seen.add(key)
            entries.append(FileEntry(path=key, size=stat.st_size, mtime_ns=stat.st_mtime_ns))
        if ignore_order:
            entries.sort(key=lambda entry: entry.path)
        return cls(entries=tuple(entries))

    @property
    def files(self) -> tuple[Path, ...]:
        """Return the signed files as paths."""
        return tuple(Path(entry.path) for entry in self.entries)

    def only_file(self) -> Path:
        """Return the single signed file.

        Raises
        ------
        ConfigurationError
            If the signature does not hold exactly one file.
        """
        if len(self.entries) != 1:
            message = f"Expected exactly one file, got {len(self.entries)}"
            raise ConfigurationError(message)
        return Path(self.entries[0].path)


@dataclass(slots=True, frozen=True)
class EqualityState:
    """Ordered, versioned snapshot of every field that affects a step's output.

    Examples
    --------
    >>> a = EqualityState.of(version="24.1.0", line_length=88)
    >>> b = EqualityState.of(version="24.1.0", line_length=88)
    >>> a.encode() == b.encode()
    True
    """

    fields: tuple[tuple[str, object], ...] = ()
    version: int = ENCODING_VERSION

    @classmethod
    def of(cls, **fields: object) -> Self:
        """Build a state from keyword fields, keeping their order."""
        return cls.from_pairs(fields.items())

    @classmethod
    def from_pairs(cls, pairs: Iterable[tuple[str, object]]) -> Self:
        """Build a state from ``(key, value)`` pairs.

        Raises
        ------
        ConfigurationError
            If a key repeats.
        """
        collected: list[tuple[str, object]] = []
        seen: set[str] = set()
        for key, value in pairs:
            if key in seen:
                message = f"Duplicate equality field '{key}'"
                raise ConfigurationError(message)
            seen.add(key)
            collected.append((key, value))
        return cls(fields=tuple(collected))

    def with_fields(self, **fields: object) -> Self:
        """Return a copy with ``fields`` appended."""
        return type(self).from_pairs((*self.fields, *fields.items()))

    def get(self, key: str, default: object = None) -> object:
        """Return the raw value recorded under ``key``."""
        for name, value in self.fields:
            if name == key:
                return value
        return default

    def to_tree(self) -> Normalized:
        """Return the normalized, JSON-compatible tree for this state."""
        return [
            _ENCODING_TAG,
            self.version,
            [[key, normalize_value(value, key)] for key, value in self.fields],
        ]

    def encode(self) -> bytes:
        """Return the deterministic byte encoding of this state."""
        return _ENCODER.encode(self.to_tree())

    def digest(self) -> str:
        """Return the SHA-256 hex digest of :meth:`encode`."""
        return hashlib.sha256(self.encode()).hexdigest()

    def __eq__(self, other: object) -> bool:
        """Compare states by their encoded bytes."""
        if not isinstance(other, EqualityState):
            return NotImplemented
        return self.encode() == other.encode()

    def __hash__(self) -> int:
        """Hash the encoded bytes."""
        return hash(self.encode())


def normalize_value(value: object, key: str = "<value>") -> Normalized:
    """Normalize ``value`` into the tagged tree used by :class:`EqualityState`.

    Parameters
    ----------
    value : object
        Field value.
    key : str, optional
        Field name, used in error messages.

    Returns
    -------
    Normalized
        JSON-compatible tree.

    Raises
    ------
    ConfigurationError
        If ``value`` (or something nested in it) has no stable encoding.
    """
    if isinstance(value, Enum):
        return {"$enum": f"{type(value).__qualname__}.{value.name}"}
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return {"$float": repr(value)}
    if isinstance(value, (bytes, bytearray)):
        return {"$bytes": bytes(value).hex()}
    if isinstance(value, PurePath):
        return {"$path": value.as_posix()}
    if isinstance(value, EqualityState):
        return {"$state": value.to_tree()}
    if isinstance(value, FileSignature):
        return {"$files": [[entry.path, entry.size, entry.mtime_ns] for entry in value.entries]}
    if isinstance(value, BaseModel):
        model_type = type(value)
        return {
            "$model": f"{model_type.__module__}.{model_type.__qualname__}",
            "fields": [
                [name, normalize_value(getattr(value, name), f"{key}.{name}")]
                for name in model_type.model_fields
            ],
        }
    equality_fields = getattr(value, "equality_fields", None)
    if callable(equality_fields):
        fields = equality_fields()
        return {
            "$object": type(value).__qualname__,
            "fields": [[str(name), normalize_value(item, f"{key}.{name}")] for name, item in fields.items()],
        }
    if isinstance(value, Mapping):
        items: list[Normalized] = []
        for item_key in sorted(value, key=_mapping_key(key)):
            items.append([item_key, normalize_value(value[item_key], f"{key}.{item_key}")])
        return {"$map": items}
    if isinstance(value, (set, frozenset)):
        normalized = [normalize_value(item, key) for item in value]
        return {"$set": sorted(normalized, key=_ENCODER.encode)}
    if isinstance(value, Sequence):
        return [normalize_value(item, key) for item in value]
    message = (
        f"Equality field '{key}' has unsupported type {type(value).__name__}; "
        "only configuration values may take part in step equality"
    )
    raise ConfigurationError(message, context={"field": key, "type": type(value).__name__})


def _mapping_key(field: str) -> Callable[[object], str]:
    def _key(item: object) -> str:
        if not isinstance(item, str):
            message = f"Equality field '{field}' has a non-string mapping key {item!r}"
            raise ConfigurationError(message)
        return item

    return _key
