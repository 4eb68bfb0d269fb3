"""Error code registry and type URIs for Problem Details.

Codes are kebab-case and stable across releases; they appear in Problem
Details payloads and in the ``Class[code]`` rendering of every fmtforge
exception.

Examples
--------
>>> from fmtforge_common.errors.codes import ErrorCode, get_type_uri
>>> get_type_uri(ErrorCode.RESOLUTION_ERROR)
'https://fmtforge.dev/problems/resolution-error'
"""

from __future__ import annotations

from enum import StrEnum
from typing import Final

__all__ = [
    "BASE_TYPE_URI",
    "ErrorCode",
    "get_type_uri",
]

BASE_TYPE_URI: Final[str] = "https://fmtforge.dev/problems"


class ErrorCode(StrEnum):
    """Stable error codes for fmtforge exceptions.

    Attributes
    ----------
    CONFIGURATION_ERROR
        A step option or runtime setting is missing or invalid.
    RESOLUTION_ERROR
        A dependency set or native executable could not be resolved, or was
        found at the wrong version.
    FORMATTING_ERROR
        A step or tool rejected a specific input.
    WORKER_ENVIRONMENT_ERROR
        A worker failed to install, start, answer or shut down.
    RUNTIME_ERROR
        Unclassified runtime failure.
    """

    CONFIGURATION_ERROR = "configuration-error"
    RESOLUTION_ERROR = "resolution-error"
    FORMATTING_ERROR = "formatting-error"
    WORKER_ENVIRONMENT_ERROR = "worker-environment-error"
    RUNTIME_ERROR = "runtime-error"

    def __str__(self) -> str:
        """Return the code value."""
        return self.value


def get_type_uri(code: ErrorCode) -> str:
    """Return the RFC 9457 type URI for ``code``.

    Parameters
    ----------
    code : ErrorCode
        Error code.

    Returns
    -------
    str
        Type URI under :data:`BASE_TYPE_URI`.
    """
    return f"{BASE_TYPE_URI}/{code.value}"
