"""Exception hierarchy and Problem Details support.

Examples
--------
>>> from fmtforge_common.errors import ConfigurationError, ErrorCode
>>> error = ConfigurationError("option 'version' is required")
>>> error.code == ErrorCode.CONFIGURATION_ERROR
True
"""

from __future__ import annotations

from fmtforge_common.errors.codes import BASE_TYPE_URI, ErrorCode, get_type_uri
from fmtforge_common.errors.exceptions import (
    ConfigurationError,
    FmtForgeError,
    FormatterEnvironmentError,
    ResolutionError,
    RuntimeFormattingError,
    SettingsError,
    WorkerEnvironmentError,
)

__all__ = [
    "BASE_TYPE_URI",
    "ConfigurationError",
    "ErrorCode",
    "FmtForgeError",
    "FormatterEnvironmentError",
    "ResolutionError",
    "RuntimeFormattingError",
    "SettingsError",
    "WorkerEnvironmentError",
    "get_type_uri",
]
