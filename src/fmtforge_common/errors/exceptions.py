"""Typed exception hierarchy with Problem Details support.

All fmtforge exceptions inherit from :class:`FmtForgeError`, which carries a
stable :class:`~fmtforge_common.errors.codes.ErrorCode`, an HTTP-style status,
a log level and a context mapping, and renders itself as an RFC 9457 Problem
Details payload.

The four failure classes of the step core map onto dedicated subclasses:

- :class:`ConfigurationError`: a step option is missing or invalid; raised
  while building a step and never retried.
- :class:`ResolutionError`: a dependency set or native executable is missing
  or at the wrong version; raised on first use with a remediation hint.
- :class:`RuntimeFormattingError`: one input was rejected; fatal for that file
  under the strict policy, downgraded to a lint under the lenient one.
- :class:`WorkerEnvironmentError`: a worker failed to install, start, answer
  or drain its queue in time; fatal and never retried automatically.

Examples
--------
>>> from fmtforge_common.errors import ResolutionError, ErrorCode
>>> try:
...     raise ResolutionError("black not found on PATH")
... except ResolutionError as e:
...     assert e.code == ErrorCode.RESOLUTION_ERROR
...     details = e.to_problem_details(instance="urn:fmtforge:step:black")
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, cast

from fmtforge_common.errors.codes import ErrorCode, get_type_uri
from fmtforge_common.problem_details import build_problem_details

if TYPE_CHECKING:
    from pathlib import Path

    from fmtforge_common.problem_details import ProblemDetails
    from fmtforge_common.types import JsonValue

__all__ = [
    "ConfigurationError",
    "FmtForgeError",
    "FormatterEnvironmentError",
    "ResolutionError",
    "RuntimeFormattingError",
    "SettingsError",
    "WorkerEnvironmentError",
]


class FmtForgeError(Exception):
    """Base exception for all fmtforge errors.

    Parameters
    ----------
    message : str
        Human-readable error message.
    code : ErrorCode, optional
        Stable error code. Defaults to ``ErrorCode.RUNTIME_ERROR``.
    http_status : int, optional
        Status used in Problem Details payloads. Defaults to 500.
    log_level : int, optional
        Level used when the error is logged. Defaults to ``logging.ERROR``.
    cause : BaseException | None, optional
        Underlying exception, chained as ``__cause__``. Defaults to None.
    context : Mapping[str, object] | None, optional
        Extra fields exported as Problem Details extensions. Defaults to None.

    Attributes
    ----------
    message : str
        Human-readable error message.
    code : ErrorCode
        Error code.
    http_status : int
        Status used in Problem Details payloads.
    log_level : int
        Logging level.
    context : dict[str, object]
        Additional context.
    """

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode = ErrorCode.RUNTIME_ERROR,
        http_status: int = 500,
        log_level: int = logging.ERROR,
        cause: BaseException | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.http_status = http_status
        self.log_level = log_level
        self.context: dict[str, object] = dict(context) if context else {}
        if cause is not None:
            self.__cause__ = cause

    def to_problem_details(
        self,
        instance: str | None = None,
        title: str | None = None,
    ) -> ProblemDetails:
        """Convert the error to an RFC 9457 Problem Details payload.

        Parameters
        ----------
        instance : str | None, optional
            URI identifying the occurrence. Defaults to ``urn:fmtforge:error``.
        title : str | None, optional
            Short summary. Defaults to the exception class name.

        Returns
        -------
        ProblemDetails
            Validated payload.
        """
        return build_problem_details(
            problem_type=get_type_uri(self.code),
            title=title or self.__class__.__name__,
            status=self.http_status,
            detail=self.message,
            instance=instance or "urn:fmtforge:error",
            code=self.code.value,
            extensions=cast("Mapping[str, JsonValue] | None", self.context or None),
        )

    def __str__(self) -> str:
        """Return ``Class[code]: message``, noting the cause type when chained.

        Returns
        -------
        str
            Formatted error string.
        """
        base = f"{self.__class__.__name__}[{self.code.value}]: {self.message}"
        if self.__cause__:
            base += f" (caused by: {type(self.__cause__).__name__})"
        return base


class ConfigurationError(FmtForgeError):
    """A step option or configuration record is missing or invalid."""

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        super().__init__(
            message,
            code=ErrorCode.CONFIGURATION_ERROR,
            http_status=400,
            cause=cause,
            context=context,
        )


class SettingsError(FmtForgeError):
    """Runtime settings failed validation."""

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        super().__init__(
            message,
            code=ErrorCode.CONFIGURATION_ERROR,
            http_status=500,
            cause=cause,
            context=context,
        )


class ResolutionError(FmtForgeError):
    """A dependency set or native executable could not be resolved.

    The message always carries a concrete remediation, for instance the
    command that installs the missing tool or the option that accepts the
    version that was found.
    """

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        super().__init__(
            message,
            code=ErrorCode.RESOLUTION_ERROR,
            http_status=424,
            cause=cause,
            context=context,
        )


class RuntimeFormattingError(FmtForgeError):
    """A step or its tool rejected one specific input.

    Parameters
    ----------
    message : str
        Error message.
    step : str | None, optional
        Name of the step that failed. Defaults to None.
    path : Path | None, optional
        File being formatted. Defaults to None.
    cause : BaseException | None, optional
        Underlying exception. Defaults to None.
    context : Mapping[str, object] | None, optional
        Additional context. Defaults to None.
    """

    def __init__(
        self,
        message: str,
        *,
        step: str | None = None,
        path: Path | None = None,
        cause: BaseException | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        merged: dict[str, object] = dict(context or {})
        if step is not None:
            merged.setdefault("step", step)
        if path is not None:
            merged.setdefault("path", path.as_posix())
        super().__init__(
            message,
            code=ErrorCode.FORMATTING_ERROR,
            http_status=422,
            log_level=logging.WARNING,
            cause=cause,
            context=merged,
        )
        self.step = step
        self.path = path


class WorkerEnvironmentError(FmtForgeError):
    """A worker failed to install, start, respond or drain its queue in time."""

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        super().__init__(
            message,
            code=ErrorCode.WORKER_ENVIRONMENT_ERROR,
            http_status=503,
            cause=cause,
            context=context,
        )


FormatterEnvironmentError = WorkerEnvironmentError
