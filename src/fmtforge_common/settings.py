"""Runtime settings with typed configuration and fail-fast validation.

Settings are read from ``FMTFORGE_*`` environment variables through
``pydantic_settings``. Each section rejects unknown fields so a typo in an
environment variable name surfaces immediately instead of being ignored.

Examples
--------
>>> from fmtforge_common.settings import load_settings
>>> settings = load_settings()
>>> settings.worker.server_start_timeout
60.0
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Literal

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from fmtforge_common.errors import SettingsError
from fmtforge_common.logging import get_logger

__all__ = [
    "ObservabilityConfig",
    "PipelineConfig",
    "ProcessConfig",
    "RuntimeSettings",
    "WorkerConfig",
    "load_section",
    "load_settings",
]

LOGGER = get_logger(__name__)

LineEndingName = Literal["platform_native", "windows", "unix", "mac_classic", "preserve"]
ExceptionPolicyName = Literal["strict", "lenient"]


class PipelineConfig(BaseSettings):
    """Formatter pipeline defaults (``FMTFORGE_PIPELINE_*``)."""

    model_config = SettingsConfigDict(env_prefix="FMTFORGE_PIPELINE_", extra="forbid")

    line_ending: LineEndingName = Field(
        default="platform_native", description="Line ending written at the output boundary"
    )
    encoding: str = Field(default="utf-8", description="Encoding used to decode and encode files")
    exception_policy: ExceptionPolicyName = Field(
        default="strict", description="How step exceptions are handled ('strict' or 'lenient')"
    )


class WorkerConfig(BaseSettings):
    """Worker bridge configuration (``FMTFORGE_WORKER_*``)."""

    model_config = SettingsConfigDict(env_prefix="FMTFORGE_WORKER_", extra="forbid")

    build_root: Path = Field(
        default=Path(".fmtforge") / "workers",
        description="Directory holding content-addressed worker environments",
    )
    server_start_timeout: float = Field(
        default=60.0, gt=0, description="Seconds to wait for a server worker to publish its port"
    )
    request_timeout: float = Field(
        default=30.0, gt=0, description="Seconds to wait for one format request"
    )
    shutdown_timeout: float = Field(
        default=5.0, ge=0, description="Seconds to wait for a worker to exit after shutdown"
    )
    embedded_budget_seconds: float = Field(
        default=30.0, gt=0, description="Time budget for draining the embedded runtime per call"
    )
    python_executable: str = Field(
        default=sys.executable, description="Interpreter used to run isolated and server workers"
    )


class ProcessConfig(BaseSettings):
    """Subprocess execution defaults (``FMTFORGE_PROCESS_*``)."""

    model_config = SettingsConfigDict(env_prefix="FMTFORGE_PROCESS_", extra="forbid")

    default_timeout: float = Field(
        default=120.0, gt=0, description="Timeout applied when a call passes no explicit timeout"
    )
    passthrough_env: tuple[str, ...] = Field(
        default=(),
        description="Extra environment variable names forwarded to child processes",
    )


class ObservabilityConfig(BaseSettings):
    """Logging toggles (``FMTFORGE_*``)."""

    model_config = SettingsConfigDict(env_prefix="FMTFORGE_", extra="forbid")

    log_level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")


class RuntimeSettings(BaseSettings):
    """Aggregate runtime configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FMTFORGE_",
        env_nested_delimiter="__",
        extra="forbid",
        case_sensitive=False,
    )

    pipeline: PipelineConfig = Field(
        default_factory=PipelineConfig, description="Formatter pipeline configuration"
    )
    worker: WorkerConfig = Field(
        default_factory=WorkerConfig, description="Worker bridge configuration"
    )
    process: ProcessConfig = Field(
        default_factory=ProcessConfig, description="Subprocess configuration"
    )
    observability: ObservabilityConfig = Field(
        default_factory=ObservabilityConfig, description="Observability configuration"
    )

    def __init__(self, **overrides: object) -> None:
        """Initialise settings, converting validation failures to :class:`SettingsError`."""
        try:
            super().__init__(**overrides)  # type: ignore[arg-type]
        except ValidationError as exc:
            raise _settings_error(exc, "RuntimeSettings") from exc


def _settings_error(exc: ValidationError, section: str) -> SettingsError:
    msg = f"Configuration validation failed: {exc}"
    LOGGER.error(
        "settings_validation_failed",
        extra={"operation": "load_settings", "section": section, "error_type": type(exc).__name__},
    )
    return SettingsError(
        msg,
        cause=exc,
        context={"section": section, "validation_error": str(exc)},
    )


def load_section[S: BaseSettings](section: type[S], **overrides: object) -> S:
    """Load one settings section from the environment.

    Modules that only need one section use this instead of instantiating it
    directly, so an invalid ``FMTFORGE_*`` value is reported as
    :class:`SettingsError` like everywhere else.

    Parameters
    ----------
    section : type[S]
        Section class, e.g. :class:`WorkerConfig`.
    **overrides : object
        Field values taking precedence over the environment.

    Returns
    -------
    S
        Validated section.

    Raises
    ------
    SettingsError
        If a field fails validation.

    Examples
    --------
    >>> load_section(WorkerConfig, request_timeout=5.0).request_timeout
    5.0
    """
    try:
        return section(**overrides)  # type: ignore[arg-type]
    except ValidationError as exc:
        raise _settings_error(exc, section.__name__) from exc


def load_settings(**overrides: object) -> RuntimeSettings:
    """Load :class:`RuntimeSettings` with optional overrides.

    Parameters
    ----------
    **overrides : object
        Section overrides, e.g. ``worker=WorkerConfig(build_root=...)``.

    Returns
    -------
    RuntimeSettings
        Validated settings.
    """
    return RuntimeSettings(**overrides)
