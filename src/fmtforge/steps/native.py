"""Generic step around a version-checked native executable."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fmtforge.equality import EqualityState
from fmtforge.foreign_exe import (
    DEFAULT_VERSION_FLAG,
    DEFAULT_VERSION_REGEX,
    ExecutableInvocation,
    ForeignExecutable,
)
from fmtforge.step import FunctionFunc, LazyFormatterStep, build_spec, create_step
from fmtforge_common.errors import ConfigurationError

if TYPE_CHECKING:
    from fmtforge.process import ProcessRunner

FILE_PLACEHOLDER = "{file}"


class NativeStepConfig(BaseModel):
    """Options of a native formatter step.

    ``file_argument`` may contain ``{file}``, replaced with the name of the
    file being formatted; it is left out when the file is unknown.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    executable: str = Field(min_length=1)
    version: str = Field(min_length=1)
    path: Path | None = None
    arguments: tuple[str, ...] = ()
    file_argument: str | None = None
    version_flag: str = DEFAULT_VERSION_FLAG
    version_regex: str = DEFAULT_VERSION_REGEX
    install_hints: dict[str, str] = Field(default_factory=dict)
    fix_cant_find: str | None = None
    fix_wrong_version: str | None = None
    allow_version_mismatch: bool = False
    timeout: float | None = Field(default=None, gt=0)

    @field_validator("file_argument")
    @classmethod
    def _require_placeholder(cls, value: str | None) -> str | None:
        if value is not None and FILE_PLACEHOLDER not in value:
            message = f"file_argument must contain {FILE_PLACEHOLDER}"
            raise ValueError(message)
        return value

    def foreign_executable(self) -> ForeignExecutable:
        """Return the executable requirement described by this record."""
        return ForeignExecutable(
            name=self.executable,
            version=self.version,
            path_override=self.path,
            version_flag=self.version_flag,
            version_regex=self.version_regex,
            fix_cant_find=self.fix_cant_find,
            fix_wrong_version=self.fix_wrong_version,
            install_hints=dict(self.install_hints),
            allow_version_mismatch=self.allow_version_mismatch,
        )


def native_config(**options: Any) -> NativeStepConfig:
    """Validate ``options`` into a :class:`NativeStepConfig`."""
    return build_spec(NativeStepConfig, **options)


def native_step(
    config: NativeStepConfig | Mapping[str, Any],
    *,
    runner: ProcessRunner | None = None,
) -> LazyFormatterStep[NativeStepConfig]:
    """Build a step that pipes text through a native executable.

    The executable is located and version-checked when the step's state is
    first resolved; the confirmed path and argument vector are reused for
    every later file.

    Raises
    ------
    ConfigurationError
        If ``config`` does not validate.
    """
    spec = config if isinstance(config, NativeStepConfig) else native_config(**dict(config))

    def _state(current: NativeStepConfig) -> EqualityState:
        executable = current.foreign_executable()
        executable.confirm_version_and_get_absolute_path(runner)
        return EqualityState.of(
            executable=executable,
            arguments=list(current.arguments),
            file_argument=current.file_argument,
        )

    def _func(current: NativeStepConfig, state: EqualityState) -> FunctionFunc:
        executable = state.get("executable")
        if not isinstance(executable, ForeignExecutable):
            message = f"Step '{current.name}' has no resolved executable"
            raise ConfigurationError(message)
        invocation = ExecutableInvocation(
            executable, current.arguments, runner=runner, timeout=current.timeout
        )

        def _apply(text: str, path: Path | None) -> str:
            extra: tuple[str, ...] = ()
            if current.file_argument is not None and path is not None:
                extra = (current.file_argument.replace(FILE_PLACEHOLDER, path.name),)
            return invocation.run(text, extra_args=extra)

        return FunctionFunc(_apply)

    return create_step(spec.name, spec, _state, _func)


__all__ = [
    "NativeStepConfig",
    "native_config",
    "native_step",
]
