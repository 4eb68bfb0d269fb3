"""Sample adapters: thin glue between native tools and the step core."""

from __future__ import annotations

from fmtforge.steps.black import black_step
from fmtforge.steps.clang_format import clang_format_step
from fmtforge.steps.native import NativeStepConfig, native_step

__all__ = [
    "NativeStepConfig",
    "black_step",
    "clang_format_step",
    "native_step",
]
