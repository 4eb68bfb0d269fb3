"""Step execution and caching core for composable text formatters.

The public surface covers the step contract (:mod:`fmtforge.step`), equality
snapshots (:mod:`fmtforge.equality`), the formatter pipeline
(:mod:`fmtforge.formatter`) and its idempotence checks
(:mod:`fmtforge.padded_cell`). Bridges to native executables, isolated
interpreters and worker processes live in :mod:`fmtforge.foreign_exe`,
:mod:`fmtforge.isolation` and :mod:`fmtforge.worker`.
"""

from __future__ import annotations

from fmtforge.equality import EqualityState, FileSignature
from fmtforge.formatter import ExceptionPolicy, FormatOutcome, Formatter
from fmtforge.line_endings import LineEnding
from fmtforge.lint import Lint, LintsError, LintState
from fmtforge.padded_cell import DirtyState, PaddedCell, check_idempotent
from fmtforge.step import (
    FormatterStep,
    LazyFormatterStep,
    create_step,
    filter_by_file,
    never_up_to_date,
    simple_step,
)

__all__ = [
    "DirtyState",
    "EqualityState",
    "ExceptionPolicy",
    "FileSignature",
    "FormatOutcome",
    "Formatter",
    "FormatterStep",
    "LazyFormatterStep",
    "LineEnding",
    "Lint",
    "LintState",
    "LintsError",
    "PaddedCell",
    "check_idempotent",
    "create_step",
    "filter_by_file",
    "never_up_to_date",
    "simple_step",
]
