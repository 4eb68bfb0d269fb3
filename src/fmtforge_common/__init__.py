"""Shared foundations for the fmtforge stack.

This package bundles the ambient helpers every fmtforge module relies on:
the exception taxonomy with RFC 9457 Problem Details, structured logging and
typed runtime settings. Downstream modules import from here so error codes
and log fields stay uniform across the step core and its worker bridges.
"""

from __future__ import annotations

from fmtforge_common import errors, logging, problem_details, settings, types

__all__ = [
    "errors",
    "logging",
    "problem_details",
    "settings",
    "types",
]
