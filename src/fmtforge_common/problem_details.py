"""RFC 9457 Problem Details helpers with schema validation.

Every fmtforge exception can render itself as a Problem Details payload so
hosts embedding the pipeline (build plugins, editors, CI reporters) receive a
uniform error envelope. Payloads are validated against the JSON Schema shipped
in ``fmtforge_common/schemas/problem_details.json``.

Examples
--------
>>> problem = build_problem_details(
...     problem_type="https://fmtforge.dev/problems/resolution-error",
...     title="ResolutionError",
...     status=424,
...     detail="black 1.9.0 found, 2.0.0 required",
...     instance="urn:fmtforge:step:black",
... )
>>> problem["status"]
424
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, TypedDict

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from fmtforge_common.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Mapping

    from fmtforge_common.types import JsonValue

__all__ = [
    "ProblemDetails",
    "ProblemDetailsValidationError",
    "build_problem_details",
    "problem_from_exception",
    "render_problem",
    "validate_problem_details",
]

LOGGER = get_logger(__name__)

_SCHEMA_PATH = Path(__file__).parent / "schemas" / "problem_details.json"


class ProblemDetails(TypedDict, total=False):
    """Typed view of an RFC 9457 Problem Details payload."""

    type: str
    title: str
    status: int
    detail: str
    instance: str
    code: str
    extensions: dict[str, JsonValue]


class ProblemDetailsValidationError(Exception):
    """Raised when a Problem Details payload fails schema validation.

    Parameters
    ----------
    message : str
        Description of the failure.
    validation_errors : list[str] | None, optional
        Individual validator messages. Defaults to None.
    """

    def __init__(self, message: str, validation_errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.validation_errors = validation_errors or []


_VALIDATOR_CACHE: dict[str, Draft202012Validator] = {}


def _load_validator() -> Draft202012Validator:
    cached = _VALIDATOR_CACHE.get("problem_details")
    if cached is not None:
        return cached

    try:
        schema_obj = json.loads(_SCHEMA_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        msg = f"Failed to load Problem Details schema: {exc}"
        raise ProblemDetailsValidationError(msg) from exc

    try:
        Draft202012Validator.check_schema(schema_obj)
    except SchemaError as exc:
        msg = f"Invalid Problem Details schema: {exc.message}"
        raise ProblemDetailsValidationError(msg) from exc

    validator = Draft202012Validator(schema_obj)
    _VALIDATOR_CACHE["problem_details"] = validator
    return validator


def validate_problem_details(payload: Mapping[str, JsonValue]) -> None:
    """Validate ``payload`` against the packaged Problem Details schema.

    Parameters
    ----------
    payload : Mapping[str, JsonValue]
        Payload to validate.

    Raises
    ------
    ProblemDetailsValidationError
        If the payload violates the schema.
    """
    validator = _load_validator()
    errors: list[str] = []
    for error in validator.iter_errors(dict(payload)):
        location = ".".join(str(part) for part in error.absolute_path)
        errors.append(f"{error.message} (at {location})" if location else error.message)
    if errors:
        LOGGER.warning(
            "problem_details_invalid",
            extra={"operation": "validate_problem_details", "errors": errors},
        )
        msg = f"Problem Details validation failed: {'; '.join(errors)}"
        raise ProblemDetailsValidationError(msg, validation_errors=errors)


def build_problem_details(
    problem_type: str,
    title: str,
    status: int,
    detail: str,
    instance: str,
    *,
    code: str | None = None,
    extensions: Mapping[str, JsonValue] | None = None,
) -> ProblemDetails:
    """Build and validate an RFC 9457 Problem Details payload.

    Parameters
    ----------
    problem_type : str
        Type URI.
    title : str
        Short summary.
    status : int
        HTTP-style status code.
    detail : str
        Human-readable explanation.
    instance : str
        URI identifying this occurrence.
    code : str | None, optional
        Stable error code. Defaults to None.
    extensions : Mapping[str, JsonValue] | None, optional
        Extra context. Defaults to None.

    Returns
    -------
    ProblemDetails
        Validated payload.
    """
    problem: ProblemDetails = {
        "type": problem_type,
        "title": title,
        "status": status,
        "detail": detail,
        "instance": instance,
    }
    if code is not None:
        problem["code"] = code
    if extensions:
        problem["extensions"] = {key: _coerce_json(value) for key, value in extensions.items()}
    validate_problem_details(problem)  # type: ignore[arg-type]
    return problem


def problem_from_exception(
    exc: BaseException,
    *,
    problem_type: str,
    title: str,
    status: int,
    instance: str,
    code: str | None = None,
    extensions: Mapping[str, JsonValue] | None = None,
) -> ProblemDetails:
    """Build a Problem Details payload describing ``exc``.

    The exception type is recorded under ``extensions.exception_type``.

    Returns
    -------
    ProblemDetails
        Validated payload whose ``detail`` is ``str(exc)``.
    """
    merged: dict[str, JsonValue] = dict(extensions or {})
    merged["exception_type"] = type(exc).__name__
    return build_problem_details(
        problem_type,
        title,
        status,
        str(exc),
        instance,
        code=code,
        extensions=merged,
    )


def render_problem(problem: ProblemDetails) -> str:
    """Render ``problem`` as indented JSON."""
    return json.dumps(problem, indent=2, sort_keys=True)


def _coerce_json(value: object) -> JsonValue:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, dict):
        return {str(key): _coerce_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value, key=str) if isinstance(value, (set, frozenset)) else value
        return [_coerce_json(item) for item in items]
    return str(value)
