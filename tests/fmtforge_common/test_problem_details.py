"""Tests for Problem Details building and schema validation."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from fmtforge_common.problem_details import (
    ProblemDetailsValidationError,
    build_problem_details,
    problem_from_exception,
    render_problem,
    validate_problem_details,
)


class TestBuildProblemDetails:
    """Tests for ``build_problem_details``."""

    def test_minimal_payload(self) -> None:
        """Required members are present and nothing else."""
        problem = build_problem_details(
            problem_type="https://fmtforge.dev/problems/formatting-error",
            title="RuntimeFormattingError",
            status=422,
            detail="black rejected the input",
            instance="urn:fmtforge:step:black",
        )
        assert set(problem) == {"type", "title", "status", "detail", "instance"}

    def test_extensions_are_coerced(self) -> None:
        """Paths and sets in extensions become JSON values."""
        problem = build_problem_details(
            problem_type="https://fmtforge.dev/problems/resolution-error",
            title="ResolutionError",
            status=424,
            detail="missing",
            instance="urn:fmtforge:error",
            extensions={"path": Path("a/b.py"), "coordinates": {"b==1", "a==2"}},  # type: ignore[dict-item]
        )
        assert problem["extensions"] == {"path": "a/b.py", "coordinates": ["a==2", "b==1"]}

    def test_invalid_status_rejected(self) -> None:
        """A status outside 100-599 fails validation."""
        with pytest.raises(ProblemDetailsValidationError) as exc_info:
            build_problem_details(
                problem_type="https://fmtforge.dev/problems/runtime-error",
                title="Error",
                status=42,
                detail="x",
                instance="urn:fmtforge:error",
            )
        assert exc_info.value.validation_errors

    def test_invalid_code_rejected(self) -> None:
        """Codes must be kebab-case."""
        with pytest.raises(ProblemDetailsValidationError):
            build_problem_details(
                problem_type="https://fmtforge.dev/problems/runtime-error",
                title="Error",
                status=500,
                detail="x",
                instance="urn:fmtforge:error",
                code="Not_Kebab",
            )


class TestValidateProblemDetails:
    """Tests for ``validate_problem_details``."""

    def test_unknown_member_rejected(self) -> None:
        """Members outside the schema are rejected."""
        payload = {
            "type": "https://fmtforge.dev/problems/runtime-error",
            "title": "Error",
            "status": 500,
            "detail": "x",
            "instance": "urn:fmtforge:error",
            "surprise": True,
        }
        with pytest.raises(ProblemDetailsValidationError):
            validate_problem_details(payload)

    def test_missing_member_rejected(self) -> None:
        """Required members must be present."""
        with pytest.raises(ProblemDetailsValidationError, match="instance"):
            validate_problem_details(
                {
                    "type": "https://fmtforge.dev/problems/runtime-error",
                    "title": "Error",
                    "status": 500,
                    "detail": "x",
                }
            )


class TestProblemFromException:
    """Tests for ``problem_from_exception`` and rendering."""

    def test_exception_type_recorded(self) -> None:
        """The exception type lands in the extensions."""
        problem = problem_from_exception(
            ValueError("bad value"),
            problem_type="https://fmtforge.dev/problems/runtime-error",
            title="Unexpected error",
            status=500,
            instance="urn:fmtforge:error",
        )
        assert problem["detail"] == "bad value"
        assert problem["extensions"] == {"exception_type": "ValueError"}

    def test_render_is_sorted_json(self) -> None:
        """Rendering produces indented JSON with sorted keys."""
        problem = build_problem_details(
            problem_type="https://fmtforge.dev/problems/runtime-error",
            title="Error",
            status=500,
            detail="x",
            instance="urn:fmtforge:error",
        )
        rendered = render_problem(problem)
        assert json.loads(rendered) == problem
        assert rendered.index('"detail"') < rendered.index('"type"')
