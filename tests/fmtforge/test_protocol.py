"""Tests for the worker wire protocol."""

from __future__ import annotations

from pathlib import Path

import pytest

from fmtforge.worker.protocol import (
    FormatRequest,
    FormatResponse,
    decode_request,
    decode_response,
    encode_request,
    encode_response,
    parse_entry_point,
    unwrap_response,
)
from fmtforge_common.errors import ConfigurationError, RuntimeFormattingError, WorkerEnvironmentError


class TestCodec:
    """Tests for request and response encoding."""

    def test_request_wire_names(self) -> None:
        """Requests use the documented field names."""
        payload = encode_request(FormatRequest(text="x", options={"width": 4}, file="a.py"))
        assert payload == b'{"text":"x","options":{"width":4},"file":"a.py"}'
        assert decode_request(payload) == FormatRequest(text="x", options={"width": 4}, file="a.py")

    def test_response_defaults(self) -> None:
        """Missing optional response fields decode as None."""
        response = decode_response('{"ok": false, "message": "bad"}')
        assert response == FormatResponse(ok=False, message="bad")
        assert decode_response(encode_response(response)) == response

    def test_malformed_payload(self) -> None:
        """Undecodable payloads mean the worker is broken."""
        with pytest.raises(WorkerEnvironmentError, match="Malformed worker response"):
            decode_response(b"<html>")
        with pytest.raises(WorkerEnvironmentError, match="Malformed format request"):
            decode_request(b'{"options": {}}')


class TestUnwrapResponse:
    """Tests for unwrap_response."""

    def test_success(self) -> None:
        """Successful responses yield their text."""
        assert unwrap_response(FormatResponse(ok=True, text="done"), step="s") == "done"

    def test_rejection(self) -> None:
        """Rejections carry the step, path and line."""
        response = FormatResponse(ok=False, message="SyntaxError: bad", line=7)
        with pytest.raises(RuntimeFormattingError, match="SyntaxError: bad") as exc_info:
            unwrap_response(response, step="black", path=Path("a.py"))
        assert exc_info.value.context == {"line": 7, "step": "black", "path": "a.py"}

    def test_success_without_text(self) -> None:
        """A success without output is a broken worker."""
        with pytest.raises(WorkerEnvironmentError):
            unwrap_response(FormatResponse(ok=True), step="s")


class TestParseEntryPoint:
    """Tests for parse_entry_point."""

    def test_valid(self) -> None:
        """Module and attribute are split."""
        assert parse_entry_point("pkg.mod:run") == ("pkg.mod", "run")

    @pytest.mark.parametrize("entry_point", ["pkg.mod", ":run", "pkg.mod:", ""])
    def test_invalid(self, entry_point: str) -> None:
        """Both parts are required."""
        with pytest.raises(ConfigurationError):
            parse_entry_point(entry_point)
