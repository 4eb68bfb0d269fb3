"""Wire types shared by every worker bridge.

Requests and responses are ``msgspec`` structs encoded as JSON. The worker
side of the protocol is implemented by stdlib-only bootstrap scripts, so the
field names below are the contract both sides agree on:

- request: ``{"text": str, "options": {...}, "file": str | null}``
- response: ``{"ok": bool, "text": str | null, "message": str | null, "line": int | null}``

A response with ``ok`` false describes a rejection of that one input; it
becomes a :class:`~fmtforge_common.errors.RuntimeFormattingError` and leaves
the worker usable. A payload that cannot be decoded means the worker itself is
broken and surfaces as a
:class:`~fmtforge_common.errors.WorkerEnvironmentError`.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import msgspec

from fmtforge_common.errors import ConfigurationError, RuntimeFormattingError, WorkerEnvironmentError

__all__ = [
    "FormatRequest",
    "FormatResponse",
    "decode_request",
    "decode_response",
    "encode_request",
    "encode_response",
    "parse_entry_point",
    "unwrap_response",
]


class FormatRequest(msgspec.Struct, frozen=True, kw_only=True):
    """One formatting request.

    Attributes
    ----------
    text : str
        Input text, already normalized to ``\\n`` line endings.
    options : dict[str, Any]
        Resolved tool options.
    file : str | None
        Path of the file being formatted, when known.
    """

    text: str
    options: dict[str, Any] = msgspec.field(default_factory=dict)
    file: str | None = None


class FormatResponse(msgspec.Struct, frozen=True, kw_only=True):
    """Outcome of one formatting request."""

    ok: bool
    text: str | None = None
    message: str | None = None
    line: int | None = None


_REQUEST_DECODER = msgspec.json.Decoder(FormatRequest)
_RESPONSE_DECODER = msgspec.json.Decoder(FormatResponse)


def parse_entry_point(entry_point: str) -> tuple[str, str]:
    """Split a worker target named as ``module:attribute``.

    Raises
    ------
    ConfigurationError
        If either part is missing.

    Examples
    --------
    >>> parse_entry_point("pkg.mod:format_text")
    ('pkg.mod', 'format_text')
    """
    module, _, attribute = entry_point.partition(":")
    if not module.strip() or not attribute.strip():
        message = f"Entry point '{entry_point}' must have the form 'module:attribute'"
        raise ConfigurationError(message)
    return module.strip(), attribute.strip()


def encode_request(request: FormatRequest) -> bytes:
    """Encode ``request`` as JSON bytes."""
    return msgspec.json.encode(request)


def decode_request(payload: bytes | str) -> FormatRequest:
    """Decode a request payload.

    Raises
    ------
    WorkerEnvironmentError
        If the payload is not a valid request.
    """
    try:
        return _REQUEST_DECODER.decode(payload)
    except msgspec.DecodeError as exc:
        message = f"Malformed format request: {exc}"
        raise WorkerEnvironmentError(message, cause=exc) from exc


def encode_response(response: FormatResponse) -> bytes:
    """Encode ``response`` as JSON bytes."""
    return msgspec.json.encode(response)


def decode_response(payload: bytes | str) -> FormatResponse:
    """Decode a response payload.

    Raises
    ------
    WorkerEnvironmentError
        If the payload is not a valid response.
    """
    try:
        return _RESPONSE_DECODER.decode(payload)
    except msgspec.DecodeError as exc:
        message = f"Malformed worker response: {exc}"
        raise WorkerEnvironmentError(message, cause=exc) from exc


def unwrap_response(response: FormatResponse, *, step: str, path: Path | None = None) -> str:
    """Return the formatted text or raise the rejection carried by ``response``.

    Raises
    ------
    RuntimeFormattingError
        If the worker rejected the input. The reported line, when present, is
        kept in the error context under ``line``.
    WorkerEnvironmentError
        If a successful response carries no text.
    """
    if response.ok:
        if response.text is None:
            message = f"Worker for '{step}' reported success without output"
            raise WorkerEnvironmentError(message)
        return response.text
    context: dict[str, object] = {}
    if response.line is not None:
        context["line"] = response.line
    raise RuntimeFormattingError(
        response.message or "worker rejected the input",
        step=step,
        path=path,
        context=context,
    )
