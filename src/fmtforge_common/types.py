"""JSON-compatible type aliases shared across fmtforge."""

from __future__ import annotations

__all__ = [
    "JsonObject",
    "JsonPrimitive",
    "JsonValue",
]

type JsonPrimitive = str | int | float | bool | None

type JsonValue = JsonPrimitive | dict[str, JsonValue] | list[JsonValue]

type JsonObject = dict[str, JsonValue]
