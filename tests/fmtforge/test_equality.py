"""Tests for equality snapshots and file signatures."""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path

import pytest
from pydantic import BaseModel, ConfigDict

from fmtforge.equality import EqualityState, FileSignature, normalize_value
from fmtforge_common.errors import ConfigurationError, ResolutionError


class _Style(Enum):
    GOOGLE = "google"
    LLVM = "llvm"


class _Options(BaseModel):
    model_config = ConfigDict(frozen=True)

    width: int = 80
    style: _Style = _Style.GOOGLE


class TestEqualityState:
    """Tests for EqualityState encoding."""

    def test_identical_fields_encode_equal(self) -> None:
        """States built separately from identical fields are equal."""
        first = EqualityState.of(version="24.1.0", options=_Options(), files=[Path("a.py")])
        second = EqualityState.of(version="24.1.0", options=_Options(), files=[Path("a.py")])
        assert first.encode() == second.encode()
        assert first == second
        assert hash(first) == hash(second)
        assert first.digest() == second.digest()

    @pytest.mark.parametrize(
        ("left", "right"),
        [
            ({"version": "24.1.0"}, {"version": "24.2.0"}),
            ({"options": _Options(width=80)}, {"options": _Options(width=100)}),
            ({"options": _Options(style=_Style.GOOGLE)}, {"options": _Options(style=_Style.LLVM)}),
            ({"flag": True}, {"flag": 1}),
            ({"ratio": 1.0}, {"ratio": 1}),
            ({"args": ["-q", "-"]}, {"args": ["-", "-q"]}),
        ],
    )
    def test_single_difference_changes_encoding(self, left: dict[str, object], right: dict[str, object]) -> None:
        """Changing one field changes the encoding."""
        assert EqualityState.of(**left).encode() != EqualityState.of(**right).encode()

    def test_field_order_matters(self) -> None:
        """Fields are ordered."""
        assert EqualityState.of(a=1, b=2) != EqualityState.of(b=2, a=1)

    def test_mappings_and_sets_are_sorted(self) -> None:
        """Mapping and set order do not affect the encoding."""
        first = EqualityState.of(options={"b": 1, "a": 2}, tags={"y", "x"})
        second = EqualityState.of(options={"a": 2, "b": 1}, tags={"x", "y"})
        assert first.encode() == second.encode()

    def test_unsupported_type_rejected(self) -> None:
        """Live objects cannot take part in equality."""
        with pytest.raises(ConfigurationError, match="unsupported type object"):
            EqualityState.of(handle=object()).encode()

    def test_non_string_mapping_key_rejected(self) -> None:
        """Mapping keys must be strings."""
        with pytest.raises(ConfigurationError, match="non-string mapping key"):
            normalize_value({1: "x"}, "options")

    def test_duplicate_field_rejected(self) -> None:
        """A field name may appear once."""
        with pytest.raises(ConfigurationError, match="Duplicate"):
            EqualityState.from_pairs([("a", 1), ("a", 2)])

    def test_with_fields_and_get(self) -> None:
        """Fields can be appended and read back."""
        state = EqualityState.of(a=1).with_fields(b="two")
        assert state.get("b") == "two"
        assert state.get("missing", "default") == "default"

    def test_equality_fields_protocol(self) -> None:
        """Objects exposing ``equality_fields`` are encoded through it."""

        class _Requirement:
            def __init__(self, version: str) -> None:
                self.version = version

            def equality_fields(self) -> dict[str, object]:
                return {"version": self.version}

        assert EqualityState.of(tool=_Requirement("1")) == EqualityState.of(tool=_Requirement("1"))
        assert EqualityState.of(tool=_Requirement("1")) != EqualityState.of(tool=_Requirement("2"))


class TestFileSignature:
    """Tests for FileSignature."""

    def test_signature_tracks_content(self, tmp_path: Path) -> None:
        """Rewriting a file changes its signature."""
        target = tmp_path / "config.toml"
        target.write_text("a = 1\n", encoding="utf-8")
        before = FileSignature.sign([target])
        target.write_text("a = 100\n", encoding="utf-8")
        os.utime(target, ns=(0, 1_000_000_000))
        after = FileSignature.sign([target])
        assert EqualityState.of(files=before) != EqualityState.of(files=after)

    def test_duplicates_dropped(self, tmp_path: Path) -> None:
        """The same file listed twice is signed once."""
        target = tmp_path / "a.txt"
        target.write_text("x", encoding="utf-8")
        signature = FileSignature.sign([target, tmp_path / "." / "a.txt"])
        assert len(signature.entries) == 1
        assert signature.only_file() == target.resolve()

    def test_ignore_order(self, tmp_path: Path) -> None:
        """``ignore_order`` sorts entries by path."""
        first = tmp_path / "b.txt"
        second = tmp_path / "a.txt"
        first.write_text("b", encoding="utf-8")
        second.write_text("a", encoding="utf-8")
        ordered = FileSignature.sign([first, second])
        unordered = FileSignature.sign([first, second], ignore_order=True)
        assert ordered.files == (first.resolve(), second.resolve())
        assert unordered.files == (second.resolve(), first.resolve())

    def test_missing_file(self, tmp_path: Path) -> None:
        """Signing a missing file is a resolution failure."""
        with pytest.raises(ResolutionError, match="does not exist"):
            FileSignature.sign([tmp_path / "missing.txt"])

    def test_only_file_requires_one(self, tmp_path: Path) -> None:
        """``only_file`` rejects an empty signature."""
        with pytest.raises(ConfigurationError):
            FileSignature.sign([]).only_file()
