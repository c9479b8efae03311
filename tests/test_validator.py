# tests/test_validator.py
"""Tests for the declared-vs-used key comparison."""

import logging

import pytest

from msgkeys.errors import MissingKeysError, UnusedKeysError
from msgkeys.validator import validate_keys


class TestValidateKeys:

    def test_matching_sets(self):
        result = validate_keys({"a.b", "c.d"}, ["c.d", "a.b"])
        assert result.ok
        assert result.missing == [] and result.unused == []
        result.raise_for_status()

    def test_missing_keys_always_fail(self):
        result = validate_keys({"a.b"}, {"a.b", "z.z", "m.m"}, strict=False)
        assert not result.ok
        with pytest.raises(MissingKeysError) as exc_info:
            result.raise_for_status()
        assert exc_info.value.keys == ("m.m", "z.z")
        assert exc_info.value.message == "Missing message keys in YAML: m.m, z.z"

    def test_missing_reported_before_unused(self):
        result = validate_keys({"old.key"}, {"new.key"})
        with pytest.raises(MissingKeysError):
            result.raise_for_status()

    def test_unused_keys_fail_in_strict_mode(self):
        result = validate_keys({"a.b", "old.key"}, {"a.b"})
        with pytest.raises(UnusedKeysError) as exc_info:
            result.raise_for_status()
        assert exc_info.value.keys == ("old.key",)

    def test_unused_keys_warn_in_lenient_mode(self, caplog):
        result = validate_keys({"a.b", "old.key"}, {"a.b"}, strict=False)
        assert result.ok
        with caplog.at_level(logging.WARNING, logger="msgkeys.validator"):
            result.raise_for_status()
        assert "Unused message keys in YAML: old.key" in caplog.text

    def test_always_used_keys(self):
        result = validate_keys({"prefix", "a.b"}, {"a.b"}, always_used={"prefix"})
        assert result.ok
        assert result.unused == []

    def test_output_is_sorted(self):
        result = validate_keys(["z", "b", "a"], [], strict=True)
        assert result.unused == ["a", "b", "z"]
        assert result.to_dict() == {
            "ok": False,
            "strict": True,
            "missing": [],
            "unused": ["a", "b", "z"],
        }
