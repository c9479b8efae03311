# tests/test_key_documents.py
"""Tests for loading and flattening key documents."""

import pytest

from msgkeys.errors import ConfigurationError, KeyDocumentError
from msgkeys.key_documents import (
    declared_keys,
    flatten,
    load_key_documents,
    parse_key_document,
    read_key_document,
)


class TestFlatten:

    def test_nested_paths_include_intermediate_mappings(self):
        entries = flatten({"a": {"b": "x", "c": {"d": "y"}}})
        assert list(entries) == ["a", "a.b", "a.c", "a.c.d"]
        assert entries["a.c.d"] == "y"

    def test_odd_keys(self):
        entries = flatten({True: "yes", None: "skipped", 3: "three"})
        assert set(entries) == {"true", "3"}

    def test_non_mapping_root(self):
        assert flatten(["a", "b"]) == {}
        assert flatten(None) == {}


class TestParse:

    def test_only_string_values_are_declared(self):
        doc = parse_key_document(
            "prefix: '[Demo] '\n"
            "menu:\n"
            "  title: Menu\n"
            "  size: 27\n"
            "  lore: [a, b]\n"
            "  empty:\n"
        )
        assert doc.declared_keys == {"prefix", "menu.title"}
        assert len(doc) == 6

    def test_empty_document(self):
        assert parse_key_document("").declared_keys == set()

    def test_invalid_yaml(self):
        with pytest.raises(KeyDocumentError) as exc_info:
            parse_key_document("a: [unclosed\n", path="bad.yml")
        assert exc_info.value.message == "Failed to parse YAML file: bad.yml"
        assert exc_info.value.path == "bad.yml"

    def test_read_records_absolute_path(self, messages_file):
        doc = read_key_document(messages_file)
        assert doc.path == str(messages_file.absolute())
        assert doc.declared_keys == {"prefix", "greeting.hello", "greeting.bye"}


class TestLoad:

    def test_missing_files_are_skipped(self, tmp_path, messages_file):
        extra = tmp_path / "extra.yml"
        extra.write_text("help:\n  header: Help\n", encoding="utf-8")
        docs = load_key_documents([tmp_path / "nope.yml", messages_file, extra])
        assert len(docs) == 2
        assert declared_keys(docs) == {"prefix", "greeting.hello", "greeting.bye", "help.header"}

    def test_no_files_at_all(self, tmp_path):
        with pytest.raises(ConfigurationError, match="No message files found") as exc_info:
            load_key_documents([tmp_path / "nope.yml"])
        assert not isinstance(exc_info.value, KeyDocumentError)

    def test_bad_file_aborts(self, tmp_path, messages_file):
        bad = tmp_path / "bad.yml"
        bad.write_text("key: 'unterminated\n", encoding="utf-8")
        with pytest.raises(KeyDocumentError, match="Failed to parse YAML file"):
            load_key_documents([messages_file, bad])
