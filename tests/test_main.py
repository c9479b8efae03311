# tests/test_main.py
"""Tests for the command-line interface."""

import json
import logging

import pytest

from msgkeys import __version__
from msgkeys.main import EXIT_ERROR, EXIT_INFRA, EXIT_OK, main
from tests.conftest import class_with_keys, write_class


@pytest.fixture(autouse=True)
def _reset_cli_logging():
    yield
    root = logging.getLogger("msgkeys")
    for handler in list(root.handlers):
        if getattr(handler, "_msgkeys_cli", False):
            root.removeHandler(handler)


@pytest.fixture
def classes_dir(tmp_path):
    def make(keys):
        directory = tmp_path / "classes"
        write_class(directory, class_with_keys(keys))
        return str(directory)
    return make


class TestValidate:

    def test_ok(self, classes_dir, messages_file, capsys):
        rc = main(["validate", classes_dir(["greeting.hello", "greeting.bye"]),
                   "-m", str(messages_file)])
        assert rc == EXIT_OK
        assert capsys.readouterr().out == "OK: 2 keys used, 3 declared\n"

    def test_missing_key(self, classes_dir, messages_file, capsys):
        rc = main(["validate", classes_dir(["greeting.hello", "greeting.bye", "greeting.nope"]),
                   "-m", str(messages_file)])
        assert rc == EXIT_ERROR
        assert "Missing message keys in YAML: greeting.nope" in capsys.readouterr().out

    def test_unused_key_strict_and_lenient(self, classes_dir, messages_file, capsys):
        classes = classes_dir(["greeting.hello"])
        assert main(["validate", classes, "-m", str(messages_file)]) == EXIT_ERROR
        assert "Unused message keys in YAML: greeting.bye" in capsys.readouterr().out

        assert main(["validate", classes, "-m", str(messages_file), "--lenient"]) == EXIT_OK
        assert capsys.readouterr().out == "OK: 1 keys used, 3 declared, 1 unused\n"

    def test_always_used(self, classes_dir, messages_file):
        rc = main(["validate", classes_dir(["greeting.hello"]), "-m", str(messages_file),
                   "--always-used", "greeting.bye"])
        assert rc == EXIT_OK

    def test_prefix_option(self, tmp_path, classes_dir, capsys):
        messages = tmp_path / "messages.yml"
        messages.write_text("demo:\n  greeting:\n    hello: Hi\n", encoding="utf-8")
        rc = main(["validate", classes_dir(["greeting.hello"]), "-m", str(messages),
                   "--prefix", "demo."])
        assert rc == EXIT_OK
        assert capsys.readouterr().out.startswith("OK: 1 keys used")

    def test_config_file(self, tmp_path, classes_dir, messages_file):
        config = tmp_path / "msgkeys.yml"
        config.write_text(
            "msgkeys:\n"
            f"  messagesFile: {messages_file}\n"
            "  failOnUnusedKeys: false\n",
            encoding="utf-8",
        )
        rc = main(["validate", classes_dir(["greeting.hello"]), "-c", str(config)])
        assert rc == EXIT_OK

    def test_json_report(self, classes_dir, messages_file, capsys):
        rc = main(["validate", classes_dir(["greeting.hello", "greeting.bye"]),
                   "-m", str(messages_file), "-f", "json"])
        assert rc == EXIT_OK
        report = json.loads(capsys.readouterr().out)
        assert report["ok"] is True
        assert report["extracted"] == ["greeting.bye", "greeting.hello"]
        assert report["declared"] == 3

    def test_no_message_files(self, tmp_path, classes_dir):
        rc = main(["validate", classes_dir([]), "-m", str(tmp_path / "missing.yml")])
        assert rc == EXIT_INFRA

    def test_broken_message_file(self, tmp_path, classes_dir):
        bad = tmp_path / "messages.yml"
        bad.write_text("a: [\n", encoding="utf-8")
        assert main(["validate", classes_dir([]), "-m", str(bad)]) == EXIT_INFRA


class TestOtherCommands:

    def test_keys(self, classes_dir, capsys):
        rc = main(["keys", classes_dir(["b.key", "a.key", "not a key"])])
        assert rc == EXIT_OK
        assert capsys.readouterr().out == "a.key\nb.key\n"

    def test_keys_json(self, classes_dir, capsys):
        rc = main(["keys", classes_dir(["a.key"]), "--format", "json"])
        assert rc == EXIT_OK
        assert json.loads(capsys.readouterr().out) == {"keys": ["a.key"], "diagnostics": []}

    def test_flatten(self, messages_file, capsys):
        assert main(["flatten", str(messages_file)]) == EXIT_OK
        assert capsys.readouterr().out == "greeting.bye\ngreeting.hello\nprefix\n"

    def test_flatten_missing(self, tmp_path):
        assert main(["flatten", str(tmp_path / "x.yml")]) == EXIT_INFRA

    def test_no_command(self, capsys):
        assert main([]) == EXIT_INFRA
        assert "usage" in capsys.readouterr().err

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--version"])
        assert exc_info.value.code == 0
        assert __version__ in capsys.readouterr().out


class TestCfg:

    @pytest.fixture
    def class_file(self, tmp_path):
        return str(write_class(tmp_path, class_with_keys(["greeting.hello"])))

    def test_text_summary(self, class_file, capsys):
        assert main(["cfg", class_file, "send"]) == EXIT_OK
        lines = capsys.readouterr().out.splitlines()
        assert lines[0].startswith("CFG(method='send()V', instructions=")
        assert any(" ldc " in line for line in lines)
        assert lines[-1].split()[1] == "return"

    def test_dot_by_signature(self, class_file, capsys):
        assert main(["cfg", class_file, "send()V", "-f", "dot"]) == EXIT_OK
        out = capsys.readouterr().out
        assert out.startswith("digraph CFG {")
        assert 'label="send()V";' in out

    def test_unknown_method(self, class_file, capsys):
        assert main(["cfg", class_file, "nope"]) == EXIT_ERROR
        assert capsys.readouterr().out == ""

    def test_unreadable_class(self, tmp_path):
        assert main(["cfg", str(tmp_path / "Missing.class"), "send"]) == EXIT_INFRA
        bad = tmp_path / "Bad.class"
        bad.write_bytes(b"\xca\xfe")
        assert main(["cfg", str(bad), "send"]) == EXIT_INFRA
