#!/usr/bin/env python3
"""msgkeys/main.py — CLI entry-point for message-key validation.

Usage examples
--------------
    # Validate keys used in compiled classes against messages.yml
    python -m msgkeys validate build/classes/java/main \\
        --messages src/main/resources/messages.yml

    # Same, with settings from a YAML file and a wrapper call site
    python -m msgkeys validate --config msgkeys.yml \\
        --owner com.example.Messages --method getMessage --lenient

    # List the keys the analyzer can prove, one per line
    python -m msgkeys keys build/libs/plugin.jar

    # List the keys declared by key documents
    python -m msgkeys flatten src/main/resources/messages.yml

    # Dump the control flow graph of one method as Graphviz DOT
    python -m msgkeys cfg build/classes/com/example/Demo.class send -f dot

Exit codes
----------
    0   Success (keys match, or only warnings).
    1   Validation failure (missing keys, or unused keys in strict mode);
        for ``cfg``, no method of that name.
    2   Configuration / infrastructure failure (no message files, bad
        YAML, unreadable config or class file).

The module doubles as ``python -m msgkeys`` via the companion
``msgkeys/__main__.py`` which simply calls :func:`main`.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import textwrap
from typing import List, Optional, Sequence, TextIO

from msgkeys import __version__
from msgkeys.bytecode import decode_method
from msgkeys.classfile import read_class_file
from msgkeys.config import ValidationConfig, load_config, run_validation
from msgkeys.ctrlflow_graph import build_cfg, cfg_summary
from msgkeys.errors import (
    ClassFormatError,
    ConfigurationError,
    ValidationFailure,
    format_diagnostics,
)
from msgkeys.key_documents import declared_keys, load_key_documents
from msgkeys.scanner import collect_class_inputs, scan_classes

_log = logging.getLogger("msgkeys")

# Exit codes ----------------------------------------------------------------

EXIT_OK: int = 0
EXIT_ERROR: int = 1
EXIT_INFRA: int = 2


# ===========================================================================
# Utility helpers
# ===========================================================================

def _configure_logging(verbosity: int) -> None:
    """Set up the root ``msgkeys`` logger.

    Parameters
    ----------
    verbosity:
        0 → WARNING, 1 → INFO, 2+ → DEBUG.
    """
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    root = logging.getLogger("msgkeys")
    root.setLevel(level)
    if not any(getattr(h, "_msgkeys_cli", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s [%(levelname)-5.5s] %(name)s: %(message)s",
                datefmt="%H:%M:%S",
            )
        )
        handler._msgkeys_cli = True  # type: ignore[attr-defined]
        root.addHandler(handler)


def _config_from_args(args: argparse.Namespace) -> ValidationConfig:
    """Start from ``--config`` (or defaults) and apply command-line overrides."""
    config = load_config(args.config) if args.config else ValidationConfig()
    messages: List[str] = list(args.messages or [])
    overrides = {
        "classes_dirs": args.classes or None,
        "message_key_prefix": args.prefix,
        "jobs": args.jobs,
        "fail_on_unused_keys": args.strict,
    }
    if messages:
        overrides["messages_file"] = messages[0]
        overrides["additional_messages_files"] = messages[1:]
    if args.always_used:
        overrides["always_used_keys"] = config.always_used_keys | set(args.always_used)
    if args.owner:
        overrides["message_key_call_owners"] = config.message_key_call_owners | set(args.owner)
    if args.method:
        overrides["message_key_call_methods"] = config.message_key_call_methods | set(args.method)
    return config.merged(**overrides)


def _write_lines(lines: Sequence[str], stream: TextIO) -> None:
    for line in lines:
        stream.write(line + "\n")


# ===========================================================================
# Subcommands
# ===========================================================================

def cmd_validate(args: argparse.Namespace) -> int:
    """Handle ``msgkeys validate``."""
    stream = sys.stdout
    try:
        config = _config_from_args(args)
        report = run_validation(config)
    except ConfigurationError as exc:
        _log.error("%s", exc)
        return EXIT_INFRA

    if args.format == "json":
        stream.write(json.dumps(report.to_dict(), indent=2, sort_keys=True) + "\n")
    elif report.diagnostics:
        sys.stderr.write(format_diagnostics(report.diagnostics) + "\n")

    try:
        report.result.raise_for_status()
    except ValidationFailure as exc:
        if args.format != "json":
            stream.write(exc.message + "\n")
        _log.error("%s", exc)
        return EXIT_ERROR

    if args.format != "json":
        stream.write(
            f"OK: {len(report.extracted)} keys used, {len(report.declared)} declared"
            + (f", {len(report.result.unused)} unused" if report.result.unused else "")
            + "\n"
        )
    return EXIT_OK


def cmd_keys(args: argparse.Namespace) -> int:
    """Handle ``msgkeys keys``."""
    try:
        config = _config_from_args(args)
    except ConfigurationError as exc:
        _log.error("%s", exc)
        return EXIT_INFRA
    diagnostics = []
    inputs = collect_class_inputs(config.classes_dirs, diagnostics)
    scan = scan_classes(inputs, config.create_extractor(), jobs=config.jobs)
    if args.format == "json":
        payload = {
            "keys": sorted(scan.keys),
            "diagnostics": [d.to_dict() for d in diagnostics + scan.diagnostics],
        }
        sys.stdout.write(json.dumps(payload, indent=2) + "\n")
    else:
        _write_lines(sorted(scan.keys), sys.stdout)
    return EXIT_OK


def cmd_flatten(args: argparse.Namespace) -> int:
    """Handle ``msgkeys flatten``."""
    try:
        documents = load_key_documents(args.files)
    except ConfigurationError as exc:
        _log.error("%s", exc)
        return EXIT_INFRA
    keys = sorted(declared_keys(documents))
    if args.format == "json":
        sys.stdout.write(json.dumps({"keys": keys}, indent=2) + "\n")
    else:
        _write_lines(keys, sys.stdout)
    return EXIT_OK


def cmd_cfg(args: argparse.Namespace) -> int:
    """Handle ``msgkeys cfg``."""
    try:
        cls = read_class_file(args.class_file)
        methods = [
            m for m in cls.methods_with_code()
            if args.method in (m.name, m.signature)
        ]
        if not methods:
            _log.error("No method %r with code in %s", args.method, cls.name)
            return EXIT_ERROR
        dumps = []
        for method in methods:
            cfg = build_cfg(decode_method(method), method.exception_table,
                            name=method.signature)
            dumps.append(cfg.to_dot() if args.format == "dot" else cfg_summary(cfg))
    except (OSError, ClassFormatError) as exc:
        _log.error("%s", exc)
        return EXIT_INFRA
    _write_lines(dumps, sys.stdout)
    return EXIT_OK


# ===========================================================================
# Argument parser construction
# ===========================================================================

def _build_parser() -> argparse.ArgumentParser:
    """Construct the full CLI argument parser with subcommands."""

    parser = argparse.ArgumentParser(
        prog="msgkeys",
        description=(
            "Validate that message keys declared in YAML match the keys\n"
            "referenced as string constants from compiled JVM classes."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            examples:
              msgkeys validate build/classes --messages messages.yml
              msgkeys keys build/libs/plugin.jar --prefix myplugin.
              msgkeys flatten messages.yml
              msgkeys cfg build/classes/com/example/Demo.class send -f dot
        """),
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v info, -vv debug).",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        metavar="<command>",
    )

    # Shared argument groups (reusable) ------------------------------------

    def _add_format_arg(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "-f", "--format",
            choices=["text", "json"],
            default="text",
            help="Output format (default: text).",
        )

    def _add_scan_args(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "classes",
            nargs="*",
            metavar="CLASSES",
            help="Class directories, .class files or .jar/.zip archives.",
        )
        p.add_argument(
            "-c", "--config",
            metavar="FILE",
            default=None,
            help="YAML configuration file.",
        )
        g = p.add_argument_group("call sites")
        g.add_argument(
            "--prefix",
            default=None,
            metavar="P",
            help="Message-key prefix.",
        )
        g.add_argument(
            "--owner",
            action="append",
            metavar="CLASS",
            help="Wrapper owner class (repeatable; dots or slashes).",
        )
        g.add_argument(
            "--method",
            action="append",
            metavar="NAME",
            help="Wrapper method name (repeatable).",
        )
        p.add_argument(
            "-j", "--jobs",
            type=int,
            default=None,
            metavar="N",
            help="Scan classes on N threads.",
        )

    # --- validate ----------------------------------------------------------
    p_validate = subparsers.add_parser(
        "validate",
        help="Compare declared keys with keys used in bytecode.",
    )
    _add_scan_args(p_validate)
    p_validate.add_argument(
        "-m", "--messages",
        action="append",
        metavar="FILE",
        help="Key document (repeatable; the first replaces the default).",
    )
    p_validate.add_argument(
        "--always-used",
        action="append",
        metavar="KEY",
        help="Key never reported as unused (repeatable).",
    )
    strictness = p_validate.add_mutually_exclusive_group()
    strictness.add_argument(
        "--strict",
        dest="strict",
        action="store_const",
        const=True,
        default=None,
        help="Fail on unused keys (default).",
    )
    strictness.add_argument(
        "--lenient",
        dest="strict",
        action="store_const",
        const=False,
        help="Only warn about unused keys.",
    )
    _add_format_arg(p_validate)
    p_validate.set_defaults(func=cmd_validate)

    # --- keys --------------------------------------------------------------
    p_keys = subparsers.add_parser(
        "keys",
        help="Print the message keys found in bytecode.",
    )
    _add_scan_args(p_keys)
    _add_format_arg(p_keys)
    p_keys.set_defaults(func=cmd_keys, messages=None, always_used=None, strict=None)

    # --- flatten -----------------------------------------------------------
    p_flatten = subparsers.add_parser(
        "flatten",
        help="Print the keys declared by YAML key documents.",
    )
    p_flatten.add_argument("files", nargs="+", metavar="FILE")
    _add_format_arg(p_flatten)
    p_flatten.set_defaults(func=cmd_flatten)

    # --- cfg ---------------------------------------------------------------
    p_cfg = subparsers.add_parser(
        "cfg",
        help="Dump the control flow graph of a method.",
    )
    p_cfg.add_argument("class_file", metavar="CLASS", help="A .class file.")
    p_cfg.add_argument(
        "method",
        metavar="METHOD",
        help="Method name, or name plus descriptor such as 'send()V'.",
    )
    p_cfg.add_argument(
        "-f", "--format",
        choices=["text", "dot"],
        default="text",
        help="Output format (default: text).",
    )
    p_cfg.set_defaults(func=cmd_cfg)

    return parser


# ===========================================================================
# Main entry point
# ===========================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the msgkeys CLI.

    Parameters
    ----------
    argv:
        Command-line arguments.  ``None`` → ``sys.argv[1:]``.

    Returns
    -------
    int
        Exit code (see module docstring for semantics).
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    _configure_logging(args.verbose)

    # No subcommand given → print help.
    if not hasattr(args, "func"):
        parser.print_help(sys.stderr)
        return EXIT_INFRA

    try:
        return args.func(args)
    except KeyboardInterrupt:
        _log.info("Interrupted by user.")
        return 130
    except Exception as exc:
        _log.error("Unhandled exception: %s", exc, exc_info=True)
        return EXIT_INFRA


if __name__ == "__main__":
    raise SystemExit(main())
