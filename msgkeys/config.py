"""
msgkeys.config
==============

Run configuration and the end-to-end validation entry point.

A configuration file is YAML.  Settings may sit at the top level or under a
``msgkeys:`` section, and may be spelled in snake_case or camelCase::

    msgkeys:
      messagesFile: src/main/resources/messages.yml
      additionalMessagesFiles: [src/main/resources/extra.yml]
      classesDirs: [build/classes/java/main]
      failOnUnusedKeys: false
      alwaysUsedKeys: [prefix, help.header]
      messageKeyCallOwners: [com.example.Messages]
      messageKeyCallMethods: [getMessage, getRaw]
      messageKeyPrefix: ""

Relative paths are kept as written; they are resolved against the working
directory when the files are opened.
"""

from __future__ import annotations

import dataclasses
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple, Union

import yaml

from msgkeys.errors import ConfigurationError, Diagnostic
from msgkeys.key_documents import declared_keys, load_key_documents
from msgkeys.key_extractor import KeyExtractor
from msgkeys.scanner import ScanResult, collect_class_inputs, scan_classes
from msgkeys.validator import ValidationResult, validate_keys

logger = logging.getLogger(__name__)

CONFIG_SECTION = "msgkeys"
DEFAULT_MESSAGES_FILE = "src/main/resources/messages.yml"


# ---------------------------------------------------------------------------
# ValidationConfig
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ValidationConfig:
    """Settings for one validation run.

    Attributes
    ----------
    messages_file : str
        Primary key document.
    additional_messages_files : tuple of str
        Further key documents; their keys are unioned with the primary's.
    classes_dirs : tuple of str
        Directories, ``.class`` files or archives to scan.
    fail_on_unused_keys : bool
        Strict mode: unused keys fail the run instead of warning.
    always_used_keys : frozenset of str
        Keys never reported as unused.
    message_key_call_owners : frozenset of str
        Owner allow-list for wrapper call sites (dotted or slashed names).
    message_key_call_methods : frozenset of str
        Method allow-list for wrapper call sites.
    message_key_prefix : str
        Prefix prepended to extracted keys that do not already carry it.
    jobs : int
        Worker threads for scanning.
    """

    messages_file: str = DEFAULT_MESSAGES_FILE
    additional_messages_files: Tuple[str, ...] = ()
    classes_dirs: Tuple[str, ...] = ()
    fail_on_unused_keys: bool = True
    always_used_keys: FrozenSet[str] = frozenset({"prefix"})
    message_key_call_owners: FrozenSet[str] = frozenset()
    message_key_call_methods: FrozenSet[str] = frozenset({"getMessage", "getRaw"})
    message_key_prefix: str = ""
    jobs: int = 1

    @property
    def message_files(self) -> List[str]:
        return [self.messages_file, *self.additional_messages_files]

    def merged(self, **overrides: Any) -> "ValidationConfig":
        """Return a copy with *overrides* applied; ``None`` values are ignored.

        Raises
        ------
        ConfigurationError
            On an unknown setting or a value of the wrong type.
        """
        changes = {}
        for raw_name, value in overrides.items():
            if value is None:
                continue
            name = _field_name(raw_name)
            changes[name] = _coerce(name, value)
        return dataclasses.replace(self, **changes)

    def create_extractor(self) -> KeyExtractor:
        return KeyExtractor.from_allow_lists(
            owners=self.message_key_call_owners,
            methods=self.message_key_call_methods,
            prefix=self.message_key_prefix,
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if isinstance(value, frozenset):
                value = sorted(value)
            elif isinstance(value, tuple):
                value = list(value)
            out[f.name] = value
        return out


_FIELDS = {f.name: f for f in dataclasses.fields(ValidationConfig)}
_LIST_FIELDS = {"additional_messages_files", "classes_dirs"}
_SET_FIELDS = {"always_used_keys", "message_key_call_owners", "message_key_call_methods"}
_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _field_name(raw: str) -> str:
    name = _CAMEL_RE.sub("_", raw.replace("-", "_")).lower()
    if name not in _FIELDS:
        raise ConfigurationError(f"unknown configuration setting {raw!r}")
    return name


def _string_items(name: str, value: Any) -> List[str]:
    if isinstance(value, (str, Path)):
        return [str(value)]
    if isinstance(value, (list, tuple, set, frozenset)):
        items = []
        for item in value:
            if not isinstance(item, (str, Path)):
                raise ConfigurationError(f"{name}: expected strings, got {item!r}")
            items.append(str(item))
        return items
    raise ConfigurationError(f"{name}: expected a list of strings, got {value!r}")


def _coerce(name: str, value: Any) -> Any:
    if name in _LIST_FIELDS:
        return tuple(_string_items(name, value))
    if name in _SET_FIELDS:
        return frozenset(_string_items(name, value))
    if name == "fail_on_unused_keys":
        if not isinstance(value, bool):
            raise ConfigurationError(f"{name}: expected true/false, got {value!r}")
        return value
    if name == "jobs":
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ConfigurationError(f"{name}: expected a positive integer, got {value!r}")
        return value
    if not isinstance(value, (str, Path)):
        raise ConfigurationError(f"{name}: expected a string, got {value!r}")
    return str(value)


def config_from_mapping(data: Mapping[str, Any]) -> ValidationConfig:
    """Build a configuration from a (possibly sectioned) mapping."""
    if CONFIG_SECTION in data:
        section = data[CONFIG_SECTION]
        if section is None:
            section = {}
        if not isinstance(section, Mapping):
            raise ConfigurationError(f"'{CONFIG_SECTION}' must be a mapping")
        data = section
    return ValidationConfig().merged(**{str(k): v for k, v in data.items()})


def load_config(path: Union[str, Path]) -> ValidationConfig:
    """Read a YAML configuration file.

    Raises
    ------
    ConfigurationError
        If the file is missing, is not valid YAML, is not a mapping, or
        contains unknown settings.
    """
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"cannot read configuration file {p}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"invalid YAML in configuration file {p}") from exc
    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"configuration file {p} must contain a mapping")
    config = config_from_mapping(data)
    logger.debug("Loaded configuration from %s", p)
    return config


# ---------------------------------------------------------------------------
# End-to-end run
# ---------------------------------------------------------------------------

@dataclass
class ValidationReport:
    """Everything a validation run produced."""

    result: ValidationResult
    declared: Set[str] = field(default_factory=set)
    extracted: Set[str] = field(default_factory=set)
    scan: ScanResult = field(default_factory=ScanResult)
    documents: List[str] = field(default_factory=list)

    @property
    def diagnostics(self) -> List[Diagnostic]:
        return self.scan.diagnostics

    def to_dict(self) -> Dict[str, Any]:
        out = self.result.to_dict()
        out.update({
            "declared": len(self.declared),
            "extracted": sorted(self.extracted),
            "documents": list(self.documents),
            "classes_scanned": self.scan.classes_scanned,
            "classes_failed": self.scan.classes_failed,
            "methods_analyzed": self.scan.methods_analyzed,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        })
        return out


def run_validation(config: ValidationConfig) -> ValidationReport:
    """Load key documents, scan classes and compare the key sets.

    The failure policy is *not* applied; call
    ``report.result.raise_for_status()``.

    Raises
    ------
    ConfigurationError
        If no key document exists or one cannot be parsed.
    """
    documents = load_key_documents(config.message_files)
    declared = declared_keys(documents)
    logger.info("Declared %d keys in %d message files", len(declared), len(documents))

    diagnostics: List[Diagnostic] = []
    inputs = collect_class_inputs(config.classes_dirs, diagnostics)
    if not inputs:
        logger.info("No class files to scan")
    scan = scan_classes(inputs, config.create_extractor(), jobs=config.jobs)
    scan.diagnostics[:0] = diagnostics

    result = validate_keys(
        declared,
        scan.keys,
        always_used=config.always_used_keys,
        strict=config.fail_on_unused_keys,
    )
    return ValidationReport(
        result=result,
        declared=declared,
        extracted=set(scan.keys),
        scan=scan,
        documents=[d.path for d in documents],
    )
