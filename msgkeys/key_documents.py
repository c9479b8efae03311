"""
msgkeys.key_documents
=====================

Loading and flattening of the YAML documents that declare message keys.

A document such as::

    prefix: "<gray>[Demo]</gray> "
    commands:
      reload:
        done: "Reloaded."
        usage: "/demo reload"

flattens to the paths ``prefix``, ``commands``, ``commands.reload``,
``commands.reload.done`` and ``commands.reload.usage``.  Only paths whose
value is a string are *declared keys*; intermediate mappings, numbers,
lists and nulls are recorded but not declared.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Union

import yaml

from msgkeys.errors import ConfigurationError, KeyDocumentError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _key_text(raw: Any) -> str:
    # YAML booleans are spelled the way a YAML author wrote them
    if isinstance(raw, bool):
        return "true" if raw else "false"
    return str(raw)


def flatten(value: Any, prefix: str = "", out: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Flatten nested mappings into ``dotted.path → value``.

    Every mapping entry is recorded, including entries whose value is
    itself a mapping.  ``None`` keys are skipped; other non-string keys are
    converted to text.  Non-mapping roots yield nothing.
    """
    if out is None:
        out = {}
    if not isinstance(value, dict):
        return out
    for raw_key, child in value.items():
        if raw_key is None:
            continue
        key = _key_text(raw_key)
        path = f"{prefix}.{key}" if prefix else key
        out[path] = child
        flatten(child, path, out)
    return out


@dataclass
class KeyDocument:
    """One parsed key document."""

    path: str
    entries: Dict[str, Any] = field(default_factory=dict)

    @property
    def declared_keys(self) -> Set[str]:
        return {k for k, v in self.entries.items() if isinstance(v, str)}

    def __len__(self) -> int:
        return len(self.entries)


def parse_key_document(text: str, path: str = "<string>") -> KeyDocument:
    """Parse YAML *text* into a :class:`KeyDocument`.

    Raises
    ------
    KeyDocumentError
        If the text is not valid YAML.
    """
    try:
        root = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise KeyDocumentError(f"Failed to parse YAML file: {path}", path=path) from exc
    return KeyDocument(path=path, entries=flatten(root))


def read_key_document(path: PathLike) -> KeyDocument:
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise KeyDocumentError(f"Failed to read YAML file: {p}", path=str(p)) from exc
    return parse_key_document(text, path=str(p.absolute()))


def load_key_documents(paths: Iterable[PathLike]) -> List[KeyDocument]:
    """Read every existing file in *paths*.

    Paths that do not exist are skipped.

    Raises
    ------
    ConfigurationError
        If none of *paths* exists.
    KeyDocumentError
        If an existing file cannot be read or parsed.
    """
    existing: List[Path] = []
    for raw in paths:
        p = Path(raw)
        if p.is_file():
            existing.append(p)
        else:
            logger.debug("Skipping missing message file %s", p)
    if not existing:
        raise ConfigurationError(
            "No message files found. Configure messages_file / additional_messages_files."
        )
    documents = [read_key_document(p) for p in existing]
    for doc in documents:
        logger.debug("Loaded %d entries from %s", len(doc), doc.path)
    return documents


def declared_keys(documents: Iterable[KeyDocument]) -> Set[str]:
    """Union of the declared keys of *documents*."""
    keys: Set[str] = set()
    for doc in documents:
        keys |= doc.declared_keys
    return keys
