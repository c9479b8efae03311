"""
msgkeys.key_extractor
=====================

Finds message-key call sites in analyzed methods and extracts the keys
whose value is a proven string constant.

A call site is *interesting* when its target matches a
:class:`CallSitePattern`: either the built-in ``MessageService`` lookups or
a configured wrapper (owner allow-list × method allow-list).  For each
reachable match the designated argument's stack word is read from the
incoming frame; only a ``Constant`` that also looks like a message key is
kept.  Everything else (computed keys, non-matching calls, odd strings) is
silently ignored.

Key shape
---------
A trimmed literal is a message key iff it

1. is not blank,
2. contains no ``/``,
3. consists only of ``.``, ``_``, ``-`` and BMP letters or decimal digits
   (Unicode categories ``Lu Ll Lt Lm Lo Nd``), and
4. starts with the configured (non-empty) prefix, equals ``"prefix"``, or
   contains a ``.``.

The stored key is the literal itself if it already starts with a non-empty
prefix, otherwise the prefix followed by the literal.
"""

from __future__ import annotations

import itertools
import unicodedata
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from msgkeys.abstract_domains import AbstractFrame, Constant
from msgkeys.abstract_interp import DEFAULT_MAX_ITERATIONS, MethodFrames, analyze_method
from msgkeys.bytecode import Instruction
from msgkeys.classfile import ClassFile, MemberRef, MethodBody
from msgkeys.descriptor import STRING_DESCRIPTOR, parse_method_descriptor
from msgkeys.errors import (
    AnalysisError,
    ClassFormatError,
    Diagnostic,
    DescriptorError,
)

MESSAGE_SERVICE_OWNER = "de/t14d3/rapunzellib/message/MessageService"
MESSAGE_SERVICE_METHODS = ("component", "raw", "contains")
STRING_FIRST_PREFIX = "(" + STRING_DESCRIPTOR

# A literal equal to this is a key even without a dot.
PREFIX_KEY = "prefix"

_EXTRA_KEY_CHARS = frozenset("._-")
_LETTER_OR_DIGIT = frozenset({"Lu", "Ll", "Lt", "Lm", "Lo", "Nd"})


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CallSitePattern:
    """Signature of a call whose argument ``argument_index`` is a message key.

    ``owner`` is an internal (slash-separated) class name.  An empty
    ``descriptor_prefix`` matches every descriptor.
    """

    owner: str
    name: str
    descriptor_prefix: str = ""
    argument_index: int = 0

    def matches(self, ref: MemberRef) -> bool:
        return (
            ref.owner == self.owner
            and ref.name == self.name
            and ref.descriptor.startswith(self.descriptor_prefix)
        )


BUILTIN_PATTERNS: Tuple[CallSitePattern, ...] = tuple(
    CallSitePattern(MESSAGE_SERVICE_OWNER, name, STRING_FIRST_PREFIX)
    for name in MESSAGE_SERVICE_METHODS
)


def internal_name(class_name: str) -> str:
    """``com.example.Messages`` → ``com/example/Messages``."""
    return class_name.strip().replace(".", "/")


def wrapper_patterns(
    owners: Iterable[str],
    methods: Iterable[str],
) -> Tuple[CallSitePattern, ...]:
    """Cross the owner and method allow-lists into patterns (sorted)."""
    owner_set = sorted({internal_name(o) for o in owners if o.strip()})
    method_set = sorted({m.strip() for m in methods if m.strip()})
    return tuple(
        CallSitePattern(owner, name)
        for owner, name in itertools.product(owner_set, method_set)
    )


class PatternTable:
    """Lookup of :class:`CallSitePattern` records by ``(owner, name)``."""

    def __init__(self, patterns: Iterable[CallSitePattern] = BUILTIN_PATTERNS) -> None:
        self._by_target: Dict[Tuple[str, str], List[CallSitePattern]] = {}
        for p in patterns:
            bucket = self._by_target.setdefault((p.owner, p.name), [])
            if p not in bucket:
                bucket.append(p)

    @classmethod
    def from_allow_lists(
        cls,
        owners: Iterable[str] = (),
        methods: Iterable[str] = (),
        include_builtin: bool = True,
    ) -> "PatternTable":
        patterns: List[CallSitePattern] = list(BUILTIN_PATTERNS) if include_builtin else []
        patterns.extend(wrapper_patterns(owners, methods))
        return cls(patterns)

    @property
    def patterns(self) -> List[CallSitePattern]:
        return [p for bucket in self._by_target.values() for p in bucket]

    def __len__(self) -> int:
        return len(self.patterns)

    def match(self, ref: MemberRef) -> Optional[CallSitePattern]:
        for p in self._by_target.get((ref.owner, ref.name), ()):
            if p.matches(ref):
                return p
        return None


# ---------------------------------------------------------------------------
# Key shape
# ---------------------------------------------------------------------------

def _is_key_char(ch: str) -> bool:
    if ch in _EXTRA_KEY_CHARS:
        return True
    # supplementary code points are surrogate pairs in class-file strings
    if ord(ch) > 0xFFFF:
        return False
    return unicodedata.category(ch) in _LETTER_OR_DIGIT


def looks_like_message_key(value: str, prefix: str = "") -> bool:
    if not value.strip():
        return False
    if "/" in value:
        return False
    if not all(_is_key_char(ch) for ch in value):
        return False
    if prefix and value.startswith(prefix):
        return True
    return value == PREFIX_KEY or "." in value


def normalize_key(value: str, prefix: str = "") -> str:
    if prefix and value.startswith(prefix):
        return value
    return prefix + value


def candidate_key(literal: str, prefix: str = "") -> Optional[str]:
    """Return the message key a string literal denotes, or ``None``."""
    trimmed = literal.strip()
    if not trimmed or not looks_like_message_key(trimmed, prefix):
        return None
    return normalize_key(trimmed, prefix)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

@dataclass
class ClassKeys:
    """Keys and diagnostics produced for one class."""

    unit: str
    keys: Set[str] = field(default_factory=set)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    methods_analyzed: int = 0


class KeyExtractor:
    """Extracts message keys from methods using a :class:`PatternTable`.

    Parameters
    ----------
    patterns : PatternTable
        Call sites to look for.
    prefix : str
        Message-key prefix used by the key-shape rule and normalization.
    max_iterations : int
        Per-method solver bound.
    """

    def __init__(
        self,
        patterns: Optional[PatternTable] = None,
        prefix: str = "",
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ) -> None:
        self.patterns = patterns if patterns is not None else PatternTable()
        self.prefix = prefix
        self.max_iterations = max_iterations

    @classmethod
    def from_allow_lists(
        cls,
        owners: Iterable[str] = (),
        methods: Iterable[str] = (),
        prefix: str = "",
    ) -> "KeyExtractor":
        return cls(PatternTable.from_allow_lists(owners, methods), prefix=prefix)

    def key_at(self, insn: Instruction, frame: AbstractFrame) -> Optional[str]:
        """The key passed by invocation *insn* given its incoming *frame*."""
        ref = insn.member
        if ref is None or insn.mnemonic == "invokedynamic":
            return None
        try:
            desc = parse_method_descriptor(ref.descriptor)
        except DescriptorError:
            return None
        pattern = self.patterns.match(ref)
        if pattern is None or pattern.argument_index >= desc.argument_count:
            return None
        if not desc.parameters[pattern.argument_index].is_string:
            return None

        slot = frame.depth - desc.argument_words + desc.argument_offset(pattern.argument_index)
        if slot < 0:
            return None
        value = frame.stack[slot]
        if not isinstance(value, Constant):
            return None
        return candidate_key(value.value, self.prefix)

    def keys_in_frames(self, frames: MethodFrames) -> Set[str]:
        keys: Set[str] = set()
        for insn, frame in frames.invocations():
            key = self.key_at(insn, frame)
            if key is not None:
                keys.add(key)
        return keys

    def extract_keys(self, method: MethodBody) -> Set[str]:
        """Analyze *method* and return the keys it passes to matching calls.

        Raises
        ------
        ClassFormatError
            If the method's code or a descriptor is malformed.
        AnalysisError
            If the frames cannot be computed.
        """
        if not method.has_code:
            return set()
        return self.keys_in_frames(analyze_method(method, self.max_iterations))

    def extract_from_class(self, cls: ClassFile) -> ClassKeys:
        """Extract keys from every method with code; failures become diagnostics."""
        result = ClassKeys(unit=cls.source or cls.name)
        for method in cls.methods_with_code():
            try:
                result.keys |= self.extract_keys(method)
            except (ClassFormatError, AnalysisError) as exc:
                result.diagnostics.append(
                    Diagnostic.from_error(exc, unit=result.unit, method=method.signature)
                )
            else:
                result.methods_analyzed += 1
        return result
