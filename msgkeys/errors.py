"""
msgkeys.errors
==============

Error types and diagnostic records for the message-key validation pipeline.

Error Hierarchy
---------------
::

    MsgKeysError (base)
    ├── ConfigurationError     - no usable key documents / bad settings
    │   └── KeyDocumentError   - a key document could not be parsed
    ├── ClassFormatError       - malformed class-file container
    │   ├── DescriptorError    - malformed field/method descriptor
    │   └── DecodeError        - malformed or unsupported bytecode
    ├── AnalysisError          - frames could not be computed
    └── ValidationFailure      - declared keys and used keys disagree
        ├── MissingKeysError   - keys used in code but not declared
        └── UnusedKeysError    - keys declared but never used (strict)

Severities
----------
Only ``ConfigurationError`` aborts a run before analysis.  ``ClassFormatError``
and ``AnalysisError`` are *recoverable*: the scanner converts them into
:class:`Diagnostic` records and keeps going.  ``ValidationFailure`` is raised
after the analysis has completed.

Error Codes
-----------
Each error carries a stable code ``MK-XXXX``:

  - 1000-1999: configuration / key documents
  - 2000-2999: class-file, descriptor and bytecode decoding
  - 3000-3999: dataflow analysis
  - 4000-4999: validation failures
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, unique
from typing import Any, Dict, Iterable, List, Optional, Tuple


# ═══════════════════════════════════════════════════════════════════════════
#  ERROR CODES
# ═══════════════════════════════════════════════════════════════════════════

@unique
class ErrorCode(Enum):
    """Stable identifiers for every error the pipeline can report."""

    CONFIGURATION = "MK-1000"
    KEY_DOCUMENT = "MK-1001"
    CLASS_FORMAT = "MK-2000"
    DESCRIPTOR = "MK-2001"
    DECODE = "MK-2002"
    ANALYSIS = "MK-3000"
    VALIDATION = "MK-4000"
    MISSING_KEYS = "MK-4001"
    UNUSED_KEYS = "MK-4002"


# ═══════════════════════════════════════════════════════════════════════════
#  EXCEPTIONS
# ═══════════════════════════════════════════════════════════════════════════

class MsgKeysError(Exception):
    """Base class for all errors raised by :mod:`msgkeys`."""

    code: ErrorCode = ErrorCode.CONFIGURATION

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"


class ConfigurationError(MsgKeysError):
    """Fatal: the run cannot start (no key documents, bad config file)."""

    code = ErrorCode.CONFIGURATION


class KeyDocumentError(ConfigurationError):
    """A key document exists but could not be read or parsed."""

    code = ErrorCode.KEY_DOCUMENT

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class ClassFormatError(MsgKeysError):
    """The class-file container is truncated or malformed."""

    code = ErrorCode.CLASS_FORMAT


class DescriptorError(ClassFormatError):
    """A field or method descriptor does not follow the JVM grammar."""

    code = ErrorCode.DESCRIPTOR

    def __init__(self, message: str, descriptor: str = "") -> None:
        super().__init__(message)
        self.descriptor = descriptor


class DecodeError(ClassFormatError):
    """A method body could not be decoded into instructions.

    Attributes
    ----------
    offset : int or None
        Byte offset inside the code array where decoding failed.
    """

    code = ErrorCode.DECODE

    def __init__(self, message: str, offset: Optional[int] = None) -> None:
        if offset is not None:
            message = f"{message} (at offset {offset})"
        super().__init__(message)
        self.offset = offset


class AnalysisError(MsgKeysError):
    """The fixpoint could not be computed for a method.

    Raised on operand-stack underflow, on a stack-depth mismatch at a join
    point, or when the solver exceeds its iteration bound.
    """

    code = ErrorCode.ANALYSIS


class ValidationFailure(MsgKeysError):
    """Declared and used keys disagree.

    Attributes
    ----------
    keys : tuple of str
        The offending keys, sorted.
    """

    code = ErrorCode.VALIDATION
    headline = "Message key validation failed"

    def __init__(self, keys: Iterable[str]) -> None:
        self.keys: Tuple[str, ...] = tuple(sorted(keys))
        super().__init__(f"{self.headline}: {', '.join(self.keys)}")


class MissingKeysError(ValidationFailure):
    """Keys are referenced from code but absent from every key document."""

    code = ErrorCode.MISSING_KEYS
    headline = "Missing message keys in YAML"


class UnusedKeysError(ValidationFailure):
    """Keys are declared but never referenced (strict mode only)."""

    code = ErrorCode.UNUSED_KEYS
    headline = "Unused message keys in YAML"


# ═══════════════════════════════════════════════════════════════════════════
#  DIAGNOSTICS
# ═══════════════════════════════════════════════════════════════════════════

@unique
class DiagnosticSeverity(Enum):
    """Severity of a recorded diagnostic."""
    ERROR = "error"
    WARNING = "warning"
    INFORMATION = "information"


@dataclass(frozen=True)
class Diagnostic:
    """
    A single non-fatal finding produced while scanning.

    Attributes
    ----------
    severity : DiagnosticSeverity
    code     : ErrorCode of the underlying failure
    message  : Human-readable description
    unit     : Class file or archive entry the finding belongs to
    method   : ``name + descriptor`` of the method, if any
    """
    severity: DiagnosticSeverity
    code: ErrorCode
    message: str
    unit: str = ""
    method: str = ""

    @classmethod
    def from_error(
        cls,
        error: MsgKeysError,
        unit: str = "",
        method: str = "",
        severity: DiagnosticSeverity = DiagnosticSeverity.WARNING,
    ) -> "Diagnostic":
        """Wrap a recoverable exception as a diagnostic."""
        return cls(
            severity=severity,
            code=error.code,
            message=error.message,
            unit=unit,
            method=method,
        )

    @property
    def location(self) -> str:
        if self.method:
            return f"{self.unit}#{self.method}"
        return self.unit

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity.value,
            "code": self.code.value,
            "message": self.message,
            "unit": self.unit,
            "method": self.method,
        }

    def __str__(self) -> str:
        loc = self.location or "<input>"
        return f"{loc}: {self.severity.value}: {self.message} [{self.code.value}]"


def format_diagnostics(diagnostics: List[Diagnostic]) -> str:
    """Render *diagnostics* one per line, in the order given."""
    return "\n".join(str(d) for d in diagnostics)
