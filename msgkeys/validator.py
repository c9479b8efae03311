"""
msgkeys.validator
=================

Compares the keys declared in key documents with the keys extracted from
bytecode.

``missing``
    extracted but not declared; always a failure.
``unused``
    declared but neither extracted nor allow-listed; a failure in strict
    mode, a logged warning otherwise.

:func:`validate_keys` is pure; :meth:`ValidationResult.raise_for_status`
applies the failure policy, checking missing keys before unused ones.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from msgkeys.errors import MissingKeysError, UnusedKeysError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a key comparison.

    Attributes
    ----------
    missing : list of str
        Sorted keys used in code but not declared.
    unused : list of str
        Sorted keys declared but not used (after the allow-list).
    strict : bool
        Whether unused keys are a failure.
    """

    missing: List[str] = field(default_factory=list)
    unused: List[str] = field(default_factory=list)
    strict: bool = True

    @property
    def ok(self) -> bool:
        return not self.missing and not (self.strict and self.unused)

    def raise_for_status(self) -> None:
        """Raise the failure this result represents, if any.

        Raises
        ------
        MissingKeysError
            If any key is missing.
        UnusedKeysError
            If any key is unused and the result is strict.
        """
        if self.missing:
            raise MissingKeysError(self.missing)
        if self.unused:
            if self.strict:
                raise UnusedKeysError(self.unused)
            logger.warning("Unused message keys in YAML: %s", ", ".join(self.unused))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "strict": self.strict,
            "missing": list(self.missing),
            "unused": list(self.unused),
        }


def validate_keys(
    declared: Iterable[str],
    extracted: Iterable[str],
    always_used: Iterable[str] = (),
    strict: bool = True,
) -> ValidationResult:
    """Compute missing and unused keys."""
    declared_set = set(declared)
    extracted_set = set(extracted)
    missing = sorted(extracted_set - declared_set)
    unused = sorted(declared_set - extracted_set - set(always_used))
    return ValidationResult(missing=missing, unused=unused, strict=strict)
