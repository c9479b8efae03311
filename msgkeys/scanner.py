"""
msgkeys.scanner
===============

Enumerates compiled classes and runs key extraction over them.

Inputs may be directories (searched recursively for ``.class`` files),
single ``.class`` files, or ``.jar``/``.zip`` archives whose ``.class``
entries are scanned.  Every unit is processed independently: a class that
cannot be read, parsed or analyzed turns into a :class:`Diagnostic` and the
scan continues.  With ``jobs > 1`` classes are analyzed on a thread pool
and their key sets are unioned as futures complete.
"""

from __future__ import annotations

import concurrent.futures
import logging
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Set, Union

from msgkeys.classfile import parse_class
from msgkeys.errors import ClassFormatError, Diagnostic
from msgkeys.key_extractor import ClassKeys, KeyExtractor

logger = logging.getLogger(__name__)

CLASS_SUFFIX = ".class"
ARCHIVE_SUFFIXES = (".jar", ".zip")


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ClassInput:
    """One class to scan: a file, or an entry inside an archive."""

    path: Path
    entry: Optional[str] = None

    @property
    def label(self) -> str:
        if self.entry is None:
            return str(self.path)
        return f"{self.path}!/{self.entry}"

    def read_bytes(self) -> bytes:
        try:
            if self.entry is None:
                return self.path.read_bytes()
            with zipfile.ZipFile(self.path) as archive:
                return archive.read(self.entry)
        except (OSError, KeyError, zipfile.BadZipFile) as exc:
            raise ClassFormatError(f"cannot read {self.label}: {exc}") from exc


def _archive_entries(path: Path) -> List[ClassInput]:
    with zipfile.ZipFile(path) as archive:
        names = sorted(
            n for n in archive.namelist()
            if n.endswith(CLASS_SUFFIX) and not n.endswith("/")
        )
    return [ClassInput(path, name) for name in names]


def collect_class_inputs(
    paths: Iterable[Union[str, Path]],
    diagnostics: Optional[List[Diagnostic]] = None,
) -> List[ClassInput]:
    """Expand *paths* into the classes to scan, in a deterministic order.

    Unreadable archives are reported into *diagnostics* (when given) and
    skipped; paths that do not exist are skipped.
    """
    inputs: List[ClassInput] = []
    for raw in paths:
        p = Path(raw)
        if p.is_dir():
            inputs.extend(
                ClassInput(f) for f in sorted(p.rglob(f"*{CLASS_SUFFIX}")) if f.is_file()
            )
        elif p.is_file() and p.suffix == CLASS_SUFFIX:
            inputs.append(ClassInput(p))
        elif p.is_file() and p.suffix.lower() in ARCHIVE_SUFFIXES:
            try:
                inputs.extend(_archive_entries(p))
            except (OSError, zipfile.BadZipFile) as exc:
                logger.warning("Skipping unreadable archive %s: %s", p, exc)
                if diagnostics is not None:
                    diagnostics.append(Diagnostic.from_error(
                        ClassFormatError(f"unreadable archive: {exc}"), unit=str(p)
                    ))
        else:
            logger.debug("Ignoring class input %s", p)
    return inputs


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------

@dataclass
class ScanResult:
    """Aggregated outcome of a scan."""

    keys: Set[str] = field(default_factory=set)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    classes_scanned: int = 0
    classes_failed: int = 0
    methods_analyzed: int = 0

    def add(self, part: ClassKeys, failed: bool = False) -> None:
        self.keys |= part.keys
        self.diagnostics.extend(part.diagnostics)
        self.methods_analyzed += part.methods_analyzed
        if failed:
            self.classes_failed += 1
        else:
            self.classes_scanned += 1


def scan_class(inp: ClassInput, extractor: KeyExtractor) -> ClassKeys:
    """Read, parse and extract keys from one class.

    Raises
    ------
    ClassFormatError
        If the class cannot be read or parsed.
    """
    cls = parse_class(inp.read_bytes(), source=inp.label)
    logger.debug("%s: %d constant pool slots, %d methods",
                 cls.name, len(cls.constant_pool), len(cls.methods))
    return extractor.extract_from_class(cls)


def _scan_one(inp: ClassInput, extractor: KeyExtractor):
    try:
        return scan_class(inp, extractor), False
    except ClassFormatError as exc:
        logger.debug("Failed to scan class file for message key usage: %s", inp.label,
                     exc_info=True)
        return ClassKeys(inp.label, diagnostics=[Diagnostic.from_error(exc, unit=inp.label)]), True


def scan_classes(
    inputs: Iterable[ClassInput],
    extractor: KeyExtractor,
    jobs: int = 1,
) -> ScanResult:
    """Extract keys from every input.

    Parameters
    ----------
    inputs : iterable of ClassInput
        Classes to scan, typically from :func:`collect_class_inputs`.
    extractor : KeyExtractor
        Pattern table and prefix to apply.
    jobs : int
        Worker threads; ``1`` scans sequentially.

    Returns
    -------
    ScanResult
        Diagnostics are sorted by unit and method so the result does not
        depend on completion order.
    """
    units = list(inputs)
    logger.debug("Scanning %d class files for %d call-site patterns",
                 len(units), len(extractor.patterns))
    result = ScanResult()
    if jobs <= 1 or len(units) <= 1:
        for inp in units:
            part, failed = _scan_one(inp, extractor)
            result.add(part, failed)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=jobs) as executor:
            futures = [executor.submit(_scan_one, inp, extractor) for inp in units]
            for future in concurrent.futures.as_completed(futures):
                part, failed = future.result()
                result.add(part, failed)

    for d in result.diagnostics:
        logger.debug("%s", d)
    result.diagnostics.sort(key=lambda d: (d.unit, d.method, d.message))
    logger.info(
        "Scanned %d classes (%d failed), %d methods, %d keys",
        result.classes_scanned, result.classes_failed,
        result.methods_analyzed, len(result.keys),
    )
    return result
