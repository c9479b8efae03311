"""
msgkeys — message-key validation for compiled JVM classes
=========================================================

Proves, by abstract interpretation of bytecode, which string constants reach
message-lookup call sites, and checks them against the keys declared in YAML
message files.

Core modules
------------
descriptor
    JVM field/method descriptor grammar (parsimonious).
classfile
    Class-file container: constant pool, methods, ``Code`` attributes.
bytecode
    Instruction decoder for the complete JVM instruction set.
ctrlflow_graph
    Instruction-level control flow graphs with typed edges.
abstract_domains
    ``Constant`` / ``NonConstant`` values and abstract frames.
dataflow_engine
    Generic lattice ABC and worklist fixpoint solver.
abstract_interp
    Per-opcode transfer function; per-instruction frames of a method.
key_extractor
    Call-site patterns and the message-key shape rule.
key_documents
    YAML key documents and flattening.
validator
    Missing / unused key computation and failure policy.
scanner
    Class enumeration (directories, archives) and parallel scanning.
config
    Run configuration and the end-to-end :func:`run_validation`.

Quick start
-----------
>>> from msgkeys import ValidationConfig, run_validation
>>> config = ValidationConfig(classes_dirs=("build/classes/java/main",))
>>> report = run_validation(config)        # doctest: +SKIP
>>> report.result.raise_for_status()       # doctest: +SKIP
"""

from __future__ import annotations

__version__ = "0.3.0"

from msgkeys.abstract_domains import (
    NON_CONSTANT,
    AbstractFrame,
    Constant,
    NonConstant,
    merge,
    new_constant,
    new_non_constant,
)
from msgkeys.abstract_interp import MethodFrames, analyze_method
from msgkeys.bytecode import Instruction, InsnKind, decode, decode_method
from msgkeys.classfile import ClassFile, MethodBody, parse_class, read_class_file
from msgkeys.config import (
    ValidationConfig,
    ValidationReport,
    load_config,
    run_validation,
)
from msgkeys.ctrlflow_graph import CFG, EdgeKind, build_cfg
from msgkeys.errors import (
    AnalysisError,
    ClassFormatError,
    ConfigurationError,
    DecodeError,
    DescriptorError,
    Diagnostic,
    KeyDocumentError,
    MissingKeysError,
    MsgKeysError,
    UnusedKeysError,
    ValidationFailure,
)
from msgkeys.key_documents import load_key_documents
from msgkeys.key_extractor import (
    CallSitePattern,
    KeyExtractor,
    PatternTable,
    looks_like_message_key,
    normalize_key,
)
from msgkeys.scanner import collect_class_inputs, scan_classes
from msgkeys.validator import ValidationResult, validate_keys

__all__ = [
    "__version__",
    # domain
    "NON_CONSTANT", "AbstractFrame", "Constant", "NonConstant",
    "merge", "new_constant", "new_non_constant",
    # analysis
    "MethodFrames", "analyze_method",
    "Instruction", "InsnKind", "decode", "decode_method",
    "ClassFile", "MethodBody", "parse_class", "read_class_file",
    "CFG", "EdgeKind", "build_cfg",
    # extraction / validation
    "CallSitePattern", "KeyExtractor", "PatternTable",
    "looks_like_message_key", "normalize_key",
    "load_key_documents", "ValidationResult", "validate_keys",
    "collect_class_inputs", "scan_classes",
    "ValidationConfig", "ValidationReport", "load_config", "run_validation",
    # errors
    "MsgKeysError", "ConfigurationError", "KeyDocumentError",
    "ClassFormatError", "DescriptorError", "DecodeError", "AnalysisError",
    "ValidationFailure", "MissingKeysError", "UnusedKeysError", "Diagnostic",
]
