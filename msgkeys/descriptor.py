"""
msgkeys.descriptor
==================

JVM field and method descriptors, parsed with a parsimonious PEG grammar.

A method descriptor such as ``(Ljava/lang/String;J[I)V`` lists the parameter
types between parentheses followed by the return type.  The analyzer needs
three facts from it:

* how many operand-stack *words* the arguments occupy (``long`` and
  ``double`` take two),
* where a given argument sits relative to the first one,
* how many words the return value pushes.

Usage::

    from msgkeys.descriptor import parse_method_descriptor

    desc = parse_method_descriptor("(Ljava/lang/String;J)V")
    desc.argument_words          # 3
    desc.argument_offset(1)      # 1
    desc.parameters[0].is_string # True
"""

from __future__ import annotations

import functools
from dataclasses import dataclass
from typing import Optional, Tuple

from parsimonious.exceptions import ParseError, VisitationError
from parsimonious.grammar import Grammar
from parsimonious.nodes import NodeVisitor

from msgkeys.errors import DescriptorError


# ═══════════════════════════════════════════════════════════════════
#  GRAMMAR
# ═══════════════════════════════════════════════════════════════════

DESCRIPTOR_GRAMMAR = Grammar(r'''
    method_descriptor   = "(" parameter* ")" return_type
    parameter           = field_type
    return_type         = field_type / void_type

    field_type          = base_type / object_type / array_type
    base_type           = ~"[BCDFIJSZ]"
    object_type         = "L" class_name ";"
    class_name          = ~"[^;]+"
    array_type          = "[" field_type
    void_type           = "V"
''')

STRING_DESCRIPTOR = "Ljava/lang/String;"


# ═══════════════════════════════════════════════════════════════════
#  TYPES
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class JavaType:
    """A single field type (or ``V`` for a void return)."""

    descriptor: str

    @property
    def size(self) -> int:
        """Number of operand-stack words a value of this type occupies."""
        if self.descriptor == "V":
            return 0
        if self.descriptor in ("J", "D"):
            return 2
        return 1

    @property
    def is_reference(self) -> bool:
        return self.descriptor[0] in "L["

    @property
    def is_string(self) -> bool:
        return self.descriptor == STRING_DESCRIPTOR

    @property
    def internal_name(self) -> Optional[str]:
        """``java/lang/String`` for ``Ljava/lang/String;``, else ``None``."""
        if self.descriptor.startswith("L"):
            return self.descriptor[1:-1]
        return None

    def __str__(self) -> str:
        return self.descriptor


@dataclass(frozen=True)
class MethodDescriptor:
    """A parsed method descriptor."""

    parameters: Tuple[JavaType, ...]
    return_type: JavaType

    @property
    def argument_count(self) -> int:
        return len(self.parameters)

    @property
    def argument_words(self) -> int:
        """Total operand-stack words consumed by the arguments."""
        return sum(p.size for p in self.parameters)

    @property
    def return_words(self) -> int:
        return self.return_type.size

    def argument_offset(self, index: int) -> int:
        """Word offset of argument *index* counted from the first argument."""
        if index < 0 or index >= len(self.parameters):
            raise IndexError(f"argument index {index} out of range")
        return sum(p.size for p in self.parameters[:index])

    def __str__(self) -> str:
        params = "".join(p.descriptor for p in self.parameters)
        return f"({params}){self.return_type.descriptor}"


# ═══════════════════════════════════════════════════════════════════
#  PARSE TREE → TYPES
# ═══════════════════════════════════════════════════════════════════

class _DescriptorVisitor(NodeVisitor):
    """Turns the parse tree into :class:`JavaType` / :class:`MethodDescriptor`."""

    grammar = DESCRIPTOR_GRAMMAR

    def visit_method_descriptor(self, node, visited_children):
        _, parameters, _, return_type = visited_children
        return MethodDescriptor(tuple(parameters), return_type)

    def visit_parameter(self, node, visited_children):
        return visited_children[0]

    def visit_return_type(self, node, visited_children):
        return visited_children[0]

    def visit_field_type(self, node, visited_children):
        return visited_children[0]

    def visit_base_type(self, node, visited_children):
        return JavaType(node.text)

    def visit_object_type(self, node, visited_children):
        return JavaType(node.text)

    def visit_array_type(self, node, visited_children):
        return JavaType(node.text)

    def visit_void_type(self, node, visited_children):
        return JavaType(node.text)

    def generic_visit(self, node, visited_children):
        return visited_children


@functools.lru_cache(maxsize=4096)
def parse_method_descriptor(text: str) -> MethodDescriptor:
    """Parse a method descriptor.

    Raises
    ------
    DescriptorError
        If *text* is not a well-formed method descriptor.
    """
    try:
        tree = DESCRIPTOR_GRAMMAR["method_descriptor"].parse(text)
        return _DescriptorVisitor().visit(tree)
    except (ParseError, VisitationError) as exc:
        raise DescriptorError(
            f"malformed method descriptor {text!r}", descriptor=text
        ) from exc


@functools.lru_cache(maxsize=4096)
def parse_field_descriptor(text: str) -> JavaType:
    """Parse a field descriptor such as ``J`` or ``[Ljava/lang/Object;``."""
    try:
        tree = DESCRIPTOR_GRAMMAR["field_type"].parse(text)
        return _DescriptorVisitor().visit(tree)
    except (ParseError, VisitationError) as exc:
        raise DescriptorError(
            f"malformed field descriptor {text!r}", descriptor=text
        ) from exc
