"""
msgkeys.abstract_domains
========================

The abstract value domain of the string-constant analysis and the frame
lattice built on top of it.

Values
------
A JVM operand-stack word or local slot is abstracted to one of

``Constant(value)``
    the word certainly holds a reference to the string literal *value*;
``NonConstant``
    anything else: a number, an object, a string computed at run time, or
    a string that differs between paths.

::

          NonConstant
        /      |      \\
   Constant  Constant  ...
     "a"       "b"

``merge`` is the join of this flat lattice: equal values merge to
themselves, anything else merges to ``NonConstant``, which is absorbing.
It is commutative, associative and idempotent.

Frames
------
:class:`AbstractFrame` is an immutable pair of tuples: the local-variable
slots and the operand-stack words (top of stack last).  ``long`` and
``double`` values occupy two ``NonConstant`` words both on the stack and in
the locals, mirroring the JVM's own accounting, so stack-manipulation
instructions can be modelled uniformly on words.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple, Union

from msgkeys.dataflow_engine import FlatLattice, Lattice
from msgkeys.errors import AnalysisError


# ===========================================================================
# VALUES
# ===========================================================================

@dataclass(frozen=True)
class Constant:
    """A word known to hold the string literal ``value``."""

    value: str

    def __repr__(self) -> str:
        return f"Constant({self.value!r})"


@dataclass(frozen=True)
class NonConstant:
    """A word whose value is not a single known string literal.

    All instances compare equal; use :data:`NON_CONSTANT`.
    """

    def __repr__(self) -> str:
        return "NonConstant"


AbstractValue = Union[Constant, NonConstant]

NON_CONSTANT = NonConstant()


def new_constant(value: str) -> Constant:
    return Constant(value)


def new_non_constant() -> NonConstant:
    return NON_CONSTANT


def merge(a: AbstractValue, b: AbstractValue) -> AbstractValue:
    """Join two abstract values."""
    if a == b:
        return a
    return NON_CONSTANT


class ValueLattice(FlatLattice):
    """:func:`merge` expressed as a :class:`FlatLattice`.

    ``bottom()`` stands for "no value has reached this point yet";
    ``top()`` is :data:`NON_CONSTANT`.
    """

    _TOP = NON_CONSTANT

    def join(self, a, b):
        if a is self._BOTTOM:
            return b
        if b is self._BOTTOM:
            return a
        return merge(a, b)

    def leq(self, a, b) -> bool:
        if a is self._BOTTOM:
            return True
        if b == NON_CONSTANT:
            return True
        return a == b


# ===========================================================================
# FRAMES
# ===========================================================================

@dataclass(frozen=True)
class AbstractFrame:
    """Abstract state of one method activation at one program point."""

    locals: Tuple[AbstractValue, ...]
    stack: Tuple[AbstractValue, ...] = ()

    @classmethod
    def entry(cls, max_locals: int) -> "AbstractFrame":
        """The frame at method entry: every slot ``NonConstant``, empty stack."""
        return cls(locals=(NON_CONSTANT,) * max_locals, stack=())

    @property
    def depth(self) -> int:
        return len(self.stack)

    def peek(self, depth_from_top: int = 0) -> AbstractValue:
        if depth_from_top >= len(self.stack):
            raise AnalysisError("operand stack underflow")
        return self.stack[-1 - depth_from_top]

    def push(self, *words: AbstractValue) -> "AbstractFrame":
        return AbstractFrame(self.locals, self.stack + tuple(words))

    def push_unknown(self, count: int) -> "AbstractFrame":
        return self.push(*((NON_CONSTANT,) * count))

    def pop(self, count: int = 1) -> Tuple["AbstractFrame", Tuple[AbstractValue, ...]]:
        """Remove *count* words; returns the new frame and the removed words
        in stack order (deepest first)."""
        if count > len(self.stack):
            raise AnalysisError(
                f"operand stack underflow: need {count} words, have {len(self.stack)}"
            )
        if count == 0:
            return self, ()
        return (
            AbstractFrame(self.locals, self.stack[:-count]),
            self.stack[-count:],
        )

    def drop(self, count: int) -> "AbstractFrame":
        return self.pop(count)[0]

    def _check_slot(self, index: int, words: int) -> None:
        if index < 0 or index + words > len(self.locals):
            raise AnalysisError(
                f"local slot {index} out of range (max_locals={len(self.locals)})"
            )

    def load(self, index: int, words: int = 1) -> Tuple[AbstractValue, ...]:
        self._check_slot(index, words)
        return self.locals[index:index + words]

    def store(self, index: int, values: Sequence[AbstractValue]) -> "AbstractFrame":
        self._check_slot(index, len(values))
        slots = list(self.locals)
        slots[index:index + len(values)] = values
        return AbstractFrame(tuple(slots), self.stack)

    def with_stack(self, stack: Sequence[AbstractValue]) -> "AbstractFrame":
        return AbstractFrame(self.locals, tuple(stack))

    def __str__(self) -> str:
        locs = ", ".join(repr(v) for v in self.locals)
        stk = ", ".join(repr(v) for v in self.stack)
        return f"locals=[{locs}] stack=[{stk}]"


def merge_values(
    a: Sequence[AbstractValue],
    b: Sequence[AbstractValue],
    join: Callable[[AbstractValue, AbstractValue], AbstractValue] = merge,
) -> Tuple[AbstractValue, ...]:
    """Position-wise join of two equally long sequences."""
    return tuple(join(x, y) for x, y in zip(a, b))


def merge_frames(
    a: AbstractFrame,
    b: AbstractFrame,
    join: Callable[[AbstractValue, AbstractValue], AbstractValue] = merge,
) -> AbstractFrame:
    """Join two frames reaching the same program point.

    Raises
    ------
    AnalysisError
        If the stack depths or local counts differ.
    """
    if len(a.stack) != len(b.stack):
        raise AnalysisError(
            f"stack depth mismatch at join point: {len(a.stack)} vs {len(b.stack)}"
        )
    if len(a.locals) != len(b.locals):
        raise AnalysisError(
            f"local count mismatch at join point: {len(a.locals)} vs {len(b.locals)}"
        )
    if a == b:
        return a
    return AbstractFrame(
        merge_values(a.locals, b.locals, join),
        merge_values(a.stack, b.stack, join),
    )


class FrameLattice(Lattice[Optional[AbstractFrame]]):
    """Lattice of frames; ``None`` is bottom (point not reached yet).

    Slots and words are joined with *values*, a :class:`ValueLattice` by
    default.
    """

    def __init__(self, values: Optional[ValueLattice] = None) -> None:
        self.values = values or ValueLattice()

    def bottom(self) -> Optional[AbstractFrame]:
        return None

    def top(self) -> Optional[AbstractFrame]:
        raise NotImplementedError("FrameLattice has no finite top element")

    def join(self, a, b):
        if a is None:
            return b
        if b is None:
            return a
        return merge_frames(a, b, self.values.join)

    def leq(self, a, b) -> bool:
        if a is None:
            return True
        if b is None:
            return False
        return merge_frames(a, b, self.values.join) == b

    def eq(self, a, b) -> bool:
        return a == b
