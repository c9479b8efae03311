"""
msgkeys.ctrlflow_graph
======================

Builds the intraprocedural control flow graph of one decoded method.

Nodes are *instruction indices* (positions in the list returned by
:func:`msgkeys.bytecode.decode`), so the graph is an arena: no node objects,
no cycles of references, just integer successor and predecessor lists.
Edges carry their :class:`EdgeKind` and, for exception edges, the caught
class.

Public API
----------
    EdgeKind   - classification of an edge
    CFGEdge    - a directed edge between two instruction indices
    CFG        - the graph for one method
    build_cfg  - build a CFG from instructions + exception table
    cfg_summary - multi-line textual dump (``msgkeys cfg``)

Typical usage::

    from msgkeys.bytecode import decode_method
    from msgkeys.ctrlflow_graph import build_cfg

    insns = decode_method(method)
    cfg = build_cfg(insns, method.exception_table)
    for edge in cfg.successors(0):
        print(edge)

Implementation notes
--------------------
* A conditional branch yields a ``BRANCH_TAKEN`` edge and a
  ``FALL_THROUGH`` edge.  Switches yield one ``SWITCH_DEFAULT`` edge and one
  ``SWITCH_CASE`` edge per case, labelled with the case key.
* ``ret`` is not resolved to its matching ``jsr``: it gets a ``RET`` edge to
  every instruction that directly follows a ``jsr``/``jsr_w``.
* Every instruction inside ``[start_pc, end_pc)`` of a handler gets an
  ``EXCEPTION`` edge to the handler entry.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Set

from msgkeys.bytecode import Instruction, InsnKind
from msgkeys.classfile import ExceptionHandler
from msgkeys.errors import DecodeError

# ---------------------------------------------------------------------------
# Edge kinds
# ---------------------------------------------------------------------------


class EdgeKind(enum.Enum):
    """Classification of a CFG edge."""

    FALL_THROUGH = "fall-through"
    BRANCH_TAKEN = "branch-taken"
    GOTO = "goto"
    SWITCH_CASE = "switch-case"
    SWITCH_DEFAULT = "switch-default"
    JSR = "jsr"
    RET = "ret"
    EXCEPTION = "exception"

    @property
    def is_exceptional(self) -> bool:
        return self is EdgeKind.EXCEPTION


# ---------------------------------------------------------------------------
# CFGEdge
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CFGEdge:
    """A directed edge in the CFG.

    Attributes
    ----------
    src : int
        Index of the source instruction.
    dst : int
        Index of the destination instruction.
    kind : EdgeKind
    label : str or None
        Auxiliary label (the case key for ``SWITCH_CASE``).
    catch_type : str or None
        Internal name of the caught class for ``EXCEPTION`` edges; ``None``
        for catch-all handlers and for every other kind.
    """

    src: int
    dst: int
    kind: EdgeKind = EdgeKind.FALL_THROUGH
    label: Optional[str] = None
    catch_type: Optional[str] = None

    def __str__(self) -> str:
        text = f"{self.src} -> {self.dst} ({self.kind.value}"
        if self.label:
            text += f": {self.label}"
        if self.kind.is_exceptional:
            text += f": {self.catch_type or 'any'}"
        return text + ")"


# ---------------------------------------------------------------------------
# CFG
# ---------------------------------------------------------------------------

class CFG:
    """Control flow graph over the instructions of one method.

    Attributes
    ----------
    instructions : list[Instruction]
        The decoded method; node ``i`` is ``instructions[i]``.
    edges : list[CFGEdge]
        All edges, in insertion order.
    entry : int
        Always ``0``.
    """

    entry = 0

    def __init__(self, instructions: Sequence[Instruction], name: str = "") -> None:
        self.instructions: List[Instruction] = list(instructions)
        self.name = name
        self.edges: List[CFGEdge] = []
        self._succ: List[List[CFGEdge]] = [[] for _ in self.instructions]
        self._pred: List[List[CFGEdge]] = [[] for _ in self.instructions]

    # ----- graph mutation ---------------------------------------------------

    def add_edge(
        self,
        src: int,
        dst: int,
        kind: EdgeKind = EdgeKind.FALL_THROUGH,
        label: Optional[str] = None,
        catch_type: Optional[str] = None,
    ) -> CFGEdge:
        """Create an edge, register it, and wire up predecessor/successor lists."""
        e = CFGEdge(src, dst, kind=kind, label=label, catch_type=catch_type)
        self.edges.append(e)
        self._succ[src].append(e)
        self._pred[dst].append(e)
        return e

    # ----- queries ----------------------------------------------------------

    @property
    def nodes(self) -> range:
        return range(len(self.instructions))

    def successors(self, index: int) -> List[CFGEdge]:
        return self._succ[index]

    def predecessors(self, index: int) -> List[CFGEdge]:
        return self._pred[index]

    def successor_indices(self, index: int) -> List[int]:
        """Distinct successor indices of *index*, in edge order."""
        seen: List[int] = []
        for e in self._succ[index]:
            if e.dst not in seen:
                seen.append(e.dst)
        return seen

    def reachable_from(self, start: int = 0) -> Set[int]:
        """Return the set of indices reachable from *start*."""
        visited: Set[int] = set()
        worklist = [start]
        while worklist:
            n = worklist.pop()
            if n in visited:
                continue
            visited.add(n)
            for e in self._succ[n]:
                worklist.append(e.dst)
        return visited

    def to_dot(self, title: Optional[str] = None) -> str:
        """Return a Graphviz DOT representation of this CFG."""
        lines = ["digraph CFG {"]
        if title or self.name:
            lines.append(f'  label="{title or self.name}";')
        lines.append("  node [shape=box, fontname=monospace, fontsize=10];")
        for insn in self.instructions:
            lbl = str(insn).strip().replace('"', '\\"')
            color = ""
            if insn.index == self.entry:
                color = ', style=filled, fillcolor="#ccffcc"'
            elif not self._succ[insn.index]:
                color = ', style=filled, fillcolor="#ffcccc"'
            lines.append(f'  I{insn.index} [label="{lbl}"{color}];')
        for e in self.edges:
            style = ""
            elabel = e.kind.value
            if e.label:
                elabel += f": {e.label}"
            if e.kind is EdgeKind.BRANCH_TAKEN:
                style = ", color=green, fontcolor=green"
            elif e.kind is EdgeKind.EXCEPTION:
                style = ", style=dashed, color=red, fontcolor=red"
                elabel += f": {e.catch_type or 'any'}"
            elif e.kind in (EdgeKind.JSR, EdgeKind.RET):
                style = ", style=dotted"
            lines.append(f'  I{e.src} -> I{e.dst} [label="{elabel}"{style}];')
        lines.append("}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return (
            f"CFG(method={self.name or '<unknown>'!r}, "
            f"instructions={len(self.instructions)}, edges={len(self.edges)})"
        )


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

def _index_by_offset(instructions: Sequence[Instruction]) -> Dict[int, int]:
    return {insn.offset: insn.index for insn in instructions}


def _target(by_offset: Dict[int, int], insn: Instruction, offset: int) -> int:
    try:
        return by_offset[offset]
    except KeyError:
        raise DecodeError(
            f"{insn.mnemonic} targets {offset}, which is not an instruction start",
            offset=insn.offset,
        ) from None


def build_cfg(
    instructions: Sequence[Instruction],
    exception_table: Iterable[ExceptionHandler] = (),
    name: str = "",
) -> CFG:
    """Build the control flow graph of a decoded method.

    Parameters
    ----------
    instructions : sequence of Instruction
        Output of :func:`msgkeys.bytecode.decode`.
    exception_table : iterable of ExceptionHandler
        The method's exception table.
    name : str
        Method name used in ``repr`` and DOT output.

    Raises
    ------
    DecodeError
        If a jump or handler target is not an instruction start, or if
        control can fall off the end of the code.
    """
    cfg = CFG(instructions, name=name)
    by_offset = _index_by_offset(cfg.instructions)
    count = len(cfg.instructions)

    # ret may return to any instruction following a jsr
    jsr_returns = [
        insn.index + 1 for insn in cfg.instructions
        if insn.kind is InsnKind.JSR and insn.index + 1 < count
    ]

    for insn in cfg.instructions:
        i = insn.index
        kind = insn.kind
        if kind is InsnKind.BRANCH:
            cfg.add_edge(i, _target(by_offset, insn, insn.targets[0]), EdgeKind.BRANCH_TAKEN)
        elif kind is InsnKind.GOTO:
            cfg.add_edge(i, _target(by_offset, insn, insn.targets[0]), EdgeKind.GOTO)
        elif kind is InsnKind.JSR:
            cfg.add_edge(i, _target(by_offset, insn, insn.targets[0]), EdgeKind.JSR)
        elif kind is InsnKind.RET:
            for dst in jsr_returns:
                cfg.add_edge(i, dst, EdgeKind.RET)
        elif kind is InsnKind.SWITCH:
            default, cases = insn.targets[0], insn.targets[1:]
            cfg.add_edge(i, _target(by_offset, insn, default), EdgeKind.SWITCH_DEFAULT)
            for key, t in zip(insn.switch_keys, cases):
                cfg.add_edge(i, _target(by_offset, insn, t), EdgeKind.SWITCH_CASE,
                             label=str(key))

        if insn.falls_through:
            if i + 1 >= count:
                raise DecodeError("control falls off the end of the code",
                                  offset=insn.offset)
            cfg.add_edge(i, i + 1, EdgeKind.FALL_THROUGH)

    for handler in exception_table:
        if handler.handler_pc not in by_offset:
            raise DecodeError(
                f"exception handler at {handler.handler_pc} is not an instruction start",
                offset=handler.handler_pc,
            )
        dst = by_offset[handler.handler_pc]
        for insn in cfg.instructions:
            if handler.covers(insn.offset):
                cfg.add_edge(insn.index, dst, EdgeKind.EXCEPTION,
                             catch_type=handler.catch_type)
    return cfg


def cfg_summary(cfg: CFG) -> str:
    """Return a multi-line human-readable summary of *cfg*.

    Instructions that cannot be reached from the entry are marked ``!``.
    """
    reachable = cfg.reachable_from(cfg.entry)
    lines = [repr(cfg)]
    for insn in cfg.instructions:
        succ = ", ".join(f"{e.dst}({e.kind.value})" for e in cfg.successors(insn.index))
        pred = ", ".join(str(e.src) for e in cfg.predecessors(insn.index))
        mark = " " if insn.index in reachable else "!"
        lines.append(
            f" {mark}{insn.index:4d} {insn.mnemonic:<16s} "
            f"succ=[{succ}]  pred=[{pred}]"
        )
    return "\n".join(lines)
