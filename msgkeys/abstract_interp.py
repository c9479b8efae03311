"""
msgkeys.abstract_interp
=======================

Abstract interpretation of JVM methods over the string-constant domain of
:mod:`msgkeys.abstract_domains`.

For every reachable instruction the analyzer computes the
:class:`~msgkeys.abstract_domains.AbstractFrame` that holds on *entry* to
the instruction, joined over every control-flow path that reaches it.  A
slot is ``Constant(s)`` in that frame only if every such path leaves the
string literal ``s`` there.

Transfer rules
--------------
* ``ldc``/``ldc_w`` of a ``String`` pushes ``Constant``; every other
  constant push pushes ``NonConstant`` words (two for long/double).
* ``xload`` copies slot(s) onto the stack, ``xstore`` copies words into
  slot(s); ``iinc`` makes its slot ``NonConstant``.
* ``pop``/``pop2``/``dup*``/``swap`` permute words without changing them.
* Invocations pop the receiver (unless static) and the argument words and
  push ``NonConstant`` return words.
* Everything else pops and pushes ``NonConstant`` words per its stack
  effect; ``checkcast`` is not transparent.

Exception edges deliver the join of the protected instruction's incoming
and outgoing locals to the handler, with a single ``NonConstant`` (the
exception) on the stack.

Usage::

    from msgkeys.abstract_interp import analyze_method

    frames = analyze_method(method_body)
    for insn, frame in frames.invocations():
        print(insn, frame)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

from msgkeys.abstract_domains import (
    NON_CONSTANT,
    AbstractFrame,
    FrameLattice,
    merge_values,
    new_constant,
)
from msgkeys.bytecode import Instruction, InsnKind, decode_method
from msgkeys.classfile import MethodBody
from msgkeys.ctrlflow_graph import CFG, CFGEdge, EdgeKind, build_cfg
from msgkeys.dataflow_engine import WorklistSolver, WorklistStrategy
from msgkeys.descriptor import parse_field_descriptor, parse_method_descriptor
from msgkeys.errors import AnalysisError

DEFAULT_MAX_ITERATIONS = 100_000

# Stack shuffles on words: mnemonic -> (words popped, result as indices
# into the popped words, deepest first).
_SHUFFLES: Dict[str, Tuple[int, Tuple[int, ...]]] = {
    "pop": (1, ()),
    "pop2": (2, ()),
    "dup": (1, (0, 0)),
    "dup_x1": (2, (1, 0, 1)),
    "dup_x2": (3, (2, 0, 1, 2)),
    "dup2": (2, (0, 1, 0, 1)),
    "dup2_x1": (3, (1, 2, 0, 1, 2)),
    "dup2_x2": (4, (2, 3, 0, 1, 2, 3)),
    "swap": (2, (1, 0)),
}


# ===========================================================================
# TRANSFER FUNCTION
# ===========================================================================

def _field_access(insn: Instruction, frame: AbstractFrame) -> AbstractFrame:
    size = parse_field_descriptor(insn.member.descriptor).size
    name = insn.mnemonic
    if name == "getstatic":
        return frame.push_unknown(size)
    if name == "putstatic":
        return frame.drop(size)
    if name == "getfield":
        return frame.drop(1).push_unknown(size)
    return frame.drop(1 + size)  # putfield


def _invoke(insn: Instruction, frame: AbstractFrame) -> AbstractFrame:
    desc = parse_method_descriptor(insn.member.descriptor)
    receiver = 0 if insn.is_static_call else 1
    return frame.drop(desc.argument_words + receiver).push_unknown(desc.return_words)


def transfer_instruction(insn: Instruction, frame: AbstractFrame) -> AbstractFrame:
    """Compute the frame after *insn* given the frame before it.

    Raises
    ------
    AnalysisError
        On operand-stack underflow or an out-of-range local slot.
    """
    kind = insn.kind
    info = insn.info

    if kind is InsnKind.CONSTANT:
        const = insn.constant
        if const is None:
            return frame.push_unknown(info.pushes)
        if const.is_string:
            return frame.push(new_constant(const.value))
        return frame.push_unknown(const.size)

    if kind is InsnKind.LOAD:
        return frame.push(*frame.load(insn.local, info.words))

    if kind is InsnKind.STORE:
        frame, words = frame.pop(info.words)
        return frame.store(insn.local, words)

    if kind is InsnKind.IINC:
        return frame.store(insn.local, (NON_CONSTANT,))

    if kind is InsnKind.STACK:
        count, layout = _SHUFFLES[insn.mnemonic]
        frame, words = frame.pop(count)
        return frame.push(*(words[i] for i in layout))

    if kind is InsnKind.FIELD:
        return _field_access(insn, frame)

    if kind is InsnKind.INVOKE:
        return _invoke(insn, frame)

    if insn.mnemonic == "multianewarray":
        return frame.drop(insn.immediate).push_unknown(1)

    if kind is InsnKind.RET:
        frame.load(insn.local)
        return frame

    return frame.drop(info.pops).push_unknown(info.pushes)


def exception_frame(before: AbstractFrame, after: AbstractFrame) -> AbstractFrame:
    """Frame delivered to a handler protecting an instruction.

    The exception may be thrown before or after the instruction updated its
    locals, so both are joined; the operand stack holds only the exception.
    """
    return AbstractFrame(merge_values(before.locals, after.locals), (NON_CONSTANT,))


# ===========================================================================
# RESULT
# ===========================================================================

@dataclass
class MethodFrames:
    """Fixpoint of one method.

    Attributes
    ----------
    method : str
        ``owner.name(descriptor)`` of the analyzed method.
    cfg : CFG
        The graph the fixpoint was computed over.
    frames : list of AbstractFrame or None
        Incoming frame per instruction index; ``None`` if unreachable.
    iterations : int
        Worklist node visits performed by the solver.
    """

    method: str
    cfg: CFG
    frames: List[Optional[AbstractFrame]]
    iterations: int = 0

    def frame_at(self, index: int) -> Optional[AbstractFrame]:
        return self.frames[index]

    def is_reachable(self, index: int) -> bool:
        return self.frames[index] is not None

    def invocations(self) -> Iterator[Tuple[Instruction, AbstractFrame]]:
        """Yield ``(instruction, incoming frame)`` for reachable invocations."""
        for insn in self.cfg.instructions:
            if insn.is_invoke and self.is_reachable(insn.index):
                yield insn, self.frame_at(insn.index)


# ===========================================================================
# DRIVER
# ===========================================================================

def analyze_cfg(
    cfg: CFG,
    max_locals: int,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    strategy: WorklistStrategy = WorklistStrategy.RPO,
) -> MethodFrames:
    """Run the fixpoint over an already built *cfg*.

    Raises
    ------
    AnalysisError
        On stack underflow, a stack-depth mismatch at a join point, or
        when *max_iterations* node visits do not reach a fixpoint.
    """
    instructions = cfg.instructions

    def transfer(index: int, frame: Optional[AbstractFrame]) -> Optional[AbstractFrame]:
        if frame is None:
            return None
        return transfer_instruction(instructions[index], frame)

    def edge_transfer(
        edge: CFGEdge,
        before: Optional[AbstractFrame],
        after: Optional[AbstractFrame],
    ) -> Optional[AbstractFrame]:
        if before is None or after is None:
            return None
        if edge.kind is EdgeKind.EXCEPTION:
            return exception_frame(before, after)
        return after

    solver = WorklistSolver(
        cfg,
        FrameLattice(),
        transfer,
        initial_value=AbstractFrame.entry(max_locals),
        edge_transfer=edge_transfer,
        strategy=strategy,
        max_iterations=max_iterations,
    )
    result = solver.solve()
    if not result.converged:
        raise AnalysisError(
            f"no fixpoint for {cfg.name or '<method>'} after {result.iterations} iterations"
        )
    return MethodFrames(
        method=cfg.name,
        cfg=cfg,
        frames=[result.facts_in[i] for i in cfg.nodes],
        iterations=result.iterations,
    )


def analyze_method(
    method: MethodBody,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
) -> MethodFrames:
    """Decode *method*, build its CFG and compute per-instruction frames.

    Raises
    ------
    DecodeError
        If the code cannot be decoded.
    AnalysisError
        If the frames cannot be computed.
    """
    instructions = decode_method(method)
    cfg = build_cfg(
        instructions,
        method.exception_table,
        name=f"{method.owner}.{method.signature}",
    )
    return analyze_cfg(cfg, method.max_locals, max_iterations=max_iterations)
