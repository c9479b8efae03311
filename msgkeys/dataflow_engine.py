"""
msgkeys.dataflow_engine
=======================

A small, generic, lattice-based forward dataflow framework operating over
the instruction-level CFGs of :mod:`msgkeys.ctrlflow_graph`.

Model
-----
An analysis is a lattice of facts, a transfer function
``transfer(index, fact_in) -> fact_out`` per instruction, and the fact at
the method entry.  Facts flow forward along CFG edges and are joined where
edges meet; a node is revisited whenever the join at its entry grows.

An optional ``edge_transfer(edge, fact_in, fact_out)`` decides what an edge
carries.  It sees the source node's facts on both sides, so an exception
edge can deliver a mix of the state before and after the protected
instruction.

Iteration order
---------------
``RPO`` (the default) pops nodes in reverse post-order, so a node is
usually visited after its forward predecessors.  ``FIFO`` and ``LIFO`` are
plain queue and stack orders; all three reach the same fixpoint.
"""

from __future__ import annotations

import abc
import enum
import heapq
from collections import deque
from dataclasses import dataclass, field
from typing import (
    Callable,
    Dict,
    Generic,
    List,
    Optional,
    Set,
    Tuple,
    TypeVar,
)


# ===========================================================================
# TYPE VARIABLES
# ===========================================================================

L = TypeVar("L")          # Lattice value type


# ===========================================================================
# WORKLIST STRATEGY
# ===========================================================================

class WorklistStrategy(enum.Enum):
    """Strategy for selecting the next worklist node."""
    FIFO = "fifo"
    LIFO = "lifo"
    RPO  = "rpo"        # Reverse post-order (best for forward)


# ===========================================================================
# LATTICES
# ===========================================================================

class Lattice(abc.ABC, Generic[L]):
    """Interface the solver needs from a domain of facts.

    Subclasses supply ``bottom``, ``top``, ``join`` and ``leq``; equality
    defaults to mutual ``leq``.  The solver only calls ``bottom``,
    ``join`` and ``eq``.
    """

    @abc.abstractmethod
    def bottom(self) -> L:
        """The fact of a node no path has reached."""

    @abc.abstractmethod
    def top(self) -> L:
        """The least informative fact; may raise for unbounded lattices."""

    @abc.abstractmethod
    def join(self, a: L, b: L) -> L:
        """Least upper bound of *a* and *b*."""

    @abc.abstractmethod
    def leq(self, a: L, b: L) -> bool:
        """Whether *a* is at most as general as *b*."""

    def eq(self, a: L, b: L) -> bool:
        return self.leq(a, b) and self.leq(b, a)


_FLAT_BOTTOM = object()
_FLAT_TOP = object()


class FlatLattice(Lattice):
    """Bottom, then pairwise incomparable values, then top.

    ::

            top
          /  |  \\
         a   b   c  ...
          \\  |  /
           bottom

    Joining two distinct values gives top.
    """

    _BOTTOM = _FLAT_BOTTOM
    _TOP = _FLAT_TOP

    def bottom(self):
        return self._BOTTOM

    def top(self):
        return self._TOP

    def join(self, a, b):
        if a is self._BOTTOM:
            return b
        if b is self._BOTTOM:
            return a
        if a is self._TOP or b is self._TOP or a != b:
            return self._TOP
        return a

    def leq(self, a, b) -> bool:
        return a is self._BOTTOM or b is self._TOP or a == b


# ===========================================================================
# RESULT
# ===========================================================================

@dataclass
class DataflowResult(Generic[L]):
    """What :meth:`WorklistSolver.solve` computed.

    ``facts_in[n]`` holds before instruction ``n``; it is ``bottom`` for
    nodes never reached.  ``converged``
    is ``False`` when the iteration bound stopped the solver early.
    """

    facts_in: Dict[int, L] = field(default_factory=dict)
    iterations: int = 0
    converged: bool = False


# ===========================================================================
# NODE ORDERING
# ===========================================================================

def reverse_postorder(cfg) -> Dict[int, int]:
    """Number the nodes reachable from ``cfg.entry`` in reverse post-order.

    Unreachable nodes are absent from the result.
    """
    post: List[int] = []
    visited: Set[int] = {cfg.entry}
    # iterative DFS; each stack entry is (node, iterator over successors)
    stack = [(cfg.entry, iter(cfg.successor_indices(cfg.entry)))]
    while stack:
        node, it = stack[-1]
        for succ in it:
            if succ not in visited:
                visited.add(succ)
                stack.append((succ, iter(cfg.successor_indices(succ))))
                break
        else:
            stack.pop()
            post.append(node)
    return {node: rank for rank, node in enumerate(reversed(post))}


class _Worklist:
    """A set-like worklist honouring a :class:`WorklistStrategy`."""

    def __init__(self, strategy: WorklistStrategy, order: Dict[int, int]) -> None:
        self._strategy = strategy
        self._order = order
        self._queue: deque = deque()
        self._heap: List[Tuple[int, int]] = []
        self._members: Set[int] = set()

    def __bool__(self) -> bool:
        return bool(self._members)

    def push(self, node: int) -> None:
        if node in self._members:
            return
        self._members.add(node)
        if self._strategy is WorklistStrategy.RPO:
            heapq.heappush(self._heap, (self._order.get(node, len(self._order)), node))
        else:
            self._queue.append(node)

    def pop(self) -> int:
        if self._strategy is WorklistStrategy.RPO:
            _, node = heapq.heappop(self._heap)
        elif self._strategy is WorklistStrategy.LIFO:
            node = self._queue.pop()
        else:
            node = self._queue.popleft()
        self._members.discard(node)
        return node


# ===========================================================================
# WORKLIST SOLVER
# ===========================================================================

class WorklistSolver(Generic[L]):
    """Forward fixpoint engine for one method.

    Parameters
    ----------
    cfg : CFG
        The control-flow graph (from :mod:`msgkeys.ctrlflow_graph`).
    lattice : Lattice[L]
        The dataflow lattice.
    transfer : callable(node, L) → L
        The transfer function.
    initial_value : L
        Fact entering ``cfg.entry``.
    edge_transfer : callable(edge, L, L) → L, optional
        Per-edge refinement; called with the edge, the source node's
        incoming fact and its outgoing fact.  Defaults to forwarding the
        outgoing fact.
    strategy : WorklistStrategy
        Worklist iteration order.
    max_iterations : int
        Safety bound on node visits.
    """

    def __init__(
        self,
        cfg,
        lattice: Lattice[L],
        transfer: Callable[[int, L], L],
        initial_value: L,
        edge_transfer: Optional[Callable] = None,
        strategy: WorklistStrategy = WorklistStrategy.RPO,
        max_iterations: int = 100_000,
    ) -> None:
        self.cfg = cfg
        self.lattice = lattice
        self.transfer = transfer
        self.initial_value = initial_value
        self.edge_transfer = edge_transfer
        self.strategy = strategy
        self.max_iterations = max_iterations

    def solve(self) -> DataflowResult[L]:
        """Run the analysis to fixpoint.

        Returns
        -------
        DataflowResult[L]
            ``converged`` is ``False`` if ``max_iterations`` was reached
            with work still pending.
        """
        lat = self.lattice
        bot = lat.bottom()
        facts_in: Dict[int, L] = {n: bot for n in self.cfg.nodes}
        if not facts_in:
            return DataflowResult(converged=True)

        entry = self.cfg.entry
        facts_in[entry] = self.initial_value

        worklist = _Worklist(self.strategy, reverse_postorder(self.cfg))
        worklist.push(entry)
        iterations = 0

        while worklist and iterations < self.max_iterations:
            node = worklist.pop()
            iterations += 1

            fact_in = facts_in[node]
            fact_out = self.transfer(node, fact_in)

            for edge in self.cfg.successors(node):
                if self.edge_transfer is not None:
                    fact = self.edge_transfer(edge, fact_in, fact_out)
                else:
                    fact = fact_out
                old = facts_in[edge.dst]
                new = lat.join(old, fact)
                if not lat.eq(new, old):
                    facts_in[edge.dst] = new
                    worklist.push(edge.dst)

        return DataflowResult(
            facts_in=facts_in,
            iterations=iterations,
            converged=not worklist,
        )
