"""
taintflow/results.py
====================

Post-processing of a finished solve: sink detection and witness
reconstruction.

For every call node the Sink predicate flagged, the facts reaching that
node are inspected; a fact rooted at one of the call's actuals (receiver or
argument) makes a :class:`Finding`.  A sink that was only ever reached with
Λ matched independently of any tracked taint and is not reported.

Witnesses are rebuilt by walking the solver's justifications backwards:

    sink edge → predecessor edge → … → edge holding Λ at the Source call

When the walk steps back over a return it remembers the caller edge the
return was matched with, and on reaching the callee's entry it resumes at
that caller, so the witness follows one interprocedurally valid path.  If
that matched walk revisits an edge (possible under recursion) the plain
first-discovery chain is used instead.  A walk that cannot be completed is
logged and the finding is kept without a witness.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import (
    FrozenSet,
    Iterator,
    List,
    Optional,
    Set,
    Tuple,
)

from taintflow.domain import Fact
from taintflow.errors import WitnessReconstructionError
from taintflow.problem import TaintProblem
from taintflow.program import Call, SourcePosition
from taintflow.solver import PathEdge, SolverResult, SolverStats
from taintflow.supergraph import Node

__all__ = ["Finding", "TaintReport", "ResultExtractor"]

logger = logging.getLogger(__name__)

_ZERO_ID = 0


@dataclass(frozen=True)
class Finding:
    """Tainted data reaching a sink call.

    Attributes
    ----------
    sink : Node
        The flagged call node.
    facts : tuple[Fact, ...]
        Tainted entities rooted at the call's actuals.
    witness : tuple[Node, ...]
        Source call first, sink call last; empty when reconstruction failed
        or witnesses were not tracked.
    """

    sink: Node
    facts: Tuple[Fact, ...]
    witness: Tuple[Node, ...] = ()

    @property
    def has_witness(self) -> bool:
        return bool(self.witness)

    @property
    def source(self) -> Optional[Node]:
        return self.witness[0] if self.witness else None

    @property
    def positions(self) -> Tuple[Optional[SourcePosition], ...]:
        return tuple(n.position for n in self.witness)

    @property
    def endpoints(self) -> Tuple[Optional[int], int]:
        """``(source node id, sink node id)``."""
        src = self.source
        return (src.id if src is not None else None, self.sink.id)

    def format_message(self) -> str:
        instr = self.sink.instruction
        callee = instr.callee if isinstance(instr, Call) else str(instr)
        where = str(self.sink.position) if self.sink.position else repr(self.sink)
        facts = ", ".join(repr(f) for f in self.facts)
        msg = f"{where}: tainted {facts} reaches sink '{callee}'"
        src = self.source
        if src is not None:
            msg += f" (from {src.position or src!r})"
        return msg

    def format_path(self) -> str:
        return " -> ".join(str(n.position) if n.position else repr(n)
                           for n in self.witness)


@dataclass
class TaintReport:
    """All findings of one solve."""

    findings: List[Finding] = field(default_factory=list)
    incomplete: bool = False
    stats: SolverStats = field(default_factory=SolverStats)

    @property
    def has_findings(self) -> bool:
        return bool(self.findings)

    def sinks(self) -> FrozenSet[int]:
        return frozenset(f.sink.id for f in self.findings)

    def sources(self) -> FrozenSet[int]:
        return frozenset(f.source.id for f in self.findings if f.source is not None)

    def endpoints(self) -> FrozenSet[Tuple[Optional[int], int]]:
        return frozenset(f.endpoints for f in self.findings)

    def sink_positions(self) -> List[str]:
        return [str(f.sink.position) for f in self.findings if f.sink.position]

    def __iter__(self) -> Iterator[Finding]:
        return iter(self.findings)

    def __len__(self) -> int:
        return len(self.findings)


class ResultExtractor:
    """Turns a :class:`SolverResult` into a :class:`TaintReport`."""

    def __init__(self, result: SolverResult, problem: TaintProblem) -> None:
        self.result = result
        self.problem = problem
        self._sg = result.supergraph

    def extract(self) -> TaintReport:
        lookup = self.result.domain.lookup
        findings: List[Finding] = []
        for nid in sorted(self.result.sink_nodes):
            node = self._sg.node(nid)
            tainted = sorted(
                d for d in self.result.fact_ids_at(nid)
                if d != _ZERO_ID and self.problem.taints_actual(node, lookup(d))
            )
            if not tainted:
                continue
            witness: Tuple[Node, ...] = ()
            for d in tainted:
                witness = self.witness(nid, d)
                if witness:
                    break
            findings.append(Finding(node, tuple(lookup(d) for d in tainted), witness))

        if self.result.incomplete:
            logger.warning("solve was incomplete; %d findings may be partial", len(findings))
        return TaintReport(findings, self.result.incomplete, self.result.stats)

    # ------------------------------------------------------------------
    # Witnesses
    # ------------------------------------------------------------------

    def witness(self, nid: int, fact_id: int) -> Tuple[Node, ...]:
        """Source-to-sink node chain for ``(nid, fact_id)``; ``()`` if none."""
        if not self.result.has_justifications:
            logger.debug("no justifications recorded; skipping witness for N%d", nid)
            return ()
        edge = self.result.edge_for(nid, fact_id)
        if edge is None:
            return ()
        try:
            try:
                chain = self._walk(edge, matched=True)
            except WitnessReconstructionError:
                chain = self._walk(edge, matched=False)
        except WitnessReconstructionError as exc:
            logger.warning("%s; reporting finding without witness", exc)
            return ()
        return tuple(self._sg.node(n) for n in reversed(chain))

    def _walk(self, edge: PathEdge, *, matched: bool) -> List[int]:
        chain: List[int] = []
        stack: List[PathEdge] = []
        # An edge may be revisited under a different pending caller.
        seen: Set[Tuple[PathEdge, Optional[PathEdge]]] = set()
        cur = edge
        while True:
            key = (cur, stack[-1] if stack else None)
            if key in seen or len(stack) > len(self.result.path_edges):
                raise WitnessReconstructionError(
                    self._sg.node(edge[2]), self.result.domain.lookup(edge[3]),
                    "justification cycle")
            seen.add(key)
            sp, d1, n, d = cur
            chain.append(n)
            if d == _ZERO_ID:
                if not self.problem.is_source(self._sg.node(n)):
                    raise WitnessReconstructionError(
                        self._sg.node(edge[2]), self.result.domain.lookup(edge[3]),
                        f"chain reaches Λ at non-source node N{n}")
                return chain
            # Callee entry: resume at the caller the return was matched with.
            if matched and stack and sp == n and d1 == d:
                cur = stack.pop()
                continue
            just = self.result.justification(cur)
            if just is None or just[0] is None:
                raise WitnessReconstructionError(
                    self._sg.node(n), self.result.domain.lookup(d),
                    "no justifying predecessor")
            pred, caller = just
            if matched and caller is not None:
                stack.append(caller)
            cur = pred
