"""
taintflow/solver.py
===================

The IFDS tabulation algorithm (Reps–Horwitz–Sagiv, POPL 1995) in its
partially balanced form.

Reachability is computed over the exploded supergraph G#, whose nodes are
``(supergraph node, fact)`` pairs.  The working set is the set of *path
edges*

    (s_p, d₁) → (n, d₂)

meaning "entering procedure p at its entry s_p with fact d₁, fact d₂ can
hold at n".  Path edges are integer 4-tuples ``(s_p, d₁, n, d₂)`` of
supergraph node ids and :class:`~taintflow.domain.Domain` fact ids.

Algorithm outline:
    1. Seed ``(entry, Λ) → (entry, Λ)`` for every entrypoint.
    2. Pop a path edge and dispatch on the role of n:
       * call node: push facts into each callee (seeding the callee's
         self edge), reuse memoized summaries for ``(callee, d)``, and
         apply call-to-return flow;
       * exit node: memoize ``(p, d₁) → d₂`` as a summary and return it to
         every caller that entered p with d₁;
       * other: normal flow to each successor.
    3. Stop when the worklist is empty (or the ceiling is hit).

Recursion needs no call stack: it is handled entirely by the summary
table keyed by ``(procedure id, entry fact id)``.

Each path edge remembers the first edge that produced it, so that the
result extractor can rebuild a witness afterwards.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import (
    Deque,
    Dict,
    FrozenSet,
    Iterable,
    Optional,
    Sequence,
    Set,
    Tuple,
)

from taintflow.config import DEFAULT_CONFIG, SolverConfig
from taintflow.domain import Domain, Fact
from taintflow.errors import ConfigurationError, PathEdgeLimitExceeded
from taintflow.problem import TaintProblem
from taintflow.supergraph import EdgeKind, Node, Supergraph

__all__ = [
    "PathEdge",
    "Justification",
    "SolverStats",
    "SolverResult",
    "TabulationSolver",
]

logger = logging.getLogger(__name__)

#: ``(entry node, entry fact id, node, fact id)``
PathEdge = Tuple[int, int, int, int]

#: ``(predecessor path edge, caller path edge)``.  The caller edge is only
#: set for edges created by returning from a callee: it is the edge at the
#: call node that the return was matched with.
Justification = Tuple[Optional[PathEdge], Optional[PathEdge]]

_ZERO_ID = 0


@dataclass
class SolverStats:
    path_edges: int = 0
    processed: int = 0
    summaries: int = 0
    facts: int = 0
    elapsed: float = 0.0


@dataclass
class SolverResult:
    """Outcome of one solve.

    Attributes
    ----------
    supergraph, domain
        The inputs the ids below refer to.
    path_edges : set[PathEdge]
        Every path edge discovered.
    summaries : dict[(pid, fact id)] → set[fact id]
        Memoized procedure summaries.
    sink_nodes : set[int]
        Call nodes the Sink predicate flagged during the solve.
    incomplete : bool
        ``True`` if the path-edge ceiling stopped the solve early.
    """

    supergraph: Supergraph
    domain: Domain
    path_edges: Set[PathEdge]
    summaries: Dict[Tuple[int, int], Set[int]]
    sink_nodes: Set[int]
    incomplete: bool = False
    stats: SolverStats = field(default_factory=SolverStats)
    _at_node: Dict[int, Dict[int, PathEdge]] = field(default_factory=dict, repr=False)
    _justifications: Dict[PathEdge, Justification] = field(default_factory=dict, repr=False)

    # ---- queries --------------------------------------------------------

    def fact_ids_at(self, nid: int) -> FrozenSet[int]:
        return frozenset(self._at_node.get(nid, {}))

    def facts_at(self, nid: int) -> FrozenSet[Fact]:
        """Non-ZERO facts holding at node *nid* in any context."""
        lookup = self.domain.lookup
        return frozenset(lookup(d) for d in self._at_node.get(nid, {}) if d != _ZERO_ID)

    def holds(self, nid: int, fact: Fact) -> bool:
        if fact not in self.domain:
            return False
        return self.domain.id_of(fact) in self._at_node.get(nid, {})

    def reached_nodes(self) -> Iterable[int]:
        return self._at_node.keys()

    def edge_for(self, nid: int, fact_id: int) -> Optional[PathEdge]:
        """First path edge discovered that ends in ``(nid, fact_id)``."""
        return self._at_node.get(nid, {}).get(fact_id)

    def edges_at(self, nid: int, fact_id: int) -> FrozenSet[PathEdge]:
        """Every path edge ending in ``(nid, fact_id)``, one per context."""
        return frozenset(e for e in self.path_edges if e[2] == nid and e[3] == fact_id)

    def justification(self, edge: PathEdge) -> Optional[Justification]:
        return self._justifications.get(edge)

    @property
    def has_justifications(self) -> bool:
        return bool(self._justifications)

    def summary(self, pid: int, fact: Fact) -> FrozenSet[Fact]:
        """Exit facts of procedure *pid* when entered with *fact*."""
        if fact not in self.domain:
            return frozenset()
        exits = self.summaries.get((pid, self.domain.id_of(fact)), ())
        return frozenset(self.domain.lookup(d) for d in exits)


class TabulationSolver:
    """Worklist IFDS solver for a :class:`TaintProblem`.

    One instance is one solve's worth of mutable state and must be driven
    from a single thread.  Independent solves may share the supergraph,
    the problem and the domain.

    Parameters
    ----------
    problem : TaintProblem
    domain : Domain, optional
        Fact table; a fresh one is created when omitted.
    config : SolverConfig, optional
    entrypoints : sequence of procedure ids, optional
        Defaults to the supergraph's entrypoints.
    """

    def __init__(
        self,
        problem: TaintProblem,
        *,
        domain: Optional[Domain] = None,
        config: Optional[SolverConfig] = None,
        entrypoints: Optional[Sequence[int]] = None,
    ) -> None:
        self.problem = problem
        self.domain = domain if domain is not None else Domain()
        self.config = config or DEFAULT_CONFIG
        self._sg: Supergraph = problem.supergraph
        self._entrypoints: Tuple[int, ...] = (
            tuple(entrypoints) if entrypoints is not None else self._sg.entrypoints)
        if not self._entrypoints:
            raise ConfigurationError("entrypoints", self._entrypoints,
                                     "at least one entrypoint is required")
        self.reset()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Drop all path edges, summaries and justifications."""
        self._worklist: Deque[PathEdge] = deque()
        self._path_edges: Set[PathEdge] = set()
        self._at_node: Dict[int, Dict[int, PathEdge]] = defaultdict(dict)
        self._justifications: Dict[PathEdge, Justification] = {}
        # (callee pid, entry fact) -> exit facts
        self._summaries: Dict[Tuple[int, int], Set[int]] = defaultdict(set)
        # (callee pid, entry fact) -> caller path edges at call nodes (ordered)
        self._incoming: Dict[Tuple[int, int], Dict[PathEdge, None]] = defaultdict(dict)
        # (entry node, entry fact) contexts without a matching caller
        self._unbalanced: Set[Tuple[int, int]] = set()
        self._sink_nodes: Set[int] = set()
        self._processed = 0

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def solve(self) -> SolverResult:
        self.reset()
        started = time.perf_counter()
        for pid in self._entrypoints:
            entry = self._sg.entry_of(pid)
            self._unbalanced.add((entry, _ZERO_ID))
            self._propagate((entry, _ZERO_ID, entry, _ZERO_ID), None)

        incomplete = False
        limit = self.config.max_path_edges
        try:
            while self._worklist:
                if limit is not None and self._processed >= limit:
                    raise PathEdgeLimitExceeded(limit, self._processed)
                edge = self._worklist.popleft()
                self._processed += 1
                self._process(edge)
        except PathEdgeLimitExceeded as exc:
            logger.warning("%s; returning partial result", exc)
            incomplete = True

        stats = SolverStats(
            path_edges=len(self._path_edges),
            processed=self._processed,
            summaries=sum(len(v) for v in self._summaries.values()),
            facts=len(self.domain),
            elapsed=time.perf_counter() - started,
        )
        logger.info(
            "solve finished: %d path edges (%d processed), %d summary edges, "
            "%d facts, %d sinks flagged in %.3fs%s",
            stats.path_edges, stats.processed, stats.summaries, stats.facts,
            len(self._sink_nodes), stats.elapsed,
            " [INCOMPLETE]" if incomplete else "",
        )
        return SolverResult(
            supergraph=self._sg,
            domain=self.domain,
            path_edges=self._path_edges,
            summaries=dict(self._summaries),
            sink_nodes=set(self._sink_nodes),
            incomplete=incomplete,
            stats=stats,
            _at_node=dict(self._at_node),
            _justifications=self._justifications,
        )

    def _propagate(self, edge: PathEdge, pred: Optional[PathEdge],
                   caller: Optional[PathEdge] = None) -> None:
        """Record *edge* and enqueue it if it is new."""
        if edge in self._path_edges:
            return
        self._path_edges.add(edge)
        if self.config.track_witnesses:
            self._justifications[edge] = (pred, caller)
        self._at_node[edge[2]].setdefault(edge[3], edge)
        self._worklist.append(edge)

    def _process(self, edge: PathEdge) -> None:
        n = edge[2]
        node = self._sg.node(n)
        if self._sg.is_call(n):
            self._process_call(edge, node)
            return
        if self._sg.is_exit(n):
            self._process_exit(edge, node)
        self._process_normal(edge, node)

    # ------------------------------------------------------------------
    # Edge handlers
    # ------------------------------------------------------------------

    def _process_normal(self, edge: PathEdge, node: Node) -> None:
        sp, d1, _, d2 = edge
        fact = self.domain.lookup(d2)
        for succ in self._sg.successors(node.id):
            if succ.kind is not EdgeKind.NORMAL:
                continue
            for f3 in self.problem.normal_flow(node, self._sg.node(succ.dst), fact):
                self._propagate((sp, d1, succ.dst, self.domain.get_or_create(f3)), edge)

    def _process_call(self, edge: PathEdge, node: Node) -> None:
        sp, d1, n, d2 = edge
        if self.problem.is_sink(node):
            self._sink_nodes.add(n)
        fact = self.domain.lookup(d2)

        for pid in self._sg.targets_of(n):
            callee = self._sg.procedure(pid)
            entry = self._sg.entry_of(pid)
            exit_ = self._sg.exit_of(pid)
            for f3 in self.problem.call_flow(node, callee, fact):
                d3 = self.domain.get_or_create(f3)
                self._incoming[(pid, d3)][edge] = None
                self._propagate((entry, d3, entry, d3), edge)
                # Memoized summary for (callee, d3): apply without re-analysis.
                for d4 in list(self._summaries.get((pid, d3), ())):
                    self._return_into(edge, node, exit_, d4, (entry, d3, exit_, d4))

        for rs in self._sg.return_sites(n):
            rs_node = self._sg.node(rs)
            for f3 in self.problem.call_to_return_flow(node, rs_node, fact):
                self._propagate((sp, d1, rs, self.domain.get_or_create(f3)), edge)

    def _process_exit(self, edge: PathEdge, node: Node) -> None:
        sp, d1, n, d2 = edge
        pid = node.procedure
        self._summaries[(pid, d1)].add(d2)

        for caller_edge in list(self._incoming.get((pid, d1), ())):
            call_node = self._sg.node(caller_edge[2])
            self._return_into(caller_edge, call_node, n, d2, edge)

        if self.config.unbalanced_returns and (sp, d1) in self._unbalanced:
            self._return_unbalanced(edge, node)

    def _return_into(self, caller_edge: PathEdge, call_node: Node, exit_nid: int,
                     d_exit: int, exit_edge: PathEdge) -> None:
        sp, d1, c, _ = caller_edge
        exit_node = self._sg.node(exit_nid)
        fact = self.domain.lookup(d_exit)
        for rs in self._sg.return_sites(c):
            for f5 in self.problem.return_flow(exit_node, self._sg.node(rs), call_node, fact):
                self._propagate((sp, d1, rs, self.domain.get_or_create(f5)),
                                exit_edge, caller_edge)

    def _return_unbalanced(self, exit_edge: PathEdge, exit_node: Node) -> None:
        """Return past an entrypoint into every caller, in a fresh Λ context."""
        fact = self.domain.lookup(exit_edge[3])
        for c in self._sg.callers_of(exit_node.procedure):
            call_node = self._sg.node(c)
            caller_entry = self._sg.entry_of(call_node.procedure)
            self._unbalanced.add((caller_entry, _ZERO_ID))
            for rs in self._sg.return_sites(c):
                for f5 in self.problem.return_flow(exit_node, self._sg.node(rs),
                                                   call_node, fact):
                    self._propagate(
                        (caller_entry, _ZERO_ID, rs, self.domain.get_or_create(f5)),
                        exit_edge)

    # ------------------------------------------------------------------
    # Queries on the live state
    # ------------------------------------------------------------------

    @property
    def processed(self) -> int:
        return self._processed

    def summary_cache(self) -> Dict[Tuple[int, int], FrozenSet[int]]:
        return {k: frozenset(v) for k, v in self._summaries.items()}
