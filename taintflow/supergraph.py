"""
taintflow/supergraph.py
=======================

The interprocedural supergraph G* combining all per-procedure CFGs with
call / return / call-to-return edges.

From Reps–Horwitz–Sagiv (POPL '95):
    G* = (N*, E*)  where
    N* = ⋃_p N_p   (union of all intra-procedural nodes)
    E* = E_intra ∪ E_call ∪ E_ret ∪ E_call-to-return

For a call node c with possible targets T1..Tn and local successors
(return sites) r1..rm:

*  a CALL edge c → entry(Ti) for every target,
*  a RETURN edge exit(Ti) → rj for every target and return site,
*  a CALL_TO_RETURN edge c → rj for every return site.

The plain intraprocedural edges out of c are replaced by the
call-to-return edges.  An unresolved call (no targets) therefore keeps
exactly one way forward: its call-to-return edge.

Nodes and procedures are dense integers; adjacency is kept in tables
indexed by node id.  The graph is immutable after construction and may be
shared between concurrent solves.
"""

from __future__ import annotations

import enum
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import (
    Dict,
    FrozenSet,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
)

from taintflow.errors import MalformedProgramError
from taintflow.program import (
    Call,
    CallGraphProvider,
    Instruction,
    InstructionKind,
    Procedure,
    SourcePosition,
)

__all__ = ["EdgeKind", "Node", "SuperEdge", "Supergraph"]

logger = logging.getLogger(__name__)


class EdgeKind(enum.Enum):
    """Classification of edges in the interprocedural supergraph."""

    NORMAL = "normal"                  # edge within a procedure
    CALL = "call"                      # call site → callee entry
    RETURN = "return"                  # callee exit → return site
    CALL_TO_RETURN = "call-to-return"  # call site → return site, bypassing the callee


@dataclass(frozen=True)
class Node:
    """A program point: one instruction of one procedure."""

    id: int
    procedure: int
    index: int
    instruction: Instruction
    procedure_name: str = ""
    position: Optional[SourcePosition] = None

    @property
    def kind(self) -> InstructionKind:
        return self.instruction.kind

    def __repr__(self) -> str:
        name = self.procedure_name or str(self.procedure)
        return f"N{self.id}({name}@{self.index}: {self.instruction})"


@dataclass(frozen=True)
class SuperEdge:
    src: int
    dst: int
    kind: EdgeKind


class Supergraph:
    """Immutable supergraph over a :class:`CallGraphProvider`.

    Malformed frontend data raises :class:`MalformedProgramError` during
    construction.
    """

    def __init__(self, provider: CallGraphProvider) -> None:
        self._provider = provider
        self._procedures: Tuple[Procedure, ...] = tuple(provider.procedures())
        self._nodes: List[Node] = []
        self._offsets: List[int] = []
        self._succ: Dict[int, List[SuperEdge]] = defaultdict(list)
        self._pred: Dict[int, List[SuperEdge]] = defaultdict(list)
        # A node pair may carry more than one kind: a self-recursive call
        # whose return site is the procedure's own entry.
        self._kinds: Dict[Tuple[int, int], List[EdgeKind]] = defaultdict(list)
        self._edge_set: Set[SuperEdge] = set()

        self._return_sites: Dict[int, Tuple[int, ...]] = {}
        self._targets: Dict[int, Tuple[int, ...]] = {}
        self._callers: Dict[int, List[int]] = defaultdict(list)

        self._build()
        self._entrypoints: Tuple[int, ...] = self._resolve_entrypoints()

        logger.debug("built %r", self)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def _build(self) -> None:
        # Phase 1: allocate node ids, procedure by procedure
        for slot, proc in enumerate(self._procedures):
            if proc.pid != slot:
                raise MalformedProgramError(
                    f"procedure claims id {proc.pid} but occupies arena slot {slot}",
                    procedure=proc.name)
            self._check_procedure(proc)
            self._offsets.append(len(self._nodes))
            for index, instr in enumerate(proc.instructions):
                self._nodes.append(Node(
                    id=len(self._nodes),
                    procedure=proc.pid,
                    index=index,
                    instruction=instr,
                    procedure_name=proc.name,
                    position=proc.position(index),
                ))

        self._check_call_sites()

        # Phase 2: intraprocedural edges, call sites get interprocedural wiring
        for proc in self._procedures:
            for index, instr in enumerate(proc.instructions):
                nid = self.node_at(proc.pid, index)
                if instr.kind is InstructionKind.CALL:
                    self._wire_call(proc, index)
                    continue
                for succ in proc.successors(index):
                    self._add(nid, self.node_at(proc.pid, succ), EdgeKind.NORMAL)

    def _check_procedure(self, proc: Procedure) -> None:
        size = len(proc.instructions)
        if size == 0:
            raise MalformedProgramError("procedure has no instructions",
                                        procedure=proc.name)
        for label, index in (("entry", proc.entry), ("exit", proc.exit)):
            if not 0 <= index < size:
                raise MalformedProgramError(
                    f"{label} index {index} outside 0..{size - 1}",
                    procedure=proc.name)
        for src, dst in proc.edges:
            if not (0 <= src < size and 0 <= dst < size):
                raise MalformedProgramError(
                    f"control-flow edge {src}->{dst} leaves the procedure",
                    procedure=proc.name,
                    hint="every local edge must connect two of the procedure's own instructions")
        if proc.instruction_kind(proc.exit) is InstructionKind.CALL:
            raise MalformedProgramError("exit instruction may not be a call",
                                        procedure=proc.name, index=proc.exit)

    def _check_call_sites(self) -> None:
        """Targets may only be reported for call instructions."""
        for proc in self._procedures:
            for index, instr in enumerate(proc.instructions):
                if instr.kind is InstructionKind.CALL:
                    continue
                if self._provider.possible_targets(proc.pid, index):
                    raise MalformedProgramError(
                        "call targets reported for a non-call instruction",
                        procedure=proc.name, index=index)

    def _wire_call(self, proc: Procedure, index: int) -> None:
        call_nid = self.node_at(proc.pid, index)
        targets = sorted(self._provider.possible_targets(proc.pid, index))
        for t in targets:
            if not 0 <= t < len(self._procedures):
                raise MalformedProgramError(
                    f"call target {t} is not a known procedure",
                    procedure=proc.name, index=index)

        return_sites = tuple(self.node_at(proc.pid, s) for s in proc.successors(index))
        if not return_sites:
            logger.debug("call %s@%d has no return site", proc.name, index)

        self._return_sites[call_nid] = return_sites
        self._targets[call_nid] = tuple(targets)

        for rs in return_sites:
            self._add(call_nid, rs, EdgeKind.CALL_TO_RETURN)

        for t in targets:
            callee = self._procedures[t]
            self._add(call_nid, self.node_at(t, callee.entry), EdgeKind.CALL)
            callee_exit = self.node_at(t, callee.exit)
            for rs in return_sites:
                self._add(callee_exit, rs, EdgeKind.RETURN)
            self._callers[t].append(call_nid)

        if not targets:
            call: Call = proc.instruction(index)  # type: ignore[assignment]
            logger.debug("unresolved call to %s in %s@%d; call-to-return only",
                         call.callee, proc.name, index)

    def _add(self, src: int, dst: int, kind: EdgeKind) -> None:
        edge = SuperEdge(src, dst, kind)
        if edge in self._edge_set:
            return
        self._edge_set.add(edge)
        self._kinds[(src, dst)].append(kind)
        self._succ[src].append(edge)
        self._pred[dst].append(edge)

    def _resolve_entrypoints(self) -> Tuple[int, ...]:
        result = []
        for pid in self._provider.entrypoints():
            if not 0 <= pid < len(self._procedures):
                raise MalformedProgramError(f"entrypoint {pid} is not a known procedure")
            result.append(pid)
        return tuple(result)

    # ------------------------------------------------------------------
    # Query API
    # ------------------------------------------------------------------

    def node(self, nid: int) -> Node:
        return self._nodes[nid]

    def node_at(self, pid: int, index: int) -> int:
        """Node id of instruction *index* in procedure *pid*."""
        return self._offsets[pid] + index

    def nodes(self) -> Sequence[Node]:
        return self._nodes

    def procedure(self, pid: int) -> Procedure:
        return self._procedures[pid]

    def procedures(self) -> Sequence[Procedure]:
        return self._procedures

    def successors(self, nid: int) -> List[SuperEdge]:
        return self._succ.get(nid, [])

    def predecessors(self, nid: int) -> List[SuperEdge]:
        return self._pred.get(nid, [])

    def edge_kinds(self, src: int, dst: int) -> FrozenSet[EdgeKind]:
        """Every kind of edge ``src → dst``; empty if there is none."""
        return frozenset(self._kinds.get((src, dst), ()))

    def edge_kind(self, src: int, dst: int) -> EdgeKind:
        """Kind of the edge ``src → dst``.

        ``KeyError`` if there is none, ``ValueError`` if the pair carries
        several kinds (use :meth:`edge_kinds` there).
        """
        kinds = self._kinds.get((src, dst))
        if not kinds:
            raise KeyError((src, dst))
        if len(kinds) > 1:
            raise ValueError(
                f"N{src} -> N{dst} carries {len(kinds)} edge kinds: "
                + ", ".join(k.value for k in kinds))
        return kinds[0]

    def entry_of(self, pid: int) -> int:
        return self.node_at(pid, self._procedures[pid].entry)

    def exit_of(self, pid: int) -> int:
        return self.node_at(pid, self._procedures[pid].exit)

    def is_call(self, nid: int) -> bool:
        return nid in self._targets

    def is_exit(self, nid: int) -> bool:
        node = self._nodes[nid]
        return self._procedures[node.procedure].exit == node.index

    def targets_of(self, call_nid: int) -> Tuple[int, ...]:
        """Procedure ids the call may invoke (empty when unresolved)."""
        return self._targets.get(call_nid, ())

    def return_sites(self, call_nid: int) -> Tuple[int, ...]:
        return self._return_sites.get(call_nid, ())

    def callers_of(self, pid: int) -> Sequence[int]:
        """Call nodes that may invoke procedure *pid*."""
        return self._callers.get(pid, [])

    @property
    def entrypoints(self) -> Tuple[int, ...]:
        return self._entrypoints

    def __len__(self) -> int:
        return len(self._nodes)

    def __repr__(self) -> str:
        n_edges = sum(len(v) for v in self._succ.values())
        return (f"Supergraph(procedures={len(self._procedures)}, "
                f"nodes={len(self._nodes)}, edges={n_edges})")
