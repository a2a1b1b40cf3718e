"""
taintflow/problem.py
====================

The taint IFDS problem: flow functions for the four supergraph edge kinds
plus the Source / Sink policy.

Every flow function maps *one* incoming fact to the set of facts holding on
the edge target (the distributive representation of Reps–Horwitz–Sagiv):

    f(S) = ⋃_{d ∈ S} f({d})

so the solver can apply them fact by fact.  ``ZERO`` always maps to itself.

Normal flow
-----------
Dispatches on the instruction kind of the edge source:

=================  ==========================================================
``ASSIGN``         strong update of the target; tainted sources taint it;
                   a single-local source also copies fields/entries
``STORE``          literal key → strong update of that entry;
                   non-literal key → weak update, taints ``Entry(s, *)``
``LOAD``           reads ``Entry(s, key)`` and ``Entry(s, *)``;
                   non-literal key reads every entry
``MERGE``          copies every entry of the source structure
``OTHER``          identity
=================  ==========================================================

``Entry(s, *)`` is never killed.  After a key-ambiguous write the store
stays over-approximated for good; there is no decay.

Interprocedural flow
--------------------
* call:   facts rooted at actual *i* → same access path on formal *i*
* return: facts rooted at ``$ret`` → the call result; field/entry facts on
  formal *i* → actual *i* (objects are shared by reference)
* call-to-return: what the callee can see is killed here and comes back via
  return flow; unresolved calls are identity.  Contents of an actual whose
  formal the callee reassigns bypass the call as well.  A Source match generates ``Local(result)`` from ``ZERO``.
"""

from __future__ import annotations

import logging
from typing import (
    Callable,
    Dict,
    FrozenSet,
    Sequence,
    Set,
    Tuple,
)

from taintflow.domain import (
    ANY_KEY,
    ZERO,
    Entry,
    Fact,
    Field,
    Global,
    Local,
    rebase,
    root_of,
)
from taintflow.program import (
    RETURN_LOCAL,
    Assign,
    Call,
    FieldRef,
    GlobalRef,
    Instruction,
    InstructionKind,
    LocalRef,
    Procedure,
    Ref,
    StructureLoad,
    StructureMerge,
    StructureStore,
)
from taintflow.supergraph import Node, Supergraph

__all__ = ["CallPredicate", "TaintProblem"]

logger = logging.getLogger(__name__)

#: ``(call node, resolved targets) -> bool``; must be pure.
CallPredicate = Callable[[Node, Sequence[Procedure]], bool]


def _never(node: Node, targets: Sequence[Procedure]) -> bool:
    return False


class TaintProblem:
    """Flow functions and Source/Sink policy over one :class:`Supergraph`.

    The problem object is stateless apart from memoized predicate answers,
    so one instance can serve several solves.

    Parameters
    ----------
    supergraph : Supergraph
    sources : CallPredicate
        ``True`` at call sites whose result becomes tainted.
    sinks : CallPredicate
        ``True`` at call sites that must be checked once the fixpoint is
        reached.
    """

    def __init__(
        self,
        supergraph: Supergraph,
        sources: CallPredicate = _never,
        sinks: CallPredicate = _never,
    ) -> None:
        self.supergraph = supergraph
        self._sources = sources
        self._sinks = sinks
        self._source_memo: Dict[int, bool] = {}
        self._sink_memo: Dict[int, bool] = {}
        self._rebound: Dict[int, FrozenSet[str]] = {}
        self._normal: Dict[InstructionKind, Callable[[Instruction, Fact], Set[Fact]]] = {
            InstructionKind.ASSIGN: self._assign_flow,
            InstructionKind.STORE: self._store_flow,
            InstructionKind.LOAD: self._load_flow,
            InstructionKind.MERGE: self._merge_flow,
            InstructionKind.OTHER: self._identity_flow,
        }

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def targets(self, call: Node) -> Tuple[Procedure, ...]:
        sg = self.supergraph
        return tuple(sg.procedure(t) for t in sg.targets_of(call.id))

    def is_source(self, node: Node) -> bool:
        if node.kind is not InstructionKind.CALL:
            return False
        hit = self._source_memo.get(node.id)
        if hit is None:
            hit = bool(self._sources(node, self.targets(node)))
            self._source_memo[node.id] = hit
        return hit

    def is_sink(self, node: Node) -> bool:
        if node.kind is not InstructionKind.CALL:
            return False
        hit = self._sink_memo.get(node.id)
        if hit is None:
            hit = bool(self._sinks(node, self.targets(node)))
            self._sink_memo[node.id] = hit
        return hit

    def taints_actual(self, call: Node, fact: Fact) -> bool:
        """Does *fact* make an actual argument or the receiver of *call* tainted?"""
        instr = call.instruction
        if not isinstance(instr, Call):
            return False
        root = root_of(fact)
        return root is not None and root in instr.actuals

    # ------------------------------------------------------------------
    # Normal flow
    # ------------------------------------------------------------------

    def normal_flow(self, src: Node, dst: Node, fact: Fact) -> Set[Fact]:
        """Facts at *dst* given *fact* before the instruction at *src*."""
        if fact is ZERO:
            return {ZERO}
        return self._normal[src.kind](src.instruction, fact)

    def _identity_flow(self, instr: Instruction, fact: Fact) -> Set[Fact]:
        return {fact}

    def _assign_flow(self, instr: Assign, fact: Fact) -> Set[Fact]:
        out: Set[Fact] = set()
        target = instr.target
        if not self._overwrites(target, fact):
            out.add(fact)
        if any(self._reads(ref, fact) for ref in instr.sources):
            out.add(self._entity(target))
        # Reference copy: fields and entries follow the object.
        if (len(instr.sources) == 1
                and isinstance(instr.sources[0], LocalRef)
                and isinstance(target, LocalRef)
                and isinstance(fact, (Field, Entry))
                and root_of(fact) == instr.sources[0].name):
            out.add(rebase(fact, target.name))
        return out

    def _store_flow(self, instr: StructureStore, fact: Fact) -> Set[Fact]:
        out: Set[Fact] = set()
        strong = instr.key_is_literal and fact == Entry(instr.structure, instr.key)
        if not strong:
            out.add(fact)
        if (not instr.remove and instr.value is not None
                and fact == Local(instr.value)):
            key = instr.key if instr.key_is_literal else ANY_KEY
            out.add(Entry(instr.structure, key))
        return out

    def _load_flow(self, instr: StructureLoad, fact: Fact) -> Set[Fact]:
        out: Set[Fact] = set()
        if root_of(fact) != instr.target:
            out.add(fact)
        if isinstance(fact, Entry) and fact.structure == instr.structure:
            if fact.is_weak or not instr.key_is_literal or fact.key == instr.key:
                out.add(Local(instr.target))
        return out

    def _merge_flow(self, instr: StructureMerge, fact: Fact) -> Set[Fact]:
        out: Set[Fact] = {fact}
        if isinstance(fact, Entry) and fact.structure == instr.source:
            out.add(Entry(instr.target, fact.key))
        return out

    @staticmethod
    def _overwrites(target: Ref, fact: Fact) -> bool:
        if isinstance(target, LocalRef):
            return root_of(fact) == target.name
        if isinstance(target, FieldRef):
            return fact == Field(target.base, target.field)
        return fact == Global(target.name)

    @staticmethod
    def _reads(ref: Ref, fact: Fact) -> bool:
        if isinstance(ref, LocalRef):
            return fact == Local(ref.name)
        if isinstance(ref, FieldRef):
            return fact == Field(ref.base, ref.field) or fact == Local(ref.base)
        return fact == Global(ref.name)

    @staticmethod
    def _entity(ref: Ref) -> Fact:
        if isinstance(ref, LocalRef):
            return Local(ref.name)
        if isinstance(ref, FieldRef):
            return Field(ref.base, ref.field)
        if isinstance(ref, GlobalRef):
            return Global(ref.name)
        raise TypeError(f"not a reference: {ref!r}")

    # ------------------------------------------------------------------
    # Interprocedural flow
    # ------------------------------------------------------------------

    def call_flow(self, call: Node, callee: Procedure, fact: Fact) -> Set[Fact]:
        """Caller facts at *call* → callee facts at its entry."""
        if fact is ZERO or isinstance(fact, Global):
            return {fact}
        root = root_of(fact)
        out: Set[Fact] = set()
        actuals = call.instruction.actuals  # type: ignore[union-attr]
        for actual, formal in zip(actuals, callee.params):
            if actual == root:
                out.add(rebase(fact, formal))
        return out

    def return_flow(self, exit_node: Node, return_site: Node, call: Node,
                    fact: Fact) -> Set[Fact]:
        """Callee facts at *exit_node* → caller facts at *return_site*."""
        if fact is ZERO or isinstance(fact, Global):
            return {fact}
        instr: Call = call.instruction  # type: ignore[assignment]
        callee = self.supergraph.procedure(exit_node.procedure)
        root = root_of(fact)
        out: Set[Fact] = set()
        if root == RETURN_LOCAL and instr.result is not None:
            out.add(rebase(fact, instr.result))
        if isinstance(fact, (Field, Entry)):
            for actual, formal in zip(instr.actuals, callee.params):
                if formal == root:
                    out.add(rebase(fact, actual))
        return out

    def call_to_return_flow(self, call: Node, return_site: Node,
                            fact: Fact) -> Set[Fact]:
        """Facts that bypass the callee, plus Source seeding."""
        instr: Call = call.instruction  # type: ignore[assignment]
        if fact is ZERO:
            out: Set[Fact] = {ZERO}
            if self.is_source(call):
                if instr.result is not None:
                    out.add(Local(instr.result))
                else:
                    logger.debug("source %r has no result to taint", call)
            return out

        targets = self.targets(call)
        if not targets:
            return {fact}
        if isinstance(fact, Global):
            return set()
        root = root_of(fact)
        if instr.result is not None and root == instr.result:
            return set()
        if isinstance(fact, (Field, Entry)) and root in self._shared_actuals(call, targets):
            return set()
        return {fact}

    def _shared_actuals(self, call: Node, targets: Sequence[Procedure]) -> FrozenSet[str]:
        """Actuals whose contents travel through every target.

        An actual qualifies when each target binds it to a formal that the
        target never reassigns.
        """
        actuals = call.instruction.actuals  # type: ignore[union-attr]
        shared = None
        for proc in targets:
            rebound = self._rebound_formals(proc)
            bound = frozenset(actual for actual, formal in zip(actuals, proc.params)
                              if formal not in rebound)
            shared = bound if shared is None else shared & bound
        return shared or frozenset()

    def _rebound_formals(self, proc: Procedure) -> FrozenSet[str]:
        """Formals written anywhere in *proc*; after such a write the formal
        may no longer alias the caller's object."""
        hit = self._rebound.get(proc.pid)
        if hit is None:
            written: Set[str] = set()
            for instr in proc.instructions:
                if isinstance(instr, Assign) and isinstance(instr.target, LocalRef):
                    written.add(instr.target.name)
                elif isinstance(instr, StructureLoad):
                    written.add(instr.target)
                elif isinstance(instr, Call) and instr.result is not None:
                    written.add(instr.result)
            hit = frozenset(written.intersection(proc.params))
            self._rebound[proc.pid] = hit
        return hit
