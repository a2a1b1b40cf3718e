"""
taintflow/policies.py
=====================

Ready-made Source / Sink predicates.

A predicate receives the call :class:`~taintflow.supergraph.Node` and the
procedures the call may resolve to, and answers ``True`` when the call is a
source (its result becomes tainted) or a sink (its actuals are checked).

Typical usage::

    sources = calls_to("source", suffix=True)
    sinks = any_of(calls_to("sink"), crosses_into(Runtime.SCRIPT))

Literal-key subtleties ("only after a non-constant key write") are not
expressed here; they live in the structure-store flow function.
"""

from __future__ import annotations

from typing import Sequence

from taintflow.problem import CallPredicate
from taintflow.program import Call, Procedure, Runtime
from taintflow.supergraph import Node

__all__ = [
    "calls_to",
    "crosses_into",
    "any_of",
    "all_of",
    "negate",
]


def calls_to(*names: str, suffix: bool = False) -> CallPredicate:
    """Match calls whose target (or, if unresolved, callee name) is in *names*.

    With ``suffix=True`` a name matches when it *ends with* one of *names*,
    which suits qualified names such as ``"Lfixtures/Test.source"``.
    """
    wanted = tuple(names)

    def _hit(name: str) -> bool:
        if suffix:
            return name.endswith(wanted)
        return name in wanted

    def predicate(node: Node, targets: Sequence[Procedure]) -> bool:
        if targets:
            return any(_hit(t.name) for t in targets)
        instr = node.instruction
        return isinstance(instr, Call) and _hit(instr.callee)

    predicate.__name__ = f"calls_to({', '.join(wanted)})"
    return predicate


def crosses_into(runtime: Runtime) -> CallPredicate:
    """Match calls that may transfer control into *runtime*."""

    def predicate(node: Node, targets: Sequence[Procedure]) -> bool:
        return any(t.runtime is runtime for t in targets)

    predicate.__name__ = f"crosses_into({runtime.value})"
    return predicate


def any_of(*predicates: CallPredicate) -> CallPredicate:
    def predicate(node: Node, targets: Sequence[Procedure]) -> bool:
        return any(p(node, targets) for p in predicates)

    return predicate


def all_of(*predicates: CallPredicate) -> CallPredicate:
    def predicate(node: Node, targets: Sequence[Procedure]) -> bool:
        return all(p(node, targets) for p in predicates)

    return predicate


def negate(inner: CallPredicate) -> CallPredicate:
    def predicate(node: Node, targets: Sequence[Procedure]) -> bool:
        return not inner(node, targets)

    return predicate
