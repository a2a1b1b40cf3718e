"""
taintflow/analysis.py
=====================

Convenience entry points that wire Supergraph → TaintProblem →
TabulationSolver → ResultExtractor.

    analyze_taint()          one solve over the program's entrypoints
    analyze_entrypoints()    one independent solve per entrypoint, run on a
                             thread pool over a shared supergraph and domain

Typical usage
-------------
    >>> from taintflow import analyze_taint, calls_to
    >>> report = analyze_taint(program, calls_to("source"), calls_to("sink"))
    >>> for finding in report:
    ...     print(finding.format_message())
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Optional, Sequence, Union

from taintflow.config import DEFAULT_CONFIG, SolverConfig
from taintflow.domain import Domain
from taintflow.problem import CallPredicate, TaintProblem
from taintflow.program import CallGraphProvider
from taintflow.results import ResultExtractor, TaintReport
from taintflow.solver import TabulationSolver
from taintflow.supergraph import Supergraph

__all__ = ["analyze_taint", "analyze_entrypoints"]

logger = logging.getLogger(__name__)

ProgramLike = Union[Supergraph, CallGraphProvider]


def _supergraph(program: ProgramLike) -> Supergraph:
    if isinstance(program, Supergraph):
        return program
    return Supergraph(program)


def analyze_taint(
    program: ProgramLike,
    sources: CallPredicate,
    sinks: CallPredicate,
    *,
    config: Optional[SolverConfig] = None,
    entrypoints: Optional[Sequence[int]] = None,
    domain: Optional[Domain] = None,
) -> TaintReport:
    """Run one taint solve and extract its findings.

    Parameters
    ----------
    program
        A :class:`CallGraphProvider` (e.g. :class:`~taintflow.program.Program`)
        or an already built :class:`Supergraph`.
    sources, sinks
        Call predicates, see :mod:`taintflow.policies`.
    config
        Solver knobs; :data:`~taintflow.config.DEFAULT_CONFIG` when omitted.
    entrypoints
        Procedure ids to start from; defaults to the program's entrypoints.
    domain
        Fact table to reuse; a fresh one when omitted.
    """
    sg = _supergraph(program)
    problem = TaintProblem(sg, sources, sinks)
    solver = TabulationSolver(problem, domain=domain, config=config,
                              entrypoints=entrypoints)
    result = solver.solve()
    return ResultExtractor(result, problem).extract()


def analyze_entrypoints(
    program: ProgramLike,
    sources: CallPredicate,
    sinks: CallPredicate,
    *,
    config: Optional[SolverConfig] = None,
    entrypoints: Optional[Sequence[int]] = None,
) -> Dict[int, TaintReport]:
    """Solve each entrypoint independently and concurrently.

    Every solve owns its worklist, path edges and summary cache; the
    supergraph, the problem and the (lock-guarded) domain are shared.
    Returns ``{entrypoint pid: report}``.
    """
    config = config or DEFAULT_CONFIG
    sg = _supergraph(program)
    problem = TaintProblem(sg, sources, sinks)
    domain = Domain()
    pids = tuple(entrypoints) if entrypoints is not None else sg.entrypoints

    def _solve_one(pid: int) -> TaintReport:
        solver = TabulationSolver(problem, domain=domain, config=config,
                                  entrypoints=(pid,))
        return ResultExtractor(solver.solve(), problem).extract()

    reports: Dict[int, TaintReport] = {}
    with ThreadPoolExecutor(max_workers=config.max_workers) as executor:
        futures = {executor.submit(_solve_one, pid): pid for pid in pids}
        for future in as_completed(futures):
            pid = futures[future]
            reports[pid] = future.result()
            logger.debug("entrypoint %s: %d findings", sg.procedure(pid).name,
                         len(reports[pid]))
    return reports
