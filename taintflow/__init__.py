"""
taintflow — Interprocedural IFDS Taint-Flow Engine
==================================================

Decides whether a value produced at a *source* call can reach a *sink*
call along a feasible interprocedural path, including paths that pass
through procedures of an embedded scripting runtime called from the host
program.

Core modules
------------
program
    Procedures, instruction kinds, the call-graph provider protocol and a
    builder for assembling programs.
supergraph
    Intra- plus interprocedural (call / return / call-to-return) edges.
domain
    Taint facts and their dense integer ids.
problem
    The taint flow functions and the Source / Sink policy.
solver
    Partially balanced IFDS tabulation with memoized summaries.
results
    Sink detection and witness reconstruction.
policies
    Stock Source / Sink predicates.
analysis
    One-call entry points.

Quick start
-----------
>>> from taintflow import ProgramBuilder, analyze_taint, calls_to
>>> pb = ProgramBuilder()
>>> main = pb.procedure("main")
>>> _ = main.call("source", result="pw")
>>> _ = main.call("sink", args=("pw",))
>>> report = analyze_taint(pb.entrypoint("main").build(),
...                        calls_to("source"), calls_to("sink"))
>>> len(report)
1

Package layout
--------------
::

    taintflow/
    ├── __init__.py            ← this file
    ├── errors.py
    ├── config.py
    ├── program.py
    ├── supergraph.py
    ├── domain.py
    ├── problem.py
    ├── solver.py
    ├── results.py
    ├── policies.py
    └── analysis.py
"""

from __future__ import annotations

import importlib
import logging
import sys
from typing import TYPE_CHECKING, List

# ---------------------------------------------------------------------------
# Package metadata
# ---------------------------------------------------------------------------

__version__ = "0.4.0"
__author__ = "taintflow contributors"
__license__ = "MIT"
__all__: List[str] = []          # populated incrementally below

_log = logging.getLogger(__name__)
_log.addHandler(logging.NullHandler())

# ---------------------------------------------------------------------------
# Internal registry: (module_name, list_of_names_to_import)
# ---------------------------------------------------------------------------

_CORE_MODULES = {
    "errors": [
        "TaintFlowError",
        "MalformedProgramError",
        "ConfigurationError",
        "PathEdgeLimitExceeded",
        "WitnessReconstructionError",
    ],
    "config": [
        "SolverConfig",
        "DEFAULT_CONFIG",
    ],
    "program": [
        "RETURN_LOCAL",
        "Runtime",
        "SourcePosition",
        "InstructionKind",
        "Assign",
        "Call",
        "StructureStore",
        "StructureLoad",
        "StructureMerge",
        "Nop",
        "Procedure",
        "Program",
        "ProgramBuilder",
        "CallGraphProvider",
    ],
    "supergraph": [
        "EdgeKind",
        "Node",
        "Supergraph",
    ],
    "domain": [
        "ZERO",
        "ANY_KEY",
        "Local",
        "Field",
        "Global",
        "Entry",
        "Domain",
    ],
    "problem": [
        "TaintProblem",
    ],
    "solver": [
        "TabulationSolver",
        "SolverResult",
    ],
    "results": [
        "Finding",
        "TaintReport",
        "ResultExtractor",
    ],
    "policies": [
        "calls_to",
        "crosses_into",
        "any_of",
        "all_of",
        "negate",
    ],
    "analysis": [
        "analyze_taint",
        "analyze_entrypoints",
    ],
}

# ---------------------------------------------------------------------------
# Import helper
# ---------------------------------------------------------------------------

def _import_names(module_rel_name: str, names: List[str]) -> None:
    """Import *names* from a submodule and bind them in the package namespace."""
    fq_name = f"{__name__}.{module_rel_name}"
    try:
        mod = importlib.import_module(fq_name)
    except ImportError as exc:
        raise ImportError(
            f"taintflow: required submodule '{module_rel_name}' "
            f"failed to import: {exc}"
        ) from exc

    current_module = sys.modules[__name__]
    for name in names:
        if not hasattr(mod, name):
            raise AttributeError(f"taintflow.{module_rel_name} does not export '{name}'")
        setattr(current_module, name, getattr(mod, name))
        __all__.append(name)

    setattr(current_module, module_rel_name, mod)
    if module_rel_name not in __all__:
        __all__.append(module_rel_name)


for _mod, _names in _CORE_MODULES.items():
    _import_names(_mod, _names)

del _mod, _names


def list_submodules() -> List[str]:
    """Return the names of all submodules in the package."""
    return sorted(_CORE_MODULES)


__all__ += ["list_submodules", "__version__"]

# ---------------------------------------------------------------------------
# Static re-exports for type checkers
# ---------------------------------------------------------------------------

if TYPE_CHECKING:
    from .errors import (
        TaintFlowError as TaintFlowError,
        MalformedProgramError as MalformedProgramError,
        ConfigurationError as ConfigurationError,
        PathEdgeLimitExceeded as PathEdgeLimitExceeded,
        WitnessReconstructionError as WitnessReconstructionError,
    )
    from .config import SolverConfig as SolverConfig, DEFAULT_CONFIG as DEFAULT_CONFIG
    from .program import (
        RETURN_LOCAL as RETURN_LOCAL,
        Runtime as Runtime,
        SourcePosition as SourcePosition,
        InstructionKind as InstructionKind,
        Assign as Assign,
        Call as Call,
        StructureStore as StructureStore,
        StructureLoad as StructureLoad,
        StructureMerge as StructureMerge,
        Nop as Nop,
        Procedure as Procedure,
        Program as Program,
        ProgramBuilder as ProgramBuilder,
        CallGraphProvider as CallGraphProvider,
    )
    from .supergraph import EdgeKind as EdgeKind, Node as Node, Supergraph as Supergraph
    from .domain import (
        ZERO as ZERO,
        ANY_KEY as ANY_KEY,
        Local as Local,
        Field as Field,
        Global as Global,
        Entry as Entry,
        Domain as Domain,
    )
    from .problem import TaintProblem as TaintProblem
    from .solver import TabulationSolver as TabulationSolver, SolverResult as SolverResult
    from .results import (
        Finding as Finding,
        TaintReport as TaintReport,
        ResultExtractor as ResultExtractor,
    )
    from .policies import (
        calls_to as calls_to,
        crosses_into as crosses_into,
        any_of as any_of,
        all_of as all_of,
        negate as negate,
    )
    from .analysis import (
        analyze_taint as analyze_taint,
        analyze_entrypoints as analyze_entrypoints,
    )
