# taintflow/errors.py
"""
Error types raised by the taint-flow engine.

Error Hierarchy:
────────────────
┌──────────────────────────────────────────────────────────────────────┐
│  TaintFlowError (base)                                               │
│  ├── MalformedProgramError       - inconsistent frontend data        │
│  ├── ConfigurationError          - invalid SolverConfig values       │
│  ├── PathEdgeLimitExceeded       - PathEdge ceiling reached          │
│  └── WitnessReconstructionError  - backward walk found no chain      │
└──────────────────────────────────────────────────────────────────────┘

Only ``MalformedProgramError`` and ``ConfigurationError`` escape the
public API.  ``PathEdgeLimitExceeded`` is turned into an incomplete
:class:`~taintflow.solver.SolverResult` by the solver, and
``WitnessReconstructionError`` into a finding without a witness by the
result extractor.
"""

from __future__ import annotations

from typing import Any, Optional


class TaintFlowError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, *, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message} (hint: {self.hint})"
        return self.message


class MalformedProgramError(TaintFlowError):
    """The external call-graph / CFG data violates a precondition.

    Continuing would silently produce unsound results, so this is fatal.
    """

    def __init__(
        self,
        message: str,
        *,
        procedure: Optional[Any] = None,
        index: Optional[int] = None,
        hint: Optional[str] = None,
    ) -> None:
        where = ""
        if procedure is not None:
            where = f" [procedure {procedure!r}"
            where += f" @{index}]" if index is not None else "]"
        super().__init__(message + where, hint=hint)
        self.procedure = procedure
        self.index = index


class ConfigurationError(TaintFlowError):
    """A :class:`~taintflow.config.SolverConfig` field is out of range."""

    def __init__(self, option: str, value: Any, reason: str) -> None:
        super().__init__(f"invalid value {value!r} for {option}: {reason}")
        self.option = option
        self.value = value


class PathEdgeLimitExceeded(TaintFlowError):
    """The solver processed more path edges than the configured ceiling."""

    def __init__(self, limit: int, processed: int) -> None:
        super().__init__(
            f"path-edge ceiling of {limit} reached after processing "
            f"{processed} edges",
            hint="raise SolverConfig.max_path_edges or tighten weak-update rules",
        )
        self.limit = limit
        self.processed = processed


class WitnessReconstructionError(TaintFlowError):
    """No justifying predecessor chain leads back to a seeded fact."""

    def __init__(self, node: Any, fact: Any, reason: str) -> None:
        super().__init__(f"cannot reconstruct witness for {fact!r} at {node!r}: {reason}")
        self.node = node
        self.fact = fact
