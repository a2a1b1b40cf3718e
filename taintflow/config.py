"""
taintflow/config.py
===================

Solver configuration.

A :class:`SolverConfig` is a plain frozen dataclass; every engine entry
point accepts one and falls back to :data:`DEFAULT_CONFIG` when none is
given.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional

from taintflow.errors import ConfigurationError

__all__ = ["SolverConfig", "DEFAULT_CONFIG"]


@dataclass(frozen=True)
class SolverConfig:
    """Knobs for a single tabulation solve.

    Attributes
    ----------
    max_path_edges : int | None
        Ceiling on the number of path edges the solver may *process*.
        Hitting it ends the solve early with ``incomplete=True``.
        ``None`` disables the guard.
    track_witnesses : bool
        Record one justifying predecessor per path edge so that witnesses
        can be rebuilt.  Turning it off saves memory; findings are then
        reported without witnesses.
    unbalanced_returns : bool
        Let facts reaching the exit of an entrypoint flow back to every
        caller of that entrypoint (partially balanced tabulation).
    max_workers : int
        Thread-pool size used by :func:`taintflow.analysis.analyze_entrypoints`.
    """

    max_path_edges: Optional[int] = 1_000_000
    track_witnesses: bool = True
    unbalanced_returns: bool = True
    max_workers: int = 4

    def __post_init__(self) -> None:
        if self.max_path_edges is not None and self.max_path_edges <= 0:
            raise ConfigurationError(
                "max_path_edges", self.max_path_edges, "must be positive or None"
            )
        if self.max_workers < 1:
            raise ConfigurationError(
                "max_workers", self.max_workers, "must be at least 1"
            )

    def with_options(self, **changes) -> "SolverConfig":
        """Return a copy with *changes* applied (validated again)."""
        return replace(self, **changes)


DEFAULT_CONFIG = SolverConfig()
