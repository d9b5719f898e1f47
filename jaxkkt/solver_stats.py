"""Solver statistics for JAX-based KKT trajectory optimization.

Tracks the outcome of the last ``solve`` call: termination status, timing,
iteration count and the final values of the convergence quantities.
"""

from __future__ import annotations

from dataclasses import dataclass

from .types import Float, SolveStatus


@dataclass
class KKTStats:
    """Performance statistics for the KKT solver."""

    # Solver termination status
    status: SolveStatus = SolveStatus.UNSOLVED

    # Timing information (in milliseconds)
    solve_time: Float = 0.0

    # Iteration counts
    iterations: int = 0

    # Convergence metrics
    cost: Float = 0.0
    stop: Float = 0.0
    xreg: Float = 0.0
    steplength: Float = 0.0

    def reset(self) -> None:
        """Reset all statistics to initial values."""
        self.status = SolveStatus.UNSOLVED
        self.solve_time = 0.0
        self.iterations = 0
        self.cost = 0.0
        self.stop = 0.0
        self.xreg = 0.0
        self.steplength = 0.0

    def is_converged(self) -> bool:
        """Check if solver has converged successfully."""
        return self.status == SolveStatus.SUCCESS
