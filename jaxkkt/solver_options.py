from __future__ import annotations

from dataclasses import dataclass, field

from .line_search import step_length_schedule
from .types import Float, Verbosity


@dataclass(frozen=True)
class KKTOptions:
    # Regularization continuation
    regfactor: Float = 10.0
    regmin: Float = 1e-9
    regmax: Float = 1e9

    # Line search thresholds
    th_grad: Float = 1e-12
    th_step: Float = 0.5
    th_acceptstep: Float = 0.1

    # Convergence tolerance on the KKT residual
    th_stop: Float = 1e-9

    # Candidate step lengths, most aggressive first
    alphas: tuple[Float, ...] = field(default_factory=lambda: step_length_schedule(10))

    # Verbosity level
    verbose: Verbosity = Verbosity.SILENT

    def __post_init__(self) -> None:
        """Validate option values after initialization."""
        if self.regfactor <= 1:
            raise ValueError("regfactor must be greater than 1")
        if self.regmin < 0:
            raise ValueError("regmin must be non-negative")
        if self.regmax <= self.regmin:
            raise ValueError("regmax must be greater than regmin")
        if self.th_grad <= 0:
            raise ValueError("th_grad must be positive")
        if self.th_step <= 0:
            raise ValueError("th_step must be positive")
        if not 0 < self.th_acceptstep < 1:
            raise ValueError("th_acceptstep must lie in (0, 1)")
        if self.th_stop <= 0:
            raise ValueError("th_stop must be positive")
        if len(self.alphas) == 0:
            raise ValueError("alphas must contain at least one step length")
        if any(a <= 0 or a > 1 for a in self.alphas):
            raise ValueError("step lengths must lie in (0, 1]")
        if any(b >= a for a, b in zip(self.alphas[:-1], self.alphas[1:])):
            raise ValueError("step lengths must be strictly decreasing")
