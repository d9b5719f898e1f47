"""Backtracking line search for JAX-based KKT trajectory optimization.

The search walks a fixed schedule of step lengths, most aggressive first, and
accepts the first one that passes an Armijo-type sufficient-decrease test
against the quadratic model ``alpha * d0 + 0.5 * alpha**2 * d1``.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from jax import Array

from .exceptions import _error_code_to_string
from .types import ErrorCode, Float


# Trial function: evaluates the step and returns (actual decrease, error code)
TrialFunction = Callable[[Float], tuple[Float, ErrorCode]]


def step_length_schedule(num_steps: int) -> tuple[Float, ...]:
    """Geometrically halving step lengths ``1 / 2**n`` for ``n = 0..num_steps-1``."""
    if num_steps <= 0:
        raise ValueError("num_steps must be positive")
    return tuple(1.0 / 2.0**n for n in range(num_steps))


class LineSearchReturnCode(Enum):
    """Return codes for the backtracking line search."""

    NO_ERROR = "LS_NOERROR"
    GRADIENT_TOO_SMALL = "LS_GRADIENT_TOO_SMALL"
    INFEASIBLE_START = "LS_INFEASIBLE_START"
    SUFFICIENT_DECREASE = "LS_SUFFICIENT_DECREASE"
    NO_STEP_ACCEPTED = "LS_NO_STEP_ACCEPTED"


_ACCEPTED = (
    LineSearchReturnCode.GRADIENT_TOO_SMALL,
    LineSearchReturnCode.INFEASIBLE_START,
    LineSearchReturnCode.SUFFICIENT_DECREASE,
)


@dataclass
class BacktrackingLineSearch:
    """Backtracking line search over a fixed step-length schedule."""

    # Options
    alphas: tuple[Float, ...] = field(default_factory=lambda: step_length_schedule(10))
    th_grad: Float = 1e-12
    th_acceptstep: Float = 0.1

    # State variables
    steplength: Float = 0.0
    dV: Float = 0.0
    dVexp: Float = 0.0
    n_iters: int = 0
    n_failed_trials: int = 0
    return_code: LineSearchReturnCode = LineSearchReturnCode.NO_ERROR
    verbose: bool = False

    def set_verbose(self, verbose: bool) -> bool:
        """Set verbosity level."""
        old_verbose = self.verbose
        self.verbose = verbose
        return old_verbose

    def get_status(self) -> LineSearchReturnCode:
        """Get line search status."""
        return self.return_code

    def accepted(self) -> bool:
        """Whether the last run accepted a step."""
        return self.return_code in _ACCEPTED

    def iterations(self) -> int:
        """Get number of trial steps performed."""
        return self.n_iters

    def expected_decrease(self, d: Array, alpha: Float) -> Float:
        """Quadratic model of the cost decrease at step length ``alpha``."""
        return alpha * (float(d[0]) + 0.5 * alpha * float(d[1]))

    def run(self, try_step: TrialFunction, d: Array, is_feasible: bool) -> Float:
        """Run the line search and return the last tried step length.

        Args:
            try_step: Trial function returning the actual decrease and an error code
            d: Expected improvement terms ``(d0, d1)``
            is_feasible: Whether the current trajectory satisfies the dynamics

        Returns:
            The accepted step length, or the last one tried if none was accepted.
        """
        self.n_iters = 0
        self.n_failed_trials = 0
        self.dV = 0.0
        self.dVexp = 0.0
        self.return_code = LineSearchReturnCode.NO_ERROR

        d0 = float(d[0])

        if self.verbose:
            print(f"Starting line search with d = ({d0}, {float(d[1])}), feasible = {is_feasible}")

        for alpha in self.alphas:
            self.steplength = alpha
            self.n_iters += 1

            dV, code = try_step(alpha)
            if code != ErrorCode.NO_ERROR:
                self.n_failed_trials += 1
                if self.verbose:
                    print(f"  alpha = {alpha:8.3g}: {_error_code_to_string(code)}")
                continue

            self.dV = dV
            self.dVexp = self.expected_decrease(d, alpha)

            if self.verbose:
                print(f"  alpha = {alpha:8.3g}: dV = {self.dV:10.3e}, dVexp = {self.dVexp:10.3e}")

            if d0 < self.th_grad:
                self.return_code = LineSearchReturnCode.GRADIENT_TOO_SMALL
                return alpha
            if not is_feasible:
                self.return_code = LineSearchReturnCode.INFEASIBLE_START
                return alpha
            if self.dV > self.th_acceptstep * self.dVexp:
                self.return_code = LineSearchReturnCode.SUFFICIENT_DECREASE
                return alpha

        self.return_code = LineSearchReturnCode.NO_STEP_ACCEPTED
        if self.verbose:
            print("  No step length satisfied the sufficient-decrease test")
        return self.steplength
