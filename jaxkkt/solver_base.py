"""Common solver state and candidate bookkeeping.

``SolverAbstract`` owns the accepted trajectory, the quantities every
iteration reports (cost, stopping measure, regularization, step length) and
the callback registry. Concrete solvers implement the direction, trial step,
improvement model and stopping criterion.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence

import jax.numpy as jnp
from jax import Array

from .exceptions import DimensionError
from .shooting import ShootingProblem
from .solver_options import KKTOptions
from .solver_stats import KKTStats
from .types import CallbackFunction, ControlInput, ErrorCode, Float, ManifoldPoint


class SolverAbstract(ABC):
    def __init__(self, problem: ShootingProblem, options: KKTOptions | None = None) -> None:
        self.problem = problem
        self.opts = options if options is not None else KKTOptions()
        self.stats = KKTStats()

        self.xs: list[ManifoldPoint] = []
        self.us: list[ControlInput] = []
        self.is_feasible = False
        self.set_candidate()

        # Per-iteration quantities
        self.iter = 0
        self.cost: Float = 0.0
        self.stop: Float = 0.0
        self.d: Array = jnp.zeros(2)
        self.xreg: Float = 0.0
        self.ureg: Float = 0.0
        self.steplength: Float = 1.0
        self.dV: Float = 0.0
        self.dVexp: Float = 0.0

        self._callbacks: list[CallbackFunction] = []

    @property
    def th_acceptstep(self) -> Float:
        return self.opts.th_acceptstep

    @property
    def th_stop(self) -> Float:
        return self.opts.th_stop

    def set_callbacks(self, callbacks: Sequence[CallbackFunction]) -> None:
        """Replace the registered callbacks."""
        self._callbacks = list(callbacks)

    def get_callbacks(self) -> list[CallbackFunction]:
        return list(self._callbacks)

    def _invoke_callbacks(self) -> None:
        for callback in self._callbacks:
            callback(self)

    def set_candidate(
        self,
        xs: Sequence[ManifoldPoint] | None = None,
        us: Sequence[ControlInput] | None = None,
        is_feasible: bool = False,
    ) -> None:
        """Copy a warm-start (or accepted trial) trajectory into the solver.

        Missing states default to ``x0`` at the first knot and ``zero()``
        elsewhere; missing controls default to zeros.
        """
        problem = self.problem
        models = [*problem.running_models, problem.terminal_model]

        if xs is None or len(xs) == 0:
            xs = [problem.x0] + [m.state.zero() for m in models[1:]]
        if us is None or len(us) == 0:
            us = [jnp.zeros(m.nu) for m in problem.running_models]

        if len(xs) != problem.T + 1:
            raise DimensionError(
                f"Expected {problem.T + 1} states, got {len(xs)}", ErrorCode.DIMENSION_MISMATCH
            )
        if len(us) != problem.T:
            raise DimensionError(
                f"Expected {problem.T} controls, got {len(us)}", ErrorCode.DIMENSION_MISMATCH
            )

        new_xs = []
        for t, (model, x) in enumerate(zip(models, xs)):
            x = jnp.asarray(x, dtype=float)
            if x.shape != (model.state.nx,):
                raise DimensionError(f"State {t} has shape {x.shape}, expected ({model.state.nx},)")
            new_xs.append(x)

        new_us = []
        for t, (model, u) in enumerate(zip(problem.running_models, us)):
            u = jnp.asarray(u, dtype=float)
            if u.shape != (model.nu,):
                raise DimensionError(f"Control {t} has shape {u.shape}, expected ({model.nu},)")
            new_us.append(u)

        self.xs = new_xs
        self.us = new_us
        self.is_feasible = is_feasible

    @abstractmethod
    def compute_direction(self, recalc: bool = True) -> ErrorCode:
        """Compute the search direction, optionally relinearizing first."""

    @abstractmethod
    def try_step(self, steplength: Float) -> tuple[Float, ErrorCode]:
        """Evaluate a trial step and return the actual cost decrease."""

    @abstractmethod
    def expected_improvement(self) -> Array:
        """Return the expected improvement terms ``(d0, d1)``."""

    @abstractmethod
    def stopping_criteria(self) -> Float:
        """Return the convergence measure of the current iterate."""

    @abstractmethod
    def solve(
        self,
        init_xs: Sequence[ManifoldPoint] | None = None,
        init_us: Sequence[ControlInput] | None = None,
        maxiter: int = 100,
        is_feasible: bool = False,
        reginit: Float = float("nan"),
    ) -> bool:
        """Run the optimization; ``True`` on convergence."""
