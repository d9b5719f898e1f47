"""Iteration callbacks for JAX-based KKT trajectory optimization.

Callbacks are invoked once per outer iteration with the solver itself. They
are purely observational and must not change the solver state.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from jax import Array

from .types import Float


if TYPE_CHECKING:
    from .solver_base import SolverAbstract


class CallbackAbstract(ABC):
    """Abstract iteration callback."""

    @abstractmethod
    def __call__(self, solver: SolverAbstract) -> None:
        """Observe the solver after an iteration."""


class CallbackVerbose(CallbackAbstract):
    """Print one table row per iteration, repeating the header every ``header_every`` rows."""

    def __init__(self, header_every: int = 10) -> None:
        self.header_every = header_every

    def __call__(self, solver: SolverAbstract) -> None:
        if solver.iter % self.header_every == 0:
            print("iter     cost         stop         grad         xreg         ureg      step")
        print(
            f"{solver.iter:4d}  {solver.cost:.5e}  {solver.stop:.5e}  {float(solver.d[0]):.5e}  "
            f"{solver.xreg:.5e}  {solver.ureg:.5e}  {solver.steplength:.4f}"
        )


class CallbackLogger(CallbackAbstract):
    """Record the solver state after every iteration."""

    def __init__(self) -> None:
        self.xs: list[list[Array]] = []
        self.us: list[list[Array]] = []
        self.costs: list[Float] = []
        self.steps: list[Float] = []
        self.regs: list[Float] = []
        self.stops: list[Float] = []
        self.grads: list[Float] = []

    def __call__(self, solver: SolverAbstract) -> None:
        self.xs.append(list(solver.xs))
        self.us.append(list(solver.us))
        self.costs.append(solver.cost)
        self.steps.append(solver.steplength)
        self.regs.append(solver.xreg)
        self.stops.append(solver.stop)
        self.grads.append(float(solver.d[0]))

    def __len__(self) -> int:
        return len(self.costs)
