"""Shooting problem container for JAX-based KKT trajectory optimization.

Holds the fixed initial state, the running action models with their data and
the terminal model with its data. The solver only talks to the problem through
``calc``, ``calc_diff`` and the per-knot models and data exposed here.
"""

from __future__ import annotations

from collections.abc import Sequence

import jax.numpy as jnp
from jax import Array

from .action_model import ActionData, ActionModelAbstract
from .exceptions import DimensionError, ErrorCode, InitializationError
from .types import ControlInput, Float, ManifoldPoint


class ShootingProblem:
    """Discrete-time finite-horizon optimal control problem.

    Args:
        x0: Fixed initial state
        running_models: One action model per time step ``t = 0..T-1``
        terminal_model: Action model of the final knot ``t = T``
    """

    def __init__(
        self,
        x0: Array,
        running_models: Sequence[ActionModelAbstract],
        terminal_model: ActionModelAbstract,
    ) -> None:
        if len(running_models) == 0:
            raise InitializationError(
                "A shooting problem needs at least one running model", ErrorCode.BAD_INDEX
            )
        if terminal_model.nu != 0:
            raise DimensionError(
                f"Terminal model must not have controls, got nu={terminal_model.nu}",
                ErrorCode.INVALID_OPT_AT_TERMINAL_KNOT_POINT,
            )

        self.running_models = list(running_models)
        self.terminal_model = terminal_model
        self._check_chaining()

        self.x0 = jnp.asarray(x0, dtype=float)
        nx0 = self.running_models[0].state.nx
        if self.x0.shape != (nx0,):
            raise DimensionError(f"Initial state has shape {self.x0.shape}, expected ({nx0},)")

        self.running_datas: list[ActionData] = [m.create_data() for m in self.running_models]
        self.terminal_data: ActionData = self.terminal_model.create_data()

    def _check_chaining(self) -> None:
        models = [*self.running_models, self.terminal_model]
        for t, (model, following) in enumerate(zip(models[:-1], models[1:])):
            if model.next_state.ndx != following.state.ndx:
                raise DimensionError(
                    f"Knot {t} maps into a state with ndx={model.next_state.ndx} "
                    f"but knot {t + 1} has ndx={following.state.ndx}"
                )
            if model.next_state.nx != following.state.nx:
                raise DimensionError(
                    f"Knot {t} maps into a state with nx={model.next_state.nx} "
                    f"but knot {t + 1} has nx={following.state.nx}"
                )

    @property
    def T(self) -> int:
        """Number of running knots (horizon length)."""
        return len(self.running_models)

    @property
    def nx(self) -> int:
        """Total embedding dimension of all states, terminal included."""
        return sum(m.state.nx for m in self.running_models) + self.terminal_model.state.nx

    @property
    def ndx(self) -> int:
        """Total tangent dimension of all states, terminal included."""
        return sum(m.state.ndx for m in self.running_models) + self.terminal_model.state.ndx

    @property
    def nu(self) -> int:
        """Total control dimension."""
        return sum(m.nu for m in self.running_models)

    def calc(self, xs: Sequence[ManifoldPoint], us: Sequence[ControlInput]) -> Float:
        """Evaluate the total cost of a trajectory."""
        cost = 0.0
        for model, data, x, u in zip(self.running_models, self.running_datas, xs[:-1], us):
            model.calc(data, x, u)
            cost += data.cost
        self.terminal_model.calc(self.terminal_data, xs[-1])
        cost += self.terminal_data.cost
        return cost

    def calc_diff(self, xs: Sequence[ManifoldPoint], us: Sequence[ControlInput]) -> Float:
        """Evaluate the total cost and linearize every knot point."""
        cost = self.calc(xs, us)
        for model, data, x, u in zip(self.running_models, self.running_datas, xs[:-1], us):
            model.calc_diff(data, x, u)
        self.terminal_model.calc_diff(self.terminal_data, xs[-1])
        return cost

    def rollout(self, us: Sequence[ControlInput]) -> list[ManifoldPoint]:
        """Integrate the dynamics from ``x0`` under the given controls."""
        if len(us) != self.T:
            raise DimensionError(f"Expected {self.T} controls, got {len(us)}")
        xs = [self.x0]
        for model, data, u in zip(self.running_models, self.running_datas, us):
            model.calc(data, xs[-1], u)
            xs.append(data.xnext)
        return xs
