"""Pendulum swing-up on SO(2) with the JAX-based KKT solver.

The pendulum angle is stored as a unit complex number ``(cos θ, sin θ)`` and
the angular velocity as a Euclidean coordinate, so the state has ``nx = 3``
and ``ndx = 2``. Dynamics, costs and the solver all go through the manifold
operations ``diff`` and ``integrate``; no angle wrapping is needed.
"""

from __future__ import annotations

import jax.numpy as jnp
from jax import Array

from jaxkkt import (
    ActionModelAutoDiff,
    CallbackLogger,
    KKTOptions,
    ShootingProblem,
    SolverKKT,
    StateSO2,
    Verbosity,
)
from jaxkkt.types import Float


def create_pendulum_dynamics(state: StateSO2, h: Float, gravity: Float = 9.81) -> callable:
    """Semi-implicit Euler step of a unit pendulum driven by a torque."""

    def dynamics_function(x: Array, u: Array) -> Array:
        theta = jnp.arctan2(x[1], x[0])
        omega_next = x[2] + h * (u[0] - gravity * jnp.sin(theta))
        return state.integrate(x, jnp.stack([h * omega_next, omega_next - x[2]]))

    return dynamics_function


def create_goal_cost(state: StateSO2, x_goal: Array, weight: Float, r: Float) -> callable:
    def cost_function(x: Array, u: Array) -> Float:
        dx = state.diff(x_goal, x)
        return 0.5 * weight * jnp.dot(dx, dx) + 0.5 * r * jnp.dot(u, u)

    return cost_function


def solve_pendulum_example() -> SolverKKT:
    state = StateSO2(nv=1)
    h = 0.05
    num_segments = 60

    x0 = state.from_angle(0.0)
    x_goal = state.from_angle(jnp.pi)

    running_model = ActionModelAutoDiff(
        state,
        cost_function=create_goal_cost(state, x_goal, weight=1e-1, r=1e-2),
        dynamics_function=create_pendulum_dynamics(state, h),
        nu=1,
    )
    terminal_model = ActionModelAutoDiff(
        state, cost_function=create_goal_cost(state, x_goal, weight=1e2, r=0.0)
    )
    problem = ShootingProblem(x0, [running_model] * num_segments, terminal_model)

    solver = SolverKKT(problem, KKTOptions(verbose=Verbosity.INNER))
    logger = CallbackLogger()
    solver.set_callbacks([logger])

    us = [jnp.zeros(1)] * num_segments
    converged = solver.solve(problem.rollout(us), us, maxiter=200, is_feasible=True)

    print(f"Converged: {converged} after {solver.stats.iterations} iterations")
    print(f"Final angle: {float(state.angle(solver.xs[-1])):.4f} rad")
    print(f"Cost history: {[round(c, 4) for c in logger.costs[:10]]} ...")
    return solver


if __name__ == "__main__":
    solve_pendulum_example()
