"""Double integrator example demonstrating the JAX-based KKT solver.

This example shows how to:
1. Describe the state space and the per-knot action models
2. Define dynamics and costs (derivatives computed automatically)
3. Build a shooting problem and solve it with the direct KKT solver
4. Inspect the solution and the solver statistics

The problem is to drive a 2D double integrator from an initial state to the
origin while minimizing control effort.
"""

from __future__ import annotations

import jax
import jax.numpy as jnp
from jax import Array

from jaxkkt import (
    ActionModelAutoDiff,
    CallbackVerbose,
    KKTOptions,
    ShootingProblem,
    SolverKKT,
    StateVector,
    Verbosity,
)
from jaxkkt.types import Float


def create_double_integrator_dynamics(h: Float, dim: int = 2) -> callable:
    """Create double integrator dynamics function.

    State: [position, velocity] (2*dim dimensional)
    Input: [acceleration] (dim dimensional)

    Dynamics: x_{k+1} = A*x_k + B*u_k
    where A = [[I, h*I], [0, I]], B = [[0.5*h^2*I], [h*I]]
    """

    def dynamics_function(x: Array, u: Array) -> Array:
        pos = x[:dim]
        vel = x[dim:]

        pos_next = pos + vel * h + 0.5 * u * h**2
        vel_next = vel + u * h

        return jnp.concatenate([pos_next, vel_next])

    return dynamics_function


def create_lqr_cost_function(Q_diag: Array, R_diag: Array, x_ref: Array) -> callable:
    """Create LQR tracking cost ``0.5 (x-xref)^T Q (x-xref) + 0.5 u^T R u``.

    Terminal models receive an empty control, so ``R_diag`` may be empty.
    """

    def cost_function(x: Array, u: Array) -> Float:
        dx = x - x_ref
        return 0.5 * jnp.dot(dx, Q_diag * dx) + 0.5 * jnp.dot(u, R_diag * u)

    return cost_function


def solve_double_integrator_example() -> SolverKKT:
    """Solve the double integrator trajectory optimization problem."""

    # Problem parameters
    dim = 2
    n = 2 * dim
    m = dim

    tf = 5.0
    num_segments = 50
    h = tf / num_segments

    x0 = jnp.array([1.0, 1.0, 0.0, 0.0])
    x_goal = jnp.zeros(n)

    Q_diag = 1e-2 * jnp.ones(n)
    R_diag = 1e-2 * jnp.ones(m)
    Qf_diag = 100.0 * jnp.ones(n)

    print("Setting up double integrator trajectory optimization...")
    print(f"  State dimension: {n}")
    print(f"  Input dimension: {m}")
    print(f"  Time horizon: {tf} seconds")
    print(f"  Number of segments: {num_segments}")
    print(f"  Initial state: {x0}")

    state = StateVector(n)
    running_model = ActionModelAutoDiff(
        state,
        cost_function=create_lqr_cost_function(Q_diag, R_diag, x_goal),
        dynamics_function=create_double_integrator_dynamics(h, dim),
        nu=m,
    )
    terminal_model = ActionModelAutoDiff(
        state, cost_function=create_lqr_cost_function(Qf_diag, jnp.zeros(0), x_goal)
    )
    problem = ShootingProblem(x0, [running_model] * num_segments, terminal_model)

    solver = SolverKKT(problem, KKTOptions(verbose=Verbosity.OUTER))
    solver.set_callbacks([CallbackVerbose()])

    print("\nSolving trajectory optimization problem...")
    converged = solver.solve(maxiter=100)

    print(f"\nSolve completed in {solver.stats.solve_time:.1f} ms")
    print(f"Status: {solver.stats.status}")
    print(f"Iterations: {solver.stats.iterations}")
    print(f"Final cost: {solver.stats.cost:.6f}")
    print(f"Stopping measure: {solver.stats.stop:.2e}")

    x_final = solver.xs[-1]
    print(f"\n  Final state: {x_final}")
    print(f"  Distance to goal: {jnp.linalg.norm(x_final - x_goal):.6f}")

    print("\nTrajectory samples:")
    for k in [0, num_segments // 4, num_segments // 2, 3 * num_segments // 4, num_segments]:
        x_k = solver.xs[k]
        print(f"  t={k * h:.2f}: x={x_k[:dim]}, v={x_k[dim:]}")

    print(f"  Converged: {converged}")
    return solver


def demonstrate_automatic_differentiation() -> None:
    """Show the tangent-space derivatives an action model hands to the solver."""

    print("\n" + "=" * 60)
    print("AUTOMATIC DIFFERENTIATION DEMONSTRATION")
    print("=" * 60)

    state = StateVector(4)
    model = ActionModelAutoDiff(
        state,
        cost_function=create_lqr_cost_function(jnp.ones(4), 0.01 * jnp.ones(2), jnp.zeros(4)),
        dynamics_function=create_double_integrator_dynamics(0.1, dim=2),
        nu=2,
    )
    data = model.create_data()

    x_test = jnp.array([1.0, 2.0, 0.5, -0.3])
    u_test = jnp.array([0.1, -0.2])

    model.calc(data, x_test, u_test)
    model.calc_diff(data, x_test, u_test)

    print(f"x_next = {data.xnext}")
    print(f"cost = {data.cost}")
    print(f"Fx:\n{data.Fx}")
    print(f"Fu:\n{data.Fu}")
    print(f"Lx = {data.Lx}, Lu = {data.Lu}")
    print(f"Lxx shape: {data.Lxx.shape}, Luu shape: {data.Luu.shape}")

    # Same Jacobian straight from JAX for comparison
    dyn = create_double_integrator_dynamics(0.1, dim=2)
    print(f"jax.jacobian df/dx:\n{jax.jacobian(dyn, argnums=0)(x_test, u_test)}")


if __name__ == "__main__":
    print("JAX-based KKT Double Integrator Example")
    print("=" * 50)

    solve_double_integrator_example()
    demonstrate_automatic_differentiation()
