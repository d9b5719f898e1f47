"""Shared problem builders for the jaxkkt test-suite."""

import jax
import jax.numpy as jnp
import pytest

from jaxkkt import ActionModelAutoDiff, ShootingProblem, StateSO2, StateVector

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)


def quadratic_cost(x, u):
    return 0.5 * jnp.sum(x**2) + 0.5 * jnp.sum(u**2)


def integrator(x, u):
    return x + u


def build_scalar_problem(T=1, x0=1.0, running_cost=quadratic_cost, terminal_cost=quadratic_cost):
    """``x_{t+1} = x_t + u_t`` with scalar state and control."""
    state = StateVector(1)
    running = ActionModelAutoDiff(state, running_cost, integrator, nu=1)
    terminal = ActionModelAutoDiff(state, terminal_cost)
    return ShootingProblem(jnp.array([x0]), [running] * T, terminal)


def build_heterogeneous_problem():
    """Tangent dimension goes 1 -> 2 -> 1 along the horizon."""
    s1, s2, s1_terminal = StateVector(1), StateVector(2), StateVector(1)
    m0 = ActionModelAutoDiff(
        s1, quadratic_cost, lambda x, u: jnp.concatenate([x, u]), nu=1, next_state=s2
    )
    m1 = ActionModelAutoDiff(
        s2, quadratic_cost, lambda x, u: x[:1] + x[1:] + u, nu=1, next_state=s1_terminal
    )
    terminal = ActionModelAutoDiff(s1_terminal, quadratic_cost)
    return ShootingProblem(jnp.array([1.0]), [m0, m1], terminal)


def build_rotation_problem(theta0, theta_goal, T=5, terminal_weight=10.0):
    """Rotate a unit complex number towards a goal angle; the control is the rotation increment."""
    state = StateSO2()
    x_goal = state.from_angle(theta_goal)

    def running_cost(x, u):
        dx = state.diff(x_goal, x)
        return 0.5 * jnp.dot(dx, dx) + 0.5 * jnp.dot(u, u)

    def terminal_cost(x, u):
        dx = state.diff(x_goal, x)
        return 0.5 * terminal_weight * jnp.dot(dx, dx)

    running = ActionModelAutoDiff(state, running_cost, state.integrate, nu=1)
    terminal = ActionModelAutoDiff(state, terminal_cost)
    return ShootingProblem(state.from_angle(theta0), [running] * T, terminal)


@pytest.fixture
def scalar_problem():
    return build_scalar_problem()


@pytest.fixture
def heterogeneous_problem():
    return build_heterogeneous_problem()
