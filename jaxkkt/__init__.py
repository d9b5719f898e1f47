"""JAX-based direct KKT trajectory optimization package.

This package provides a direct (KKT-based) solver for discrete-time,
finite-horizon optimal control. Each iteration linearizes a shooting problem,
factorizes the full Karush-Kuhn-Tucker system of the resulting quadratic
subproblem and safeguards the Newton step with a backtracking line search and
adaptive regularization.
"""

from __future__ import annotations

import jax

# Problem definition
from .action_model import ActionData, ActionModelAbstract, ActionModelAutoDiff

# Callbacks
from .callbacks import CallbackAbstract, CallbackLogger, CallbackVerbose

# Exception hierarchy
from .exceptions import (
    DimensionError,
    DomainError,
    InitializationError,
    KKTException,
)

# Core solver interface
from .kkt import KKTLayout, SolverKKT
from .line_search import BacktrackingLineSearch, LineSearchReturnCode, step_length_schedule
from .shooting import ShootingProblem
from .solver_base import SolverAbstract

# Configuration classes
from .solver_options import KKTOptions
from .solver_stats import KKTStats
from .state import StateAbstract, StateSO2, StateVector

# Type definitions
from .types import (
    CallbackFunction,
    ControlInput,
    CostFunction,
    DualVariable,
    DynamicsFunction,
    ErrorCode,
    Float,
    ManifoldPoint,
    SolveStatus,
    TangentVector,
    Verbosity,
)


# Version information
__version__ = "0.1.0"

# Public API
__all__ = [
    "ActionData",
    "ActionModelAbstract",
    "ActionModelAutoDiff",
    "BacktrackingLineSearch",
    "CallbackAbstract",
    "CallbackFunction",
    "CallbackLogger",
    "CallbackVerbose",
    "ControlInput",
    "CostFunction",
    "DimensionError",
    "DomainError",
    "DualVariable",
    "DynamicsFunction",
    "ErrorCode",
    "Float",
    "InitializationError",
    "KKTException",
    "KKTLayout",
    "KKTOptions",
    "KKTStats",
    "LineSearchReturnCode",
    "ManifoldPoint",
    "ShootingProblem",
    "SolveStatus",
    "SolverAbstract",
    "SolverKKT",
    "StateAbstract",
    "StateSO2",
    "StateVector",
    "TangentVector",
    "Verbosity",
    "__version__",
    "step_length_schedule",
]

# Package documentation
__doc__ = """
JAX-based direct KKT trajectory optimization

Basic Usage:
    import jax.numpy as jnp
    import jaxkkt

    state = jaxkkt.StateVector(1)
    running = jaxkkt.ActionModelAutoDiff(
        state,
        cost_function=lambda x, u: 0.5 * jnp.sum(x**2) + 0.5 * jnp.sum(u**2),
        dynamics_function=lambda x, u: x + u,
        nu=1,
    )
    terminal = jaxkkt.ActionModelAutoDiff(state, lambda x, u: 0.5 * jnp.sum(x**2))
    problem = jaxkkt.ShootingProblem(jnp.array([1.0]), [running] * 20, terminal)

    solver = jaxkkt.SolverKKT(problem)
    solver.set_callbacks([jaxkkt.CallbackVerbose()])
    converged = solver.solve(maxiter=50)

    xs, us = solver.xs, solver.us
"""


def _check_jax_installation() -> None:
    """Check that JAX is properly installed and accessible."""
    try:
        import jax.numpy as jnp
        import jax.scipy.linalg  # noqa: F401

        # Test basic JAX functionality
        _ = jnp.array([1.0, 2.0, 3.0])
    except ImportError as e:
        raise ImportError(
            "JAX is required for jaxkkt but not found. "
            "Please install JAX with: pip install jax jaxlib"
        ) from e


# Perform dependency checks on import
_check_jax_installation()

# Enable 64-bit precision for numerical stability
jax.config.update("jax_enable_x64", True)
