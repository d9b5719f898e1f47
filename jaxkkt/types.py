"""Core type definitions for JAX-based KKT trajectory optimization.

This module provides the JAX-compatible type aliases and enums shared by the
state adapters, action models and the solver.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, TypeAlias

from jax import Array


if TYPE_CHECKING:
    from .solver_base import SolverAbstract


# Core JAX array types
ManifoldPoint: TypeAlias = Array  # Point on the state manifold (embedding, nx)
TangentVector: TypeAlias = Array  # Increment in the tangent space (ndx)
ControlInput: TypeAlias = Array  # Control vector (nu)
DualVariable: TypeAlias = Array  # Costate / Lagrange multiplier (ndx)
GradientArray: TypeAlias = Array
JacobianMatrix: TypeAlias = Array
HessianMatrix: TypeAlias = Array

# Scalar types
Float: TypeAlias = float

# User-supplied model functions
DynamicsFunction: TypeAlias = Callable[[ManifoldPoint, ControlInput], ManifoldPoint]
CostFunction: TypeAlias = Callable[[ManifoldPoint, ControlInput], Float]
CallbackFunction: TypeAlias = Callable[["SolverAbstract"], None]


class SolveStatus(Enum):
    """Solver termination status."""

    SUCCESS = "Success"
    UNSOLVED = "Unsolved"
    MAX_ITERATIONS = "MaxIterations"
    MAX_REGULARIZATION = "MaxRegularization"


class Verbosity(Enum):
    """Verbosity levels, ordered from quiet to chatty."""

    SILENT = 0
    OUTER = 1
    INNER = 2
    LINE_SEARCH = 3


class ErrorCode(Enum):
    """Error codes shared by exceptions and explicit solver results."""

    NO_ERROR = "NoError"
    DIMENSION_MISMATCH = "DimensionMismatch"
    BAD_INDEX = "BadIndex"
    SOLVER_NOT_INITIALIZED = "SolverNotInitialized"
    NON_POSITIVE = "NonPositive"
    DYNAMICS_FUN_NOT_SET = "DynamicsFunNotSet"
    INVALID_OPT_AT_TERMINAL_KNOT_POINT = "InvalidOptAtTerminalKnotPoint"
    CHOLESKY_FAILED = "CholeskyFailed"
    TRIAL_STEP_FAILED = "TrialStepFailed"
