"""Action models for JAX-based KKT trajectory optimization.

An action model describes one knot point of the shooting problem: its running
(or terminal) cost and, for running knots, the discrete dynamics that map the
current state and control to the next state. ``calc`` evaluates them and
``calc_diff`` linearizes them in tangent coordinates, writing the results into
an ``ActionData`` instance owned by the problem.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass

import jax
import jax.numpy as jnp
from jax import Array

from .exceptions import ErrorCode, _kkt_throw
from .state import StateAbstract
from .types import (
    ControlInput,
    CostFunction,
    DynamicsFunction,
    Float,
    GradientArray,
    HessianMatrix,
    JacobianMatrix,
    ManifoldPoint,
)


@dataclass
class ActionData:
    """Evaluation and linearization results of an action model at one knot point."""

    # Evaluation
    cost: Float = 0.0
    xnext: Array | None = None

    # Cost derivatives (tangent coordinates)
    Lx: GradientArray | None = None
    Lu: GradientArray | None = None
    Lxx: HessianMatrix | None = None
    Lxu: HessianMatrix | None = None
    Luu: HessianMatrix | None = None

    # Dynamics derivatives (tangent coordinates)
    Fx: JacobianMatrix | None = None
    Fu: JacobianMatrix | None = None


class ActionModelAbstract(ABC):
    """Abstract action model.

    Args:
        state: State manifold of this knot point
        nu: Control dimension (0 for terminal models)
        next_state: State manifold reached by the dynamics, defaults to ``state``
    """

    def __init__(
        self, state: StateAbstract, nu: int, next_state: StateAbstract | None = None
    ) -> None:
        if nu < 0:
            _kkt_throw(f"Control dimension must be non-negative, got {nu}", ErrorCode.NON_POSITIVE)
        self.state = state
        self.nu = nu
        self.next_state = next_state if next_state is not None else state

    def create_data(self) -> ActionData:
        """Allocate data with the shapes of this model."""
        ndx, nu, ndx_next = self.state.ndx, self.nu, self.next_state.ndx
        return ActionData(
            cost=0.0,
            xnext=self.next_state.zero(),
            Lx=jnp.zeros(ndx),
            Lu=jnp.zeros(nu),
            Lxx=jnp.zeros((ndx, ndx)),
            Lxu=jnp.zeros((ndx, nu)),
            Luu=jnp.zeros((nu, nu)),
            Fx=jnp.zeros((ndx_next, ndx)),
            Fu=jnp.zeros((ndx_next, nu)),
        )

    def _control(self, u: ControlInput | None) -> ControlInput:
        return jnp.zeros(self.nu) if u is None else u

    @abstractmethod
    def calc(self, data: ActionData, x: ManifoldPoint, u: ControlInput | None = None) -> None:
        """Evaluate the cost and the next state.

        Outside the valid domain of the model either leave a non-finite
        ``data.cost`` or raise ``DomainError`` (``ValueError`` and
        ``FloatingPointError`` are treated the same). The solver rejects such
        trial steps and tries a shorter one.
        """

    @abstractmethod
    def calc_diff(self, data: ActionData, x: ManifoldPoint, u: ControlInput | None = None) -> None:
        """Compute cost and dynamics derivatives. Assumes ``calc`` ran at the same point."""


def _build_autodiff_kernels(
    state: StateAbstract,
    next_state: StateAbstract,
    cost_function: CostFunction,
    dynamics_function: DynamicsFunction | None,
    nu: int,
) -> tuple[Callable, Callable]:
    """Create JIT-compiled evaluation and linearization kernels for one model."""
    ndx = state.ndx

    def calc_kernel(x: Array, u: Array) -> tuple[Array, Array]:
        cost = cost_function(x, u)
        xnext = dynamics_function(x, u) if dynamics_function is not None else x
        return cost, xnext

    def cost_local(dxu: Array, x: Array, u: Array) -> Array:
        return cost_function(state.integrate(x, dxu[:ndx]), u + dxu[ndx:])

    def dynamics_local(dxu: Array, x: Array, u: Array) -> Array:
        # Deviation of the perturbed next state, measured on the next manifold
        xnext = dynamics_function(x, u)
        return next_state.diff(xnext, dynamics_function(state.integrate(x, dxu[:ndx]), u + dxu[ndx:]))

    def calc_diff_kernel(x: Array, u: Array) -> tuple[Array, ...]:
        z = jnp.zeros(ndx + nu, dtype=x.dtype)
        grad = jax.grad(cost_local)(z, x, u)
        hess = jax.hessian(cost_local)(z, x, u)
        hess = 0.5 * (hess + hess.T)
        if dynamics_function is not None:
            jac = jax.jacobian(dynamics_local)(z, x, u)
        else:
            jac = jnp.eye(ndx, ndx + nu, dtype=x.dtype)
        return (
            grad[:ndx],
            grad[ndx:],
            hess[:ndx, :ndx],
            hess[:ndx, ndx:],
            hess[ndx:, ndx:],
            jac[:, :ndx],
            jac[:, ndx:],
        )

    return jax.jit(calc_kernel), jax.jit(calc_diff_kernel)


class ActionModelAutoDiff(ActionModelAbstract):
    """Action model whose derivatives are computed by JAX automatic differentiation.

    Derivatives are taken in local tangent coordinates, i.e. of
    ``l(integrate(x, dx), u + du)`` and ``diff(f(x, u), f(integrate(x, dx), u + du))``
    at ``dx = du = 0``, so non-Euclidean states are linearized correctly.

    Args:
        state: State manifold of this knot point
        cost_function: ``l(x, u) -> scalar``; terminal models receive an empty ``u``
        dynamics_function: ``f(x, u) -> x_next``; ``None`` for terminal models
        nu: Control dimension
        next_state: State manifold of ``f``'s output, defaults to ``state``
    """

    def __init__(
        self,
        state: StateAbstract,
        cost_function: CostFunction,
        dynamics_function: DynamicsFunction | None = None,
        nu: int = 0,
        next_state: StateAbstract | None = None,
    ) -> None:
        super().__init__(state, nu, next_state)
        if dynamics_function is None and nu > 0:
            _kkt_throw(
                "A model with controls needs a dynamics function", ErrorCode.DYNAMICS_FUN_NOT_SET
            )
        if dynamics_function is None and next_state is not None and next_state.ndx != state.ndx:
            _kkt_throw(
                "A model without dynamics cannot change the state dimension",
                ErrorCode.DIMENSION_MISMATCH,
            )

        self.cost_function = cost_function
        self.dynamics_function = dynamics_function
        self._calc_kernel, self._calc_diff_kernel = _build_autodiff_kernels(
            state, self.next_state, cost_function, dynamics_function, nu
        )

    @property
    def has_dynamics(self) -> bool:
        return self.dynamics_function is not None

    def calc(self, data: ActionData, x: ManifoldPoint, u: ControlInput | None = None) -> None:
        cost, xnext = self._calc_kernel(x, self._control(u))
        data.cost = float(cost)
        data.xnext = xnext

    def calc_diff(self, data: ActionData, x: ManifoldPoint, u: ControlInput | None = None) -> None:
        (
            data.Lx,
            data.Lu,
            data.Lxx,
            data.Lxu,
            data.Luu,
            data.Fx,
            data.Fu,
        ) = self._calc_diff_kernel(x, self._control(u))
