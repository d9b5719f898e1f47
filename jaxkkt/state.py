"""State-manifold adapters for JAX-based KKT trajectory optimization.

A state lives on a manifold with embedding dimension ``nx`` and tangent
dimension ``ndx``. The solver never subtracts or adds states directly; it goes
through ``diff`` and ``integrate`` so that non-Euclidean states (orientations)
are handled correctly. Every operation is written with ``jax.numpy`` so models
can differentiate through it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import jax.numpy as jnp
from jax import Array

from .exceptions import DimensionError
from .types import ManifoldPoint, TangentVector


class StateAbstract(ABC):
    """Abstract state manifold."""

    def __init__(self, nx: int, ndx: int) -> None:
        if nx <= 0 or ndx <= 0:
            raise DimensionError(f"State dimensions must be positive, got nx={nx}, ndx={ndx}")
        self.nx = nx
        self.ndx = ndx

    @abstractmethod
    def zero(self) -> ManifoldPoint:
        """Neutral element of the manifold."""

    @abstractmethod
    def diff(self, x0: ManifoldPoint, x1: ManifoldPoint) -> TangentVector:
        """Tangent vector that takes ``x0`` to ``x1``."""

    @abstractmethod
    def integrate(self, x: ManifoldPoint, dx: TangentVector) -> ManifoldPoint:
        """Move ``x`` along the tangent vector ``dx``.

        May raise ``DomainError`` if the result leaves the manifold's valid domain.
        """

    def __repr__(self) -> str:
        return f"{type(self).__name__}(nx={self.nx}, ndx={self.ndx})"


class StateVector(StateAbstract):
    """Euclidean state space, ``nx == ndx``."""

    def __init__(self, nx: int) -> None:
        super().__init__(nx, nx)

    def zero(self) -> ManifoldPoint:
        return jnp.zeros(self.nx)

    def diff(self, x0: ManifoldPoint, x1: ManifoldPoint) -> TangentVector:
        return x1 - x0

    def integrate(self, x: ManifoldPoint, dx: TangentVector) -> ManifoldPoint:
        return x + dx


class StateSO2(StateAbstract):
    """Planar rotation followed by ``nv`` Euclidean coordinates.

    The rotation is embedded as the unit complex number ``(cos θ, sin θ)`` so
    ``nx = 2 + nv`` while ``ndx = 1 + nv``.
    """

    def __init__(self, nv: int = 0) -> None:
        if nv < 0:
            raise DimensionError(f"Number of Euclidean coordinates must be non-negative, got {nv}")
        super().__init__(2 + nv, 1 + nv)
        self.nv = nv

    def zero(self) -> ManifoldPoint:
        return jnp.zeros(self.nx).at[0].set(1.0)

    def from_angle(self, theta: float, v: Array | None = None) -> ManifoldPoint:
        """Build a state from an angle and optional Euclidean coordinates."""
        head = jnp.array([jnp.cos(theta), jnp.sin(theta)])
        if v is None:
            v = jnp.zeros(self.nv)
        return jnp.concatenate([head, jnp.asarray(v, dtype=head.dtype)])

    def angle(self, x: ManifoldPoint) -> Array:
        """Rotation angle in ``(-pi, pi]``."""
        return jnp.arctan2(x[1], x[0])

    def diff(self, x0: ManifoldPoint, x1: ManifoldPoint) -> TangentVector:
        # Relative rotation x0^{-1} x1 as a complex number
        cos_rel = x0[0] * x1[0] + x0[1] * x1[1]
        sin_rel = x0[0] * x1[1] - x0[1] * x1[0]
        dtheta = jnp.arctan2(sin_rel, cos_rel)
        return jnp.concatenate([dtheta[None], x1[2:] - x0[2:]])

    def integrate(self, x: ManifoldPoint, dx: TangentVector) -> ManifoldPoint:
        c, s = jnp.cos(dx[0]), jnp.sin(dx[0])
        head = jnp.stack([x[0] * c - x[1] * s, x[1] * c + x[0] * s])
        return jnp.concatenate([head, x[2:] + dx[1:]])
