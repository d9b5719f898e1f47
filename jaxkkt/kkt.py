"""Direct KKT solver for JAX-based trajectory optimization.

Each iteration linearizes the shooting problem around the current trajectory,
assembles the full Karush-Kuhn-Tucker system of the resulting equality
constrained quadratic program

    [ H   A^T ] [ p      ]     [ g ]
    [ A   0   ] [ lambda ] = - [ c ]

and solves it for the primal step ``p`` (state and control increments) and the
costates ``lambda``. A backtracking line search with adaptive diagonal
regularization of ``H`` safeguards the step.

Block layout: the primal vector stacks every state increment (running knots
then terminal) followed by every control increment. Constraint rows are
ordered like the states: the first block enforces the initial state, the block
of knot ``t + 1`` enforces the dynamics of knot ``t``. All offsets are
cumulative so knots may have different tangent and control dimensions.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass
from functools import partial
from itertools import accumulate

import jax
import jax.numpy as jnp
import jax.scipy as jsp
from jax import Array

from .exceptions import DomainError, _error_code_to_string
from .line_search import BacktrackingLineSearch
from .shooting import ShootingProblem
from .solver_base import SolverAbstract
from .solver_options import KKTOptions
from .types import (
    ControlInput,
    DualVariable,
    ErrorCode,
    Float,
    ManifoldPoint,
    SolveStatus,
    TangentVector,
    Verbosity,
)


@dataclass(frozen=True)
class KKTLayout:
    """Static block layout of the KKT system of one shooting problem."""

    ndxs: tuple[int, ...]  # tangent dimension per knot, terminal included
    nus: tuple[int, ...]  # control dimension per running knot
    x_offsets: tuple[int, ...]
    u_offsets: tuple[int, ...]
    ndx: int
    nu: int

    @classmethod
    def from_problem(cls, problem: ShootingProblem) -> KKTLayout:
        ndxs = tuple(m.state.ndx for m in problem.running_models) + (
            problem.terminal_model.state.ndx,
        )
        nus = tuple(m.nu for m in problem.running_models)
        return cls(
            ndxs=ndxs,
            nus=nus,
            x_offsets=tuple(accumulate(ndxs[:-1], initial=0)),
            u_offsets=tuple(accumulate(nus[:-1], initial=0)),
            ndx=sum(ndxs),
            nu=sum(nus),
        )

    @property
    def T(self) -> int:
        return len(self.nus)

    @property
    def nprimal(self) -> int:
        return self.ndx + self.nu

    @property
    def size(self) -> int:
        return 2 * self.ndx + self.nu


@partial(jax.jit, static_argnames=("layout",))
def _assemble_kkt(
    kkt: Array,
    kktref: Array,
    Lxx: list[Array],
    Lxu: list[Array],
    Luu: list[Array],
    Lx: list[Array],
    Lu: list[Array],
    Fx: list[Array],
    Fu: list[Array],
    gaps: list[Array],
    *,
    layout: KKTLayout,
) -> tuple[Array, Array]:
    """Write every block of the unregularized KKT system into the fixed-size buffers."""
    ndx = layout.ndx
    nprimal = layout.nprimal

    # Identity on every state: initial-state constraint and x_{t+1} in each dynamics row
    kkt = kkt.at[nprimal:, :ndx].set(jnp.eye(ndx, dtype=kkt.dtype))
    kkt = kkt.at[nprimal:, ndx:nprimal].set(0.0)

    for t in range(layout.T):
        ix, nx_t = layout.x_offsets[t], layout.ndxs[t]
        iu, nu_t = ndx + layout.u_offsets[t], layout.nus[t]
        jx, nx_n = layout.x_offsets[t + 1], layout.ndxs[t + 1]
        xs_ = slice(ix, ix + nx_t)
        us_ = slice(iu, iu + nu_t)
        cs_ = slice(nprimal + jx, nprimal + jx + nx_n)

        # hessian
        kkt = kkt.at[xs_, xs_].set(Lxx[t])
        kkt = kkt.at[xs_, us_].set(Lxu[t])
        kkt = kkt.at[us_, xs_].set(Lxu[t].T)
        kkt = kkt.at[us_, us_].set(Luu[t])
        # jacobian
        kkt = kkt.at[cs_, xs_].set(-Fx[t])
        kkt = kkt.at[cs_, us_].set(-Fu[t])
        # gradient and dynamics gap
        kktref = kktref.at[xs_].set(Lx[t])
        kktref = kktref.at[us_].set(Lu[t])
        kktref = kktref.at[cs_].set(gaps[t + 1])

    kktref = kktref.at[nprimal : nprimal + layout.ndxs[0]].set(gaps[0])

    # terminal knot
    ix, nx_t = layout.x_offsets[layout.T], layout.ndxs[layout.T]
    kkt = kkt.at[ix : ix + nx_t, ix : ix + nx_t].set(Lxx[layout.T])
    kktref = kktref.at[ix : ix + nx_t].set(Lx[layout.T])

    kkt = kkt.at[:nprimal, nprimal:].set(kkt[nprimal:, :nprimal].T)
    return kkt, kktref


@partial(jax.jit, static_argnames=("ndx",))
def _apply_regularization(
    kkt: Array, hess_diag: Array, xreg: Float, ureg: Float, *, ndx: int
) -> Array:
    """Reset the Hessian diagonal and add ``xreg``/``ureg``. NaN disables a block."""
    nprimal = hess_diag.shape[0]
    xreg = jnp.where(jnp.isnan(xreg), 0.0, xreg)
    ureg = jnp.where(jnp.isnan(ureg), 0.0, ureg)
    reg = jnp.concatenate(
        [jnp.full(ndx, xreg, dtype=kkt.dtype), jnp.full(nprimal - ndx, ureg, dtype=kkt.dtype)]
    )
    idx = jnp.arange(nprimal)
    return kkt.at[idx, idx].set(hess_diag + reg)


@partial(jax.jit, static_argnames=("nprimal",))
def _solve_range_space(kkt: Array, kktref: Array, *, nprimal: int) -> tuple[Array, Array, Array]:
    """Solve ``kkt @ z = -kktref`` through the Schur complement of the Hessian block.

    Both ``H`` and ``A H^{-1} A^T`` are factorized with Cholesky; a NaN factor
    means the regularized Hessian is not positive definite.
    """
    H = kkt[:nprimal, :nprimal]
    A = kkt[nprimal:, :nprimal]
    g = kktref[:nprimal]
    c = kktref[nprimal:]

    L_H = jsp.linalg.cholesky(H, lower=True)
    Hinv_At = jsp.linalg.cho_solve((L_H, True), A.T)
    Hinv_g = jsp.linalg.cho_solve((L_H, True), g)

    S = A @ Hinv_At
    L_S = jsp.linalg.cholesky(0.5 * (S + S.T), lower=True)

    dual = jsp.linalg.cho_solve((L_S, True), c - A @ Hinv_g)
    primal = -Hinv_g - Hinv_At @ dual

    ok = jnp.all(jnp.isfinite(L_H)) & jnp.all(jnp.isfinite(L_S)) & jnp.all(jnp.isfinite(primal))
    return primal, dual, ok


@jax.jit
def _expected_improvement(kkt: Array, kktref: Array, primal: Array) -> Array:
    nprimal = primal.shape[0]
    kkt_primal = kkt[:nprimal, :nprimal] @ primal
    return jnp.stack([-kktref[:nprimal] @ primal, -kkt_primal @ primal])


class SolverKKT(SolverAbstract):
    """Direct KKT solver with backtracking line search and adaptive regularization.

    Args:
        problem: Shooting problem to optimize
        options: Construction-time configuration, defaults to ``KKTOptions()``
    """

    def __init__(self, problem: ShootingProblem, options: KKTOptions | None = None) -> None:
        super().__init__(problem, options)
        self.cost_try: Float = 0.0
        self.was_feasible = False

        self.line_search = BacktrackingLineSearch(
            alphas=self.opts.alphas,
            th_grad=self.opts.th_grad,
            th_acceptstep=self.opts.th_acceptstep,
        )
        self.line_search.set_verbose(self.opts.verbose == Verbosity.LINE_SEARCH)

        self.allocate_data()

    # Construction-time configuration
    @property
    def regfactor(self) -> Float:
        return self.opts.regfactor

    @property
    def regmin(self) -> Float:
        return self.opts.regmin

    @property
    def regmax(self) -> Float:
        return self.opts.regmax

    @property
    def th_grad(self) -> Float:
        return self.opts.th_grad

    @property
    def th_step(self) -> Float:
        return self.opts.th_step

    @property
    def alphas(self) -> tuple[Float, ...]:
        return self.opts.alphas

    def allocate_data(self) -> None:
        """Size every buffer once from the problem dimensions."""
        problem = self.problem
        self.layout = KKTLayout.from_problem(problem)
        layout = self.layout

        self.nx = problem.nx
        self.ndx = layout.ndx
        self.nu = layout.nu

        self.dxs: list[TangentVector] = [jnp.zeros(n) for n in layout.ndxs]
        self.dus: list[ControlInput] = [jnp.zeros(n) for n in layout.nus]
        self.lambdas: list[DualVariable] = [jnp.zeros(n) for n in layout.ndxs]

        models = [*problem.running_models, problem.terminal_model]
        self.xs_try: list[ManifoldPoint] = [problem.x0] + [m.state.zero() for m in models[1:]]
        self.us_try: list[ControlInput] = [jnp.zeros(n) for n in layout.nus]

        self.kkt = jnp.zeros((layout.size, layout.size))
        self.kktref = jnp.zeros(layout.size)
        self.primaldual = jnp.zeros(layout.size)
        self.primal = jnp.zeros(layout.nprimal)
        self.dual = jnp.zeros(layout.ndx)
        self._hess_diag = jnp.zeros(layout.nprimal)
        self._dF = jnp.zeros(layout.nprimal)

    def _verbose_at_least(self, level: Verbosity) -> bool:
        return self.opts.verbose.value >= level.value

    def calc(self) -> Float:
        """Linearize the problem at the current trajectory and assemble the KKT system."""
        problem = self.problem
        models = problem.running_models
        datas = problem.running_datas
        tdata = problem.terminal_data

        self.cost = problem.calc_diff(self.xs, self.us)

        gaps = [models[0].state.diff(problem.x0, self.xs[0])]
        for t, (model, data) in enumerate(zip(models, datas)):
            # constraint value = diff(x_next from dynamics, x_guess)
            gaps.append(model.next_state.diff(data.xnext, self.xs[t + 1]))

        kkt, self.kktref = _assemble_kkt(
            self.kkt,
            self.kktref,
            [d.Lxx for d in datas] + [tdata.Lxx],
            [d.Lxu for d in datas],
            [d.Luu for d in datas],
            [d.Lx for d in datas] + [tdata.Lx],
            [d.Lu for d in datas],
            [d.Fx for d in datas],
            [d.Fu for d in datas],
            gaps,
            layout=self.layout,
        )
        self._hess_diag = jnp.diagonal(kkt)[: self.layout.nprimal]
        self.kkt = _apply_regularization(kkt, self._hess_diag, self.xreg, self.ureg, ndx=self.ndx)
        return self.cost

    def compute_primal_dual(self) -> ErrorCode:
        """Factorize the KKT system and split its solution into primal and dual parts."""
        primal, dual, ok = _solve_range_space(self.kkt, self.kktref, nprimal=self.layout.nprimal)
        if not bool(ok):
            return ErrorCode.CHOLESKY_FAILED

        self.primal = primal
        self.dual = dual
        self.primaldual = jnp.concatenate([primal, dual])
        return ErrorCode.NO_ERROR

    def compute_direction(self, recalc: bool = True) -> ErrorCode:
        """Compute per-knot increments and costates.

        With ``recalc=False`` the last linearization is reused and only the
        current regularization is reapplied before factorizing.
        """
        if recalc:
            self.calc()
        else:
            self.kkt = _apply_regularization(
                self.kkt, self._hess_diag, self.xreg, self.ureg, ndx=self.ndx
            )

        code = self.compute_primal_dual()
        if code != ErrorCode.NO_ERROR:
            return code

        layout = self.layout
        p_x = self.primal[: self.ndx]
        p_u = self.primal[self.ndx :]
        for t in range(layout.T):
            ix, nx_t = layout.x_offsets[t], layout.ndxs[t]
            iu, nu_t = layout.u_offsets[t], layout.nus[t]
            self.dxs[t] = p_x[ix : ix + nx_t]
            self.dus[t] = p_u[iu : iu + nu_t]
            self.lambdas[t] = self.dual[ix : ix + nx_t]

        ix, nx_t = layout.x_offsets[layout.T], layout.ndxs[layout.T]
        self.dxs[-1] = p_x[ix : ix + nx_t]
        self.lambdas[-1] = self.dual[ix : ix + nx_t]
        return ErrorCode.NO_ERROR

    def expected_improvement(self) -> Array:
        """First and second order terms ``(d0, d1)`` of the predicted cost decrease."""
        self.d = _expected_improvement(self.kkt, self.kktref, self.primal)
        return self.d

    def stopping_criteria(self) -> Float:
        """Squared KKT residual: stationarity of the Lagrangian plus dynamics gaps.

        The costate terms are ``lambda_t - Fx^T lambda_{t+1}`` and
        ``-Fu^T lambda_{t+1}``, i.e. the columns of ``A^T lambda``. The
        Jacobians are transposed, unlike a plain ``Fx lambda`` product, which
        is what keeps the residual well defined when the tangent dimension
        changes from one knot to the next.
        """
        layout = self.layout
        ndx, nprimal = self.ndx, layout.nprimal
        datas = self.problem.running_datas

        dL = self.kktref[:nprimal]
        dF = self._dF
        for t, data in enumerate(datas):
            ix, nx_t = layout.x_offsets[t], layout.ndxs[t]
            iu, nu_t = ndx + layout.u_offsets[t], layout.nus[t]
            dF = dF.at[ix : ix + nx_t].set(self.lambdas[t] - data.Fx.T @ self.lambdas[t + 1])
            dF = dF.at[iu : iu + nu_t].set(-data.Fu.T @ self.lambdas[t + 1])
        ix, nx_t = layout.x_offsets[layout.T], layout.ndxs[layout.T]
        dF = dF.at[ix : ix + nx_t].set(self.lambdas[-1])
        self._dF = dF

        self.stop = float(jnp.sum((dL + dF) ** 2) + jnp.sum(self.kktref[nprimal:] ** 2))
        return self.stop

    def try_step(self, steplength: Float) -> tuple[Float, ErrorCode]:
        """Evaluate the trial trajectory at ``steplength`` and return the cost decrease."""
        problem = self.problem
        models = [*problem.running_models, problem.terminal_model]
        try:
            for t, model in enumerate(models):
                self.xs_try[t] = model.state.integrate(self.xs[t], steplength * self.dxs[t])
            for t in range(problem.T):
                self.us_try[t] = self.us[t] + steplength * self.dus[t]

            self.cost_try = problem.calc(self.xs_try, self.us_try)
        except (DomainError, ValueError, FloatingPointError) as e:
            if self._verbose_at_least(Verbosity.LINE_SEARCH):
                print(f"  trial step at alpha = {steplength:8.3g} raised: {e}")
            return float("nan"), ErrorCode.TRIAL_STEP_FAILED

        if not bool(jnp.isfinite(self.cost_try)):
            return float("nan"), ErrorCode.TRIAL_STEP_FAILED
        return self.cost - self.cost_try, ErrorCode.NO_ERROR

    def increase_regularization(self) -> None:
        self.xreg = min(max(self.xreg * self.regfactor, self.regmin), self.regmax)
        self.ureg = self.xreg

    def decrease_regularization(self) -> None:
        self.xreg = max(self.xreg / self.regfactor, self.regmin)
        self.ureg = self.xreg

    def _finish(self, status: SolveStatus, start_time: float) -> bool:
        self.stats.status = status
        self.stats.solve_time = (time.time() - start_time) * 1000  # Convert to milliseconds
        self.stats.cost = self.cost
        self.stats.stop = self.stop
        self.stats.xreg = self.xreg
        self.stats.steplength = self.steplength

        if self._verbose_at_least(Verbosity.OUTER):
            print(f"KKT SOLVE FINISHED! status = {status.value}, iterations = {self.stats.iterations}")
        return status == SolveStatus.SUCCESS

    def solve(
        self,
        init_xs: Sequence[ManifoldPoint] | None = None,
        init_us: Sequence[ControlInput] | None = None,
        maxiter: int = 100,
        is_feasible: bool = False,
        reginit: Float = float("nan"),
    ) -> bool:
        """Run the KKT iterations from a warm start.

        Args:
            init_xs: Initial state trajectory (``T + 1`` states)
            init_us: Initial control trajectory (``T`` controls)
            maxiter: Maximum number of outer iterations
            is_feasible: Whether the warm start satisfies the dynamics
            reginit: Initial regularization; NaN starts from zero

        Returns:
            ``True`` if the stopping criterion was met, ``False`` otherwise.
            ``stats.status`` tells iteration exhaustion from a saturated
            regularization.
        """
        start_time = time.time()
        self.stats.reset()
        self.set_candidate(init_xs, init_us, is_feasible)
        self.was_feasible = False

        if jnp.isnan(reginit):
            self.xreg = 0.0
            self.ureg = 0.0
        else:
            self.xreg = float(reginit)
            self.ureg = float(reginit)

        if self._verbose_at_least(Verbosity.OUTER):
            print("STARTING KKT SOLVE....")
            print(f"  Initial Cost: {self.problem.calc(self.xs, self.us)}")

        for iteration in range(maxiter):
            self.iter = iteration
            self.stats.iterations = iteration + 1

            recalc = True
            while True:
                code = self.compute_direction(recalc)
                if code == ErrorCode.NO_ERROR:
                    break
                recalc = False
                if self.xreg == self.regmax:
                    return self._finish(SolveStatus.MAX_REGULARIZATION, start_time)
                self.increase_regularization()
                if self._verbose_at_least(Verbosity.INNER):
                    print(
                        f"  {_error_code_to_string(code)}: "
                        f"increasing regularization to {self.xreg:.3e}"
                    )

            self.expected_improvement()

            self.steplength = self.line_search.run(self.try_step, self.d, self.is_feasible)
            self.dV = self.line_search.dV
            self.dVexp = self.line_search.dVexp
            if self.line_search.accepted():
                self.was_feasible = self.is_feasible
                self.set_candidate(self.xs_try, self.us_try, True)
                self.cost = self.cost_try

            if self.steplength > self.th_step:
                self.decrease_regularization()
            if self.steplength == self.alphas[-1]:
                self.increase_regularization()
                if self._verbose_at_least(Verbosity.INNER):
                    print(f"  Smallest step reached: increasing regularization to {self.xreg:.3e}")
                if self.xreg == self.regmax:
                    return self._finish(SolveStatus.MAX_REGULARIZATION, start_time)

            self.stopping_criteria()
            self._invoke_callbacks()

            if self._verbose_at_least(Verbosity.OUTER):
                print(
                    f"  iter = {iteration:3d}, cost = {self.cost:10.4e}, stop = {self.stop:10.3e}, "
                    f"alpha = {self.steplength:8.3g}, ls_iter = {self.line_search.iterations():2d}, "
                    f"xreg = {self.xreg:8.2e}, dV = {self.dV:10.3e}, dVexp = {self.dVexp:10.3e}"
                )

            if self.was_feasible and self.stop < self.th_stop:
                return self._finish(SolveStatus.SUCCESS, start_time)

        return self._finish(SolveStatus.MAX_ITERATIONS, start_time)
