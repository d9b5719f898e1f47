"""Tests for the direct KKT solver.

The scalar problem used throughout is

    min  0.5 x0^2 + 0.5 u0^2 + l_T(x1)   s.t.  x1 = x0 + u0,  x0 = 1

whose optimum for ``l_T(x) = 0.5 x^2`` is ``u0 = -0.5``, ``x1 = 0.5``.
"""

import jax.numpy as jnp
import numpy as np
import pytest

from conftest import build_rotation_problem, build_scalar_problem, integrator, quadratic_cost
from jaxkkt import (
    ActionModelAutoDiff,
    CallbackLogger,
    DimensionError,
    DomainError,
    ErrorCode,
    KKTLayout,
    KKTOptions,
    ShootingProblem,
    SolverKKT,
    SolveStatus,
    StateSO2,
    StateVector,
)


def concave_terminal_cost(x, u):
    return -0.25 * jnp.sum(x**2)


def log_barrier_terminal_cost(x, u):
    # Undefined below x = -0.5, no contribution to the derivatives above it
    return 0.5 * jnp.sum((x + 3.0) ** 2) + 0.0 * jnp.sum(jnp.log(x + 0.5))


class CountingSolverKKT(SolverKKT):
    def __init__(self, problem, options=None):
        super().__init__(problem, options)
        self.increases = []

    def increase_regularization(self):
        super().increase_regularization()
        self.increases.append(self.xreg)


class BoundedTerminalModel(ActionModelAutoDiff):
    """Terminal cost 0.5 (x + 3)^2 that refuses to evaluate at x <= -0.5."""

    def __init__(self, state, error_type):
        super().__init__(state, lambda x, u: 0.5 * jnp.sum((x + 3.0) ** 2))
        self.error_type = error_type

    def calc(self, data, x, u=None):
        if float(x[0]) <= -0.5:
            raise self.error_type("terminal cost evaluated outside its domain")
        super().calc(data, x, u)


def build_bounded_problem(error_type):
    state = StateVector(1)
    running = ActionModelAutoDiff(state, quadratic_cost, integrator, nu=1)
    return ShootingProblem(jnp.array([1.0]), [running], BoundedTerminalModel(state, error_type))


class TestKKTLayout:
    def test_homogeneous_layout(self):
        layout = KKTLayout.from_problem(build_scalar_problem(T=3))
        assert layout.T == 3
        assert layout.x_offsets == (0, 1, 2, 3)
        assert layout.u_offsets == (0, 1, 2)
        assert layout.nprimal == 7
        assert layout.size == 11

    def test_heterogeneous_layout(self, heterogeneous_problem):
        layout = KKTLayout.from_problem(heterogeneous_problem)
        assert layout.ndxs == (1, 2, 1)
        assert layout.nus == (1, 1)
        assert layout.x_offsets == (0, 1, 3)
        assert layout.u_offsets == (0, 1)
        assert layout.ndx == 4
        assert layout.nu == 2
        assert layout.size == 10


class TestAssembly:
    def test_blocks_of_scalar_problem(self, scalar_problem):
        solver = SolverKKT(scalar_problem)
        solver.set_candidate([jnp.array([1.0]), jnp.array([0.5])], [jnp.array([0.2])])
        solver.calc()

        # primal order (x0, x1, u0), dual order (lambda0, lambda1)
        expected = np.array(
            [
                [1.0, 0.0, 0.0, 1.0, -1.0],
                [0.0, 1.0, 0.0, 0.0, 1.0],
                [0.0, 0.0, 1.0, 0.0, -1.0],
                [1.0, 0.0, 0.0, 0.0, 0.0],
                [-1.0, 1.0, -1.0, 0.0, 0.0],
            ]
        )
        np.testing.assert_allclose(solver.kkt, expected, atol=1e-12)
        # gradient, then gaps diff(x0, xs[0]) and diff(xs[0] + us[0], xs[1])
        np.testing.assert_allclose(solver.kktref, [1.0, 0.5, 0.2, 0.0, -0.7], atol=1e-12)

    def test_heterogeneous_jacobian_placement(self, heterogeneous_problem):
        solver = SolverKKT(heterogeneous_problem)
        solver.calc()
        kkt = np.asarray(solver.kkt)
        nprimal = solver.layout.nprimal

        # dynamics of knot 0 (R^1 -> R^2) sit in the rows of x1
        np.testing.assert_allclose(kkt[nprimal + 1 : nprimal + 3, 0:1], [[-1.0], [0.0]])
        np.testing.assert_allclose(kkt[nprimal + 1 : nprimal + 3, 4:5], [[0.0], [-1.0]])
        # dynamics of knot 1 (R^2 -> R^1) sit in the rows of x2
        np.testing.assert_allclose(kkt[nprimal + 3 : nprimal + 4, 1:3], [[-1.0, -1.0]])
        np.testing.assert_allclose(kkt[nprimal + 3 : nprimal + 4, 5:6], [[-1.0]])
        np.testing.assert_allclose(
            kkt[nprimal:, :4],
            [[1.0, 0.0, 0.0, 0.0], [-1.0, 1.0, 0.0, 0.0], [0.0, 0.0, 1.0, 0.0], [0.0, -1.0, -1.0, 1.0]],
        )
        np.testing.assert_array_equal(kkt[nprimal:, nprimal:], np.zeros((4, 4)))

    def test_kkt_is_symmetric_on_a_manifold(self):
        state = StateSO2(nv=1)
        x_goal = state.from_angle(2.0, jnp.array([0.0]))

        def cost(x, u):
            dx = state.diff(x_goal, x)
            return 0.5 * jnp.dot(dx, dx) + 0.5 * jnp.dot(u, u) + 0.3 * x[2] * u[0] * x[0]

        def dynamics(x, u):
            theta = jnp.arctan2(x[1], x[0])
            return state.integrate(x, jnp.stack([0.1 * x[2], 0.1 * (u[0] - jnp.sin(theta))]))

        running = ActionModelAutoDiff(state, cost, dynamics, nu=1)
        terminal = ActionModelAutoDiff(
            state, lambda x, u: 0.5 * jnp.sum(state.diff(x_goal, x) ** 2) + x[0] * x[2]
        )
        problem = ShootingProblem(state.from_angle(0.1, jnp.array([0.2])), [running] * 3, terminal)

        solver = SolverKKT(problem)
        knots = [(0.1, 0.2), (0.5, -1.0), (2.0, 0.3), (-2.5, 1.1)]
        xs = [state.from_angle(a, jnp.array([v])) for a, v in knots]
        us = [jnp.array([0.4]), jnp.array([-0.7]), jnp.array([1.3])]
        solver.set_candidate(xs, us)
        solver.xreg = 0.5
        solver.ureg = 0.25
        solver.calc()

        assert solver.kkt.shape == (2 * 8 + 3, 2 * 8 + 3)
        np.testing.assert_array_equal(solver.kkt, solver.kkt.T)


class TestRegularization:
    def test_regularization_is_added_to_the_diagonal(self, scalar_problem):
        solver = SolverKKT(scalar_problem)
        solver.xreg = 0.1
        solver.ureg = 0.2
        solver.calc()
        np.testing.assert_allclose(jnp.diagonal(solver.kkt)[:3], [1.1, 1.1, 1.2])

    def test_nan_disables_regularization(self, scalar_problem):
        solver = SolverKKT(scalar_problem)
        solver.xreg = float("nan")
        solver.ureg = 0.2
        solver.calc()
        np.testing.assert_allclose(jnp.diagonal(solver.kkt)[:3], [1.0, 1.0, 1.2])

    def test_increase_and_decrease_saturate(self, scalar_problem):
        solver = SolverKKT(scalar_problem)
        solver.xreg = 0.0
        solver.increase_regularization()
        assert solver.xreg == solver.regmin
        assert solver.ureg == solver.xreg

        for _ in range(30):
            solver.increase_regularization()
        assert solver.xreg == solver.regmax

        for _ in range(30):
            solver.decrease_regularization()
        assert solver.xreg == solver.regmin
        assert solver.ureg == solver.regmin

    def test_recalc_false_reapplies_regularization(self):
        solver = SolverKKT(build_scalar_problem(terminal_cost=concave_terminal_cost))
        solver.set_candidate([jnp.array([1.0]), jnp.array([1.0])], [jnp.array([0.0])], True)

        assert solver.compute_direction() == ErrorCode.CHOLESKY_FAILED

        solver.xreg = 1.0
        solver.ureg = 1.0
        assert solver.compute_direction(recalc=False) == ErrorCode.NO_ERROR
        np.testing.assert_allclose(jnp.diagonal(solver.kkt)[:3], [2.0, 0.5, 2.0])


class TestDirection:
    def test_primal_dual_solves_the_kkt_system(self):
        solver = SolverKKT(build_scalar_problem(T=4))
        solver.set_candidate(
            [jnp.array([1.0]), jnp.array([0.3]), jnp.array([-2.0]), jnp.array([0.7]), jnp.array([4.0])],
            [jnp.array([0.5]), jnp.array([-0.1]), jnp.array([2.0]), jnp.array([0.0])],
        )
        assert solver.compute_direction() == ErrorCode.NO_ERROR
        np.testing.assert_allclose(solver.kkt @ solver.primaldual, -solver.kktref, atol=1e-12)

    def test_direction_is_split_per_knot(self, heterogeneous_problem):
        solver = SolverKKT(heterogeneous_problem)
        assert solver.compute_direction() == ErrorCode.NO_ERROR

        assert [dx.shape for dx in solver.dxs] == [(1,), (2,), (1,)]
        assert [du.shape for du in solver.dus] == [(1,), (1,)]
        assert [lam.shape for lam in solver.lambdas] == [(1,), (2,), (1,)]
        np.testing.assert_allclose(jnp.concatenate(solver.dxs), solver.primal[:4])
        np.testing.assert_allclose(jnp.concatenate(solver.dus), solver.primal[4:])
        np.testing.assert_allclose(jnp.concatenate(solver.lambdas), solver.dual)

    def test_expected_improvement(self, scalar_problem):
        solver = SolverKKT(scalar_problem)
        solver.compute_direction()
        d = solver.expected_improvement()

        p = solver.primal
        H = solver.kkt[:3, :3]
        np.testing.assert_allclose(d[0], -solver.kktref[:3] @ p)
        np.testing.assert_allclose(d[1], -p @ H @ p)

    def test_stopping_criteria_is_kkt_residual(self, scalar_problem):
        solver = SolverKKT(scalar_problem)
        solver.compute_direction()
        stop = solver.stopping_criteria()

        # stationarity residual equals -H p on the linear system
        p = solver.primal
        H = solver.kkt[:3, :3]
        expected = float(jnp.sum((H @ p) ** 2) + jnp.sum(solver.kktref[3:] ** 2))
        np.testing.assert_allclose(stop, expected, rtol=1e-10)

    def test_stopping_criteria_vanishes_at_optimum(self, scalar_problem):
        solver = SolverKKT(scalar_problem)
        solver.set_candidate([jnp.array([1.0]), jnp.array([0.5])], [jnp.array([-0.5])], True)
        solver.compute_direction()
        assert solver.stopping_criteria() < 1e-20

    def test_zero_step_changes_nothing(self, scalar_problem):
        solver = SolverKKT(scalar_problem)
        solver.set_candidate([jnp.array([1.0]), jnp.array([0.3])], [jnp.array([0.4])])
        solver.compute_direction()

        dV, code = solver.try_step(0.0)
        assert code == ErrorCode.NO_ERROR
        assert dV == 0.0
        for x, x_try in zip(solver.xs, solver.xs_try):
            np.testing.assert_array_equal(x, x_try)

    def test_try_step_moves_every_knot(self, scalar_problem):
        solver = SolverKKT(scalar_problem)
        solver.compute_direction()
        solver.try_step(1.0)

        np.testing.assert_allclose(solver.xs_try[0], solver.xs[0] + solver.dxs[0])
        np.testing.assert_allclose(solver.xs_try[1], solver.xs[1] + solver.dxs[1])
        np.testing.assert_allclose(solver.us_try[0], solver.us[0] + solver.dus[0])

    def test_try_step_catches_raising_model(self):
        solver = SolverKKT(build_bounded_problem(DomainError))
        solver.set_candidate([jnp.array([1.0]), jnp.array([1.0])], [jnp.array([0.0])], True)
        solver.compute_direction()

        dV, code = solver.try_step(1.0)
        assert code == ErrorCode.TRIAL_STEP_FAILED
        assert np.isnan(dV)

        dV, code = solver.try_step(0.5)
        assert code == ErrorCode.NO_ERROR
        np.testing.assert_allclose(dV, 3.0)

    def test_try_step_reports_domain_failure(self):
        solver = SolverKKT(build_scalar_problem(terminal_cost=log_barrier_terminal_cost))
        solver.set_candidate([jnp.array([1.0]), jnp.array([1.0])], [jnp.array([0.0])], True)
        solver.compute_direction()

        dV, code = solver.try_step(1.0)
        assert code == ErrorCode.TRIAL_STEP_FAILED
        assert np.isnan(dV)


class TestCandidate:
    def test_default_warm_start(self, heterogeneous_problem):
        solver = SolverKKT(heterogeneous_problem)
        np.testing.assert_array_equal(solver.xs[0], [1.0])
        np.testing.assert_array_equal(solver.xs[1], [0.0, 0.0])
        assert not solver.is_feasible

    def test_wrong_number_of_states_raises(self, scalar_problem):
        solver = SolverKKT(scalar_problem)
        with pytest.raises(DimensionError):
            solver.set_candidate([jnp.array([1.0])], [jnp.array([0.0])])

    def test_wrong_state_shape_raises(self, scalar_problem):
        solver = SolverKKT(scalar_problem)
        with pytest.raises(DimensionError):
            solver.set_candidate([jnp.array([1.0]), jnp.array([1.0, 2.0])], [jnp.array([0.0])])

    def test_wrong_control_shape_raises(self, scalar_problem):
        solver = SolverKKT(scalar_problem)
        with pytest.raises(DimensionError):
            solver.solve([jnp.array([1.0]), jnp.array([1.0])], [jnp.array([0.0, 1.0])])


class TestSolve:
    def test_linear_quadratic_problem(self, scalar_problem):
        solver = SolverKKT(scalar_problem)

        assert solver.solve(maxiter=20)
        assert solver.stats.status == SolveStatus.SUCCESS
        assert solver.stats.iterations == 2
        np.testing.assert_allclose(solver.us[0], [-0.5], atol=1e-10)
        np.testing.assert_allclose(solver.xs[1], [0.5], atol=1e-10)
        np.testing.assert_allclose(solver.xs[1], solver.xs[0] + solver.us[0], atol=1e-12)
        np.testing.assert_allclose(solver.stats.cost, 0.75)
        assert solver.stats.stop < solver.th_stop

    def test_optimal_warm_start_converges_immediately(self, scalar_problem):
        solver = SolverKKT(scalar_problem)
        assert solver.solve(
            [jnp.array([1.0]), jnp.array([0.5])], [jnp.array([-0.5])], is_feasible=True
        )
        assert solver.stats.iterations == 1

    def test_infeasible_warm_start_is_not_reported_converged_early(self, scalar_problem):
        solver = SolverKKT(scalar_problem)
        assert not solver.solve(maxiter=1)
        assert solver.stats.status == SolveStatus.MAX_ITERATIONS

    def test_heterogeneous_problem(self, heterogeneous_problem):
        solver = SolverKKT(heterogeneous_problem)
        assert solver.solve(maxiter=20)

        xs, us = solver.xs, solver.us
        np.testing.assert_allclose(xs[1], jnp.concatenate([xs[0], us[0]]), atol=1e-10)
        np.testing.assert_allclose(xs[2], xs[1][:1] + xs[1][1:] + us[1], atol=1e-10)

    def test_rotation_problem_wraps_through_pi(self):
        theta0, theta_goal = 3.0, -3.0
        problem = build_rotation_problem(theta0, theta_goal)
        state = problem.terminal_model.state
        us = [jnp.zeros(1)] * problem.T

        solver = SolverKKT(problem)
        assert solver.solve(problem.rollout(us), us, maxiter=20, is_feasible=True)
        assert solver.stats.iterations <= 3

        # shortest rotation is counter-clockwise across the branch cut
        assert all(float(u[0]) > 0.0 for u in solver.us)
        assert float(state.angle(solver.xs[-1])) < 0.0
        initial_error = abs(float(state.diff(state.from_angle(theta_goal), problem.x0)[0]))
        final_error = abs(float(state.diff(state.from_angle(theta_goal), solver.xs[-1])[0]))
        assert final_error < 0.5 * initial_error

        for t, (x, u) in enumerate(zip(solver.xs[:-1], solver.us)):
            np.testing.assert_allclose(jnp.linalg.norm(solver.xs[t + 1]), 1.0, atol=1e-12)
            np.testing.assert_allclose(
                state.diff(state.integrate(x, u), solver.xs[t + 1]), [0.0], atol=1e-9
            )

    def test_indefinite_hessian_escalates_regularization(self):
        problem = build_scalar_problem(terminal_cost=concave_terminal_cost)
        solver = CountingSolverKKT(problem, KKTOptions(regmin=1.0))
        logger = CallbackLogger()
        solver.set_callbacks([logger])

        converged = solver.solve(
            [jnp.array([1.0]), jnp.array([1.0])], [jnp.array([0.0])], maxiter=200, is_feasible=True
        )

        assert converged
        # a single escalation from the zero seed straight to the floor
        assert solver.increases == [1.0]
        assert all(reg == 1.0 for reg in logger.regs)
        np.testing.assert_allclose(solver.us[0], [1.0], atol=5e-4)
        np.testing.assert_allclose(solver.xs[1], [2.0], atol=5e-4)

    def test_saturated_regularization_stops_the_solve(self):
        problem = build_scalar_problem(terminal_cost=concave_terminal_cost)
        solver = CountingSolverKKT(problem, KKTOptions(regmin=1e-3, regmax=5e-3))

        converged = solver.solve(
            [jnp.array([1.0]), jnp.array([1.0])], [jnp.array([0.0])], is_feasible=True
        )

        assert not converged
        assert solver.stats.status == SolveStatus.MAX_REGULARIZATION
        assert solver.stats.iterations == 1
        assert solver.increases == [1e-3, 5e-3]

    def test_failed_trial_falls_back_to_shorter_step(self):
        problem = build_scalar_problem(terminal_cost=log_barrier_terminal_cost)
        solver = SolverKKT(problem)
        logger = CallbackLogger()
        solver.set_callbacks([logger])

        converged = solver.solve(
            [jnp.array([1.0]), jnp.array([1.0])], [jnp.array([0.0])], maxiter=1, is_feasible=True
        )

        assert not converged
        assert solver.stats.status == SolveStatus.MAX_ITERATIONS
        assert logger.steps == [0.5]
        assert solver.line_search.n_failed_trials == 1
        np.testing.assert_allclose(solver.xs[1], [0.0], atol=1e-12)
        np.testing.assert_allclose(solver.us[0], [-1.0], atol=1e-12)

    @pytest.mark.parametrize("error_type", [DomainError, ValueError, FloatingPointError])
    def test_raising_model_falls_back_to_shorter_step(self, error_type):
        solver = SolverKKT(build_bounded_problem(error_type))
        logger = CallbackLogger()
        solver.set_callbacks([logger])

        converged = solver.solve(
            [jnp.array([1.0]), jnp.array([1.0])], [jnp.array([0.0])], maxiter=1, is_feasible=True
        )

        assert not converged
        assert solver.stats.status == SolveStatus.MAX_ITERATIONS
        assert logger.steps == [0.5]
        assert solver.line_search.n_failed_trials == 1
        np.testing.assert_allclose(solver.xs[1], [0.0], atol=1e-12)
        np.testing.assert_allclose(solver.us[0], [-1.0], atol=1e-12)

    def test_reginit_seeds_regularization(self, scalar_problem):
        solver = SolverKKT(scalar_problem)
        logger = CallbackLogger()
        solver.set_callbacks([logger])
        solver.solve(maxiter=1, reginit=1e-3)

        # full step accepted, so the seed is divided once
        np.testing.assert_allclose(logger.regs[0], 1e-4)

    def test_buffers_keep_their_shape(self):
        problem = build_scalar_problem(T=5)
        solver = SolverKKT(problem)
        size = solver.layout.size
        solver.solve(maxiter=5)
        assert solver.kkt.shape == (size, size)
        assert solver.kktref.shape == (size,)
        assert solver.primaldual.shape == (size,)
