import numpy as np
import pytest

from davidson.matrices import (
    diagonal, diagonal_pencil, hermitian_with_spectrum, jacobi_preconditioner,
)
from davidson.operator import OperatorDescriptor
from davidson.params import (
    InitMode, Projection, RestartingParams, RestartScheme, SolverParameters, Target,
)
from davidson.presets import Method, set_method
from davidson.solver import Solver, Status, solve, solve_complex, solve_real

from .common import MAX_RETRIES_SHORT


norm = np.linalg.norm

N = 100
DIAG = np.arange(1.0, N + 1)


def _params(method=Method.DEFAULT_MIN_TIME, **kwargs):
    kwargs.setdefault("eps", 1e-10)
    kwargs.setdefault("max_matvecs", 20_000)
    kwargs.setdefault("print_level", 0)
    return set_method(method, SolverParameters(**kwargs))


def _true_residuals(A, values, vectors, B=None):
    BX = vectors if B is None else B @ vectors
    return norm(A @ vectors - BX * values, axis=0)


class TestSolveStandard:
    def test_diagonal_smallest(self):
        ## Given
        A = diagonal(DIAG)
        params = _params(num_evals=5, seed=0)

        ## When
        result = solve_real(A, N, params)

        ## Then
        assert result.status == Status.SUCCESS
        assert result.num_converged == 5
        np.testing.assert_allclose(result.values, [1, 2, 3, 4, 5], atol=1e-8)
        assert result.stats.num_matvecs > 0
        assert result.stats.num_outer_iterations > 0

    def test_diagonal_largest(self):
        A = diagonal(DIAG)
        params = _params(num_evals=3, target=Target.LARGEST, seed=1)
        result = solve_real(A, N, params)
        np.testing.assert_allclose(result.values, [100, 99, 98], atol=1e-8)

    @pytest.mark.flaky(reruns=MAX_RETRIES_SHORT)
    def test_closest_geq(self):
        ## Given
        A = diagonal(DIAG)
        params = _params(
            num_evals=5, target=Target.CLOSEST_GEQ, target_shifts=(50.5,),
            projection=Projection.HARMONIC, a_norm=100.0,
        )

        ## When
        result = solve_real(A, N, params)

        ## Then
        assert result.status == Status.SUCCESS
        np.testing.assert_allclose(result.values, [51, 52, 53, 54, 55], atol=1e-7)

    def test_residuals_below_tolerance(self):
        ## Given
        A = diagonal(DIAG)
        params = _params(num_evals=4, a_norm=100.0, seed=2)

        ## When
        result = solve_real(A, N, params)

        ## Then
        tol = params.eps * 100.0
        assert np.all(result.residual_norms <= tol)
        assert np.all(_true_residuals(A, result.values, result.vectors) <= tol * 1.01)
        # the eigenvectors are orthonormal
        X = result.vectors
        assert norm(X.T @ X - np.eye(4)) < 1e-8

    @pytest.mark.parametrize("locking", [False, True])
    def test_locking_same_values(self, locking):
        ## Given
        A = diagonal(DIAG)
        params = _params(num_evals=6, locking=locking, seed=3)

        ## When
        result = solve_real(A, N, params)

        ## Then
        assert result.status == Status.SUCCESS
        np.testing.assert_allclose(result.values, np.arange(1.0, 7.0), atol=1e-8)

    def test_exact_preconditioner_needs_fewer_iterations(self):
        ## Given
        A = diagonal(DIAG)

        ## When
        plain = solve_real(A, N, _params(Method.GD_OLSEN_PLUSK, num_evals=3, seed=4))
        preconditioned = solve_real(
            A, N, _params(Method.GD_OLSEN_PLUSK, num_evals=3, seed=4),
            preconditioner=jacobi_preconditioner(A),
        )

        ## Then
        assert plain.status == Status.SUCCESS
        assert preconditioned.status == Status.SUCCESS
        np.testing.assert_allclose(preconditioned.values, [1, 2, 3], atol=1e-8)
        assert (preconditioned.stats.num_outer_iterations
                < plain.stats.num_outer_iterations)

    @pytest.mark.flaky(reruns=MAX_RETRIES_SHORT)
    @pytest.mark.parametrize("method", [
        Method.GD_PLUSK, Method.GD_OLSEN_PLUSK, Method.JDQMR_ETOL,
    ])
    def test_exact_preconditioner_iteration_bound(self, method):
        ## Given
        # three eigenvalues well separated from the rest of the spectrum
        r_values = np.concatenate([[1.0, 2.0, 3.0], np.linspace(50.0, 100.0, N - 3)])
        A = diagonal(r_values)
        params = _params(method, num_evals=3, max_block_size=3, eps=1e-8, a_norm=100.0,
                         init_basis_mode=InitMode.KRYLOV)

        ## When
        result = solve_real(A, N, params, preconditioner=jacobi_preconditioner(A))

        ## Then
        assert result.status == Status.SUCCESS
        np.testing.assert_allclose(result.values, [1, 2, 3], atol=1e-6)
        # at most two outer iterations per eigenpair
        assert result.stats.num_outer_iterations <= 2 * 3

    @pytest.mark.parametrize("method", [
        Method.LOBPCG_ORTHOBASIS, Method.LOBPCG_ORTHOBASIS_WINDOW,
    ])
    def test_exact_preconditioner_block_methods(self, method):
        ## Given
        A = diagonal(DIAG)
        rng = np.random.default_rng(19)
        guesses = np.eye(N)[:, :3] + 1e-3 * rng.standard_normal((N, 3))
        params = _params(method, num_evals=3, max_block_size=3, seed=19)

        ## When
        result = solve_real(A, N, params, preconditioner=jacobi_preconditioner(A),
                            initial_vectors=guesses)

        ## Then
        assert result.status == Status.SUCCESS
        np.testing.assert_allclose(result.values, [1, 2, 3], atol=1e-8)

    def test_constraints(self):
        ## Given
        A = diagonal(DIAG)
        constraints = np.eye(N)[:, :2]

        ## When
        result = solve_real(A, N, _params(num_evals=3, seed=5), constraints=constraints)

        ## Then
        np.testing.assert_allclose(result.values, [3, 4, 5], atol=1e-8)
        np.testing.assert_allclose(constraints.T @ result.vectors, 0, atol=1e-8)

    def test_initial_guesses(self):
        ## Given
        A = diagonal(DIAG)
        guesses = np.eye(N)[:, :2] + 1e-4 * np.random.default_rng(6).standard_normal((N, 2))
        params = _params(Method.GD_OLSEN_PLUSK, num_evals=2, seed=6)

        ## When
        result = solve_real(A, N, params, initial_vectors=guesses)

        ## Then
        assert result.status == Status.SUCCESS
        np.testing.assert_allclose(result.values, [1, 2], atol=1e-8)

    @pytest.mark.parametrize("projection", [Projection.RR, Projection.REFINED,
                                            Projection.HARMONIC])
    def test_projections(self, projection):
        ## Given
        A = diagonal(DIAG)
        params = _params(num_evals=3, target=Target.CLOSEST_ABS, target_shifts=(20.2,),
                         projection=projection, a_norm=100.0, seed=7)

        ## When
        result = solve_real(A, N, params)

        ## Then
        assert result.status == Status.SUCCESS
        np.testing.assert_allclose(np.sort(result.values), [19, 20, 21], atol=1e-7)

    @pytest.mark.flaky(reruns=MAX_RETRIES_SHORT)
    @pytest.mark.parametrize("projection", [Projection.RR, Projection.REFINED,
                                            Projection.HARMONIC])
    def test_shift_on_eigenvalue(self, projection):
        ## Given
        A = diagonal(DIAG)
        params = _params(num_evals=3, target=Target.CLOSEST_ABS, target_shifts=(20.0,),
                         projection=projection, a_norm=100.0)

        ## When
        result = solve_real(A, N, params)

        ## Then
        assert result.status == Status.SUCCESS
        np.testing.assert_allclose(result.values[0], 20.0, atol=1e-7)
        np.testing.assert_allclose(np.sort(result.values), [19, 20, 21], atol=1e-7)

    @pytest.mark.parametrize("scheme", [RestartScheme.THICK, RestartScheme.DTR])
    def test_restart_schemes(self, scheme):
        ## Given
        A = diagonal(DIAG)
        params = _params(Method.GD_OLSEN_PLUSK, num_evals=3, max_basis_size=10, seed=20,
                         restarting=RestartingParams(scheme=scheme))

        ## When
        solver = Solver(OperatorDescriptor(N, A), params)
        result = solver.solve()

        ## Then
        assert solver.params.restarting.scheme == scheme
        assert result.status == Status.SUCCESS
        assert result.stats.num_restarts > 0
        np.testing.assert_allclose(result.values, [1, 2, 3], atol=1e-8)

    def test_all_but_one_eigenvalue(self):
        ## Given
        r_values = np.arange(1.0, 11.0)

        ## When
        result = solve_real(diagonal(r_values), 10, _params(num_evals=9, seed=21))

        ## Then
        assert result.status == Status.SUCCESS
        np.testing.assert_allclose(result.values, r_values[:9], atol=1e-8)

    def test_one_dimensional_problem(self):
        ## When
        result = solve_real(np.array([[3.0]]), 1, _params(seed=22))

        ## Then
        assert result.status == Status.SUCCESS
        np.testing.assert_allclose(result.values, [3.0])
        np.testing.assert_allclose(np.abs(result.vectors), [[1.0]])

    def test_user_convergence_test(self):
        ## Given
        A = diagonal(DIAG)
        calls = []

        def conv_test(value, vector, rnorm):
            calls.append(rnorm)
            return rnorm < 1e-3

        params = _params(num_evals=2, conv_test_fun=conv_test, seed=8)

        ## When
        result = solve_real(A, N, params)

        ## Then
        assert result.status == Status.SUCCESS
        assert len(calls) > 0
        np.testing.assert_allclose(result.values, [1, 2], atol=1e-5)


class TestSolveGeneralized:
    def test_identity_mass_matches_standard(self):
        ## Given
        A = diagonal(DIAG)
        B = diagonal(np.ones(N))

        ## When
        standard = solve_real(A, N, _params(num_evals=4, seed=9))
        generalized = solve_real(A, N, _params(num_evals=4, seed=9), mass_matvec=B)

        ## Then
        assert generalized.status == Status.SUCCESS
        np.testing.assert_allclose(generalized.values, standard.values, atol=1e-8)

    @pytest.mark.flaky(reruns=MAX_RETRIES_SHORT)
    def test_identity_mass_shift_on_eigenvalue(self):
        ## Given
        A = diagonal(DIAG)
        B = diagonal(np.ones(N))
        params = _params(num_evals=3, target=Target.CLOSEST_ABS, target_shifts=(20.0,),
                         projection=Projection.HARMONIC, a_norm=100.0)

        ## When
        result = solve_real(A, N, params, mass_matvec=B)

        ## Then
        assert result.status == Status.SUCCESS
        np.testing.assert_allclose(np.sort(result.values), [19, 20, 21], atol=1e-7)

    def test_diagonal_pencil(self):
        ## Given
        A, B, r_values = diagonal_pencil(60)

        ## When
        result = solve_real(A, 60, _params(num_evals=3, seed=10), mass_matvec=B)

        ## Then
        assert result.status == Status.SUCCESS
        np.testing.assert_allclose(result.values, r_values[:3], atol=1e-8)
        X = result.vectors
        # B-orthonormal eigenvectors
        np.testing.assert_allclose(X.T @ (B @ X), np.eye(3), atol=1e-8)
        assert np.all(_true_residuals(A, result.values, X, B) < 1e-7)


class TestSolveComplex:
    def test_hermitian(self):
        ## Given
        rng = np.random.default_rng(11)
        r_values = np.linspace(-5.0, 5.0, 60)
        A = hermitian_with_spectrum(r_values, np.complex128, rng)

        ## When
        result = solve_complex(A, 60, _params(num_evals=3, seed=11))

        ## Then
        assert result.status == Status.SUCCESS
        assert result.vectors.dtype == np.complex128
        np.testing.assert_allclose(result.values, r_values[:3], atol=1e-8)
        assert np.all(_true_residuals(A, result.values, result.vectors) < 1e-8)


class TestPresets:
    @pytest.mark.flaky(reruns=MAX_RETRIES_SHORT)
    @pytest.mark.parametrize("method", [
        Method.DYNAMIC, Method.ARNOLDI, Method.GD, Method.GD_PLUSK,
        Method.GD_OLSEN_PLUSK, Method.JD_OLSEN_PLUSK, Method.RQI, Method.JDQR,
        Method.JDQMR, Method.JDQMR_ETOL, Method.SUBSPACE_ITERATION,
        Method.LOBPCG_ORTHOBASIS, Method.LOBPCG_ORTHOBASIS_WINDOW,
    ])
    def test_preset_converges(self, method):
        ## Given
        r_values = np.arange(1.0, 41.0)
        A = hermitian_with_spectrum(r_values)
        params = _params(method, num_evals=3, eps=1e-8, max_block_size=1)

        ## When
        result = solve_real(A, 40, params)

        ## Then
        assert result.status == Status.SUCCESS
        np.testing.assert_allclose(result.values, [1, 2, 3], atol=1e-6)


class TestInvariants:
    def test_basis_stays_orthonormal_and_bounded(self):
        ## Given
        A = diagonal(DIAG)
        op = OperatorDescriptor(N, A)
        sizes, errors = [], []

        def monitor(info):
            V = solver.basis
            sizes.append(info.basis_size)
            errors.append(norm(V.T @ V - np.eye(V.shape[1])))

        params = _params(num_evals=4, max_basis_size=12, seed=12, monitor=monitor)
        solver = Solver(op, params)

        ## When
        result = solver.solve()

        ## Then
        assert result.status == Status.SUCCESS
        assert len(sizes) > 0
        assert max(sizes) <= 12
        assert max(errors) < 1e-10
        # the basis was restarted
        assert result.stats.num_restarts > 0

    def test_locked_pairs_are_never_modified(self):
        ## Given
        A = diagonal(DIAG)
        snapshots = []

        def monitor(info):
            snapshots.append(info.locked_residuals)

        params = _params(num_evals=5, locking=True, seed=13, monitor=monitor)

        ## When
        result = solve_real(A, N, params)

        ## Then
        assert result.status == Status.SUCCESS
        for before, after in zip(snapshots, snapshots[1:]):
            assert after[:len(before)] == before

    def test_statistics_are_threaded(self):
        A = diagonal(DIAG)
        result = solve_real(A, N, _params(num_evals=2, seed=14))
        stats = result.stats
        assert stats.num_global_sum > 0
        assert stats.num_ortho_inner_prods > 0
        assert stats.elapsed_time > 0
        assert stats.estimate_max_eval <= 100.0 + 1e-8
        assert stats.estimate_min_eval == pytest.approx(1.0)


class TestStatus:
    def test_parameter_error(self):
        ## When
        result = solve_real(diagonal(DIAG), N, SolverParameters(num_evals=0))

        ## Then
        assert result.status == -2
        assert result.num_converged == 0
        assert not result.success

    def test_missing_shift(self):
        result = solve_real(diagonal(DIAG), N, SolverParameters(target=Target.CLOSEST_ABS))
        assert result.status == -7

    @pytest.mark.parametrize("name, status", [
        ("matvec", Status.MATVEC_FAILURE),
        ("preconditioner", Status.PRECONDITIONER_FAILURE),
        ("mass_matvec", Status.MASS_MATVEC_FAILURE),
        ("global_sum", Status.GLOBAL_SUM_FAILURE),
    ])
    def test_callback_failure(self, name, status):
        ## Given
        calls = {"n": 0}

        def failing(*args):
            calls["n"] += 1
            # fail after a few successful calls
            if calls["n"] > 3:
                return args[0], 42
            return args[0]

        def matvec(X):
            return DIAG[:, None] * X

        kwargs = dict(
            matvec=matvec, preconditioner=None, mass_matvec=None, global_sum=None,
        )
        if name == "matvec":
            kwargs["matvec"] = lambda X: failing(DIAG[:, None] * X)
        else:
            kwargs[name] = failing
        matvec = kwargs.pop("matvec")

        ## When
        result = solve(matvec, N, _params(num_evals=2, seed=15), **kwargs)

        ## Then
        assert result.status == status
        assert result.callback_code == 42

    def test_convergence_test_failure(self):
        params = _params(num_evals=2, conv_test_fun=lambda v, x, r: (False, 9), seed=16)
        result = solve_real(diagonal(DIAG), N, params)
        assert result.status == Status.CONVTEST_FAILURE
        assert result.callback_code == 9

    def test_iteration_budget(self):
        ## Given
        A = diagonal(DIAG)
        params = _params(num_evals=5, max_outer_iterations=3, seed=17)

        ## When
        result = solve_real(A, N, params)

        ## Then
        assert result.status == Status.MAX_ITERATIONS
        assert result.stats.num_outer_iterations == 3
        assert result.num_converged < 5

    def test_matvec_budget(self):
        A = diagonal(DIAG)
        params = _params(Method.GD_PLUSK, num_evals=5, max_matvecs=20, seed=18)
        result = solve_real(A, N, params)
        assert result.status == Status.MAX_ITERATIONS
        # the budget is checked once per outer iteration
        assert result.stats.num_matvecs < 20 + 15
