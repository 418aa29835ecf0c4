import dataclasses
import enum
import logging
import time

import numpy as np

from .convergence import MACHINE_EPS, ConvergenceTester, gaps
from .correction import CorrectionSolver
from .krylov import krylov_basis
from .locking import LockedSet, LockingManager, complement_coefficients
from .operator import CallbackError, OperatorDescriptor
from .ortho import orthonormalize
from .params import (
    InitMode, ParameterError, Projection, SolverParameters, check_parameters,
    fill_defaults,
)
from .presets import set_method
from .projection import DenseKernelError, ProjectedMatrices, extract, refine
from .restart import RestartManager
from .selector import MethodSelector
from .stats import Statistics
from .utils import current_shift, make_rng, rand_block, target_order


logger = logging.getLogger(__name__)


class Status(enum.IntEnum):
    SUCCESS = 0
    # budget exhausted, the converged pairs found so far are returned
    MAX_ITERATIONS = 1
    MATVEC_FAILURE = 2
    PRECONDITIONER_FAILURE = 3
    MASS_MATVEC_FAILURE = 4
    GLOBAL_SUM_FAILURE = 5
    CONVTEST_FAILURE = 6
    DENSE_KERNEL_FAILURE = 7


_CALLBACK_STATUS = {
    "matvec": Status.MATVEC_FAILURE,
    "preconditioner": Status.PRECONDITIONER_FAILURE,
    "mass_matvec": Status.MASS_MATVEC_FAILURE,
    "global_sum": Status.GLOBAL_SUM_FAILURE,
    "conv_test_fun": Status.CONVTEST_FAILURE,
}


@dataclasses.dataclass
class SolveResult:
    """ Outcome of a solve.

    status is a Status, or the negative code of a ParameterError. values,
    vectors and residual_norms only hold the converged pairs, ordered by
    target.
    """
    status: int
    values: np.ndarray
    vectors: np.ndarray
    residual_norms: np.ndarray
    stats: Statistics
    callback_code: int = 0
    message: str = ""

    @property
    def num_converged(self):
        return len(self.values)

    @property
    def success(self):
        return self.status == Status.SUCCESS


@dataclasses.dataclass(frozen=True)
class IterationInfo:
    """ Snapshot given to the monitor after every outer iteration.
    """
    iteration: int
    basis_size: int
    values: np.ndarray
    block: tuple
    residual_norms: np.ndarray
    flags: np.ndarray
    num_locked: int
    locked_residuals: tuple
    method: object = None


@dataclasses.dataclass
class _Candidates:
    """ Result of the convergence test of the leading Ritz pairs.
    """
    block: list
    X: np.ndarray
    BX: np.ndarray
    R: np.ndarray
    rnorms: np.ndarray
    flags: np.ndarray
    to_lock: list


class Solver:
    """ Block Davidson-type eigensolver for Hermitian operators known only
    through their action on blocks of vectors.

    The outer loop is

    EXPAND -> PROJECT -> EXTRACT -> TEST -> {LOCK, CORRECT} -> ORTHOGONALIZE
    -> RESTART (when the basis is full) -> EXPAND ...

    and every preset method is a parameterization of it.

    Parameters
    ----------
    operator: OperatorDescriptor
    params: SolverParameters
    constraints: ndarray of shape (n_local, j) or None
        vectors the eigenvectors must be B-orthogonal to
    initial_vectors: ndarray of shape (n_local, i) or None
        initial guesses
    proc_id: int
        index of this participant, used to seed distinct random streams
    """
    def __init__(self, operator, params=None, *, constraints=None, initial_vectors=None,
                 proc_id=0):
        self.op = operator
        self.user_params = SolverParameters() if params is None else params
        self.constraints = constraints
        self.initial_vectors = initial_vectors
        self.proc_id = proc_id

        self.params = None
        self.stats = Statistics()
        self.basis_size = 0
        self.flags = np.zeros(0, dtype=bool)
        self.selector = None

    @property
    def basis(self):
        """ The current search basis, B-orthonormal.
        """
        return self.V[:, :self.basis_size]

    @property
    def method(self):
        return None if self.selector is None else self.selector.current

    def _log(self, print_level, level, msg, *args):
        if self.params is not None and self.params.print_level >= print_level:
            logger.log(level, msg, *args)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def solve(self):
        t0 = time.perf_counter()
        self.stats = Statistics()
        self.params = None
        self._t0 = t0
        self._final = None

        try:
            self._setup()
        except ParameterError as e:
            logger.warning("invalid parameters: %s", e)
            return self._result(e.code, message=str(e))

        callback_code = 0
        try:
            status, message = self._iterate()
        except CallbackError as e:
            status, message = _CALLBACK_STATUS.get(e.name, Status.MATVEC_FAILURE), str(e)
            callback_code = e.code
            self._log(1, logging.ERROR, "aborting: %s", e)
        except DenseKernelError as e:
            status, message = Status.DENSE_KERNEL_FAILURE, str(e)
            self._log(1, logging.ERROR, "aborting: %s", e)
        finally:
            self.stats.elapsed_time = time.perf_counter() - t0

        result = self._result(status, callback_code=callback_code, message=message)
        self._log(2, logging.INFO,
                  "%s: %d pairs, %d outer iterations, %d matvecs, %d restarts in %.3fs",
                  Status(status).name, result.num_converged,
                  self.stats.num_outer_iterations, self.stats.num_matvecs,
                  self.stats.num_restarts, self.stats.elapsed_time)
        return result

    def _result(self, status, callback_code=0, message=""):
        op = self.op
        if self._final is None and self.params is not None and self.params.locking:
            self._final = (np.array(self.locked.values),
                           self.locked.vectors.copy(),
                           np.array(self.locked.residuals))

        if self._final is None:
            values = np.zeros(0)
            vectors = np.zeros((op.n_local, 0), dtype=op.dtype)
            rnorms = np.zeros(0)
        else:
            values, vectors, rnorms = self._final
            if len(values) > 0:
                shift = None
                if self.params.target.needs_shift:
                    shift = self.params.target_shifts[0]
                idx = target_order(values, self.params.target, shift)
                values, vectors, rnorms = values[idx], vectors[:, idx], rnorms[idx]

        return SolveResult(int(status), values, vectors, rnorms, self.stats,
                           callback_code, message)

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------
    def _setup(self):
        op, stats = self.op, self.stats
        n_cons = 0 if self.constraints is None else self.constraints.shape[1]
        n_init = 0 if self.initial_vectors is None else self.initial_vectors.shape[1]

        params = fill_defaults(self.user_params, op.n, n_cons)
        check_parameters(params, op.n, op.n_local, n_cons, n_init)
        self.params = params

        self.rng = make_rng(params.seed, self.proc_id)
        max_dim = params.max_basis_size
        generalized = op.is_generalized

        self.V = np.zeros((op.n_local, max_dim), dtype=op.dtype)
        self.W = np.zeros_like(self.V)
        self.BV = np.zeros_like(self.V) if generalized else self.V
        self.basis_size = 0

        with_gram = params.projection in (Projection.HARMONIC, Projection.REFINED)
        self.pm = ProjectedMatrices(max_dim, op.dtype, with_gram=with_gram)

        self.locked = LockedSet(op.n_local, params.num_evals, op.dtype, generalized)
        self.locking = LockingManager(self.locked)
        self.tester = ConvergenceTester(
            params.convergence_test, params.eps, params.a_norm,
            params.correction.rel_tol_base, params.conv_test_fun,
        )
        self.correction = CorrectionSolver(params.correction, params.target, op.n)
        self.restarter = RestartManager(params.restarting, params.min_restart_size,
                                        params.target)
        self.selector = MethodSelector() if params.dynamic_method_switch else None

        self.flags = np.zeros(0, dtype=bool)
        self._prev = None
        self._prev_values = None
        self._lead_residual = None
        self._stalled = False
        self._images_fresh = True

        self.Qc = np.zeros((op.n_local, 0), dtype=op.dtype)
        self.BQc = self.Qc

    def _q_bases(self):
        return [(self.Qc, self.BQc), (self.locked.vectors, self.locked.b_vectors)]

    def _q_block(self):
        Q = np.hstack([self.Qc, self.locked.vectors])
        if Q.shape[1] == 0:
            return None, None
        if not self.op.is_generalized:
            return Q, Q
        return Q, np.hstack([self.BQc, self.locked.b_vectors])

    def _initial_basis(self):
        op, stats, params = self.op, self.stats, self.params
        size = max(params.min_restart_size, params.max_block_size)
        size = min(size, params.max_basis_size)
        user = self.initial_vectors
        n_user = 0 if user is None else user.shape[1]
        mode = params.init_basis_mode

        if mode == InitMode.USER:
            X = user if n_user > 0 else rand_block(op.n_local, 1, op.dtype, self.rng)
            self._append(X)
        elif mode == InitMode.RANDOM:
            if n_user > 0:
                self._append(user)
            missing = size - self.basis_size
            if missing > 0:
                self._append(rand_block(op.n_local, missing, op.dtype, self.rng))
        else:
            v0 = None
            if n_user > 0:
                self._append(user[:, :-1])
                v0 = user[:, -1]
            bases = self._q_bases() + [(self.basis, self.BV[:, :self.basis_size])]
            V, AV, BV = krylov_basis(op, stats, v0, max(size - self.basis_size, 1), bases,
                                     rng=self.rng)
            self._append(V, AV, BV)

        if self.basis_size == 0:
            self._append(rand_block(op.n_local, 1, op.dtype, self.rng))

    def _append(self, X, AX=None, BX=None):
        """ EXPAND: add columns to the basis, orthonormalizing them first
        unless their images are given (already orthonormal).
        """
        op, stats = self.op, self.stats
        if X.shape[1] == 0:
            return 0
        if AX is None:
            bases = self._q_bases() + [(self.basis, self.BV[:, :self.basis_size])]
            X, BX, _ = orthonormalize(op, stats, X, bases, rng=self.rng)
            if X.shape[1] == 0:
                return 0
            AX = op.apply_operator(X, stats)

        m = self.basis_size
        k = min(X.shape[1], self.params.max_basis_size - m)
        self.V[:, m:m+k] = X[:, :k]
        self.W[:, m:m+k] = AX[:, :k]
        if op.is_generalized:
            self.BV[:, m:m+k] = BX[:, :k]
        self.pm.extend(op, stats, self.V, self.W, self.BV, m + k)
        self.basis_size = m + k
        return k

    # ------------------------------------------------------------------
    # Basis transformations
    # ------------------------------------------------------------------
    def _rotate(self, C):
        """ Replace the basis V by V C, C orthonormal of shape (m, k).
        """
        m, k = self.basis_size, C.shape[1]
        arrays = [self.V, self.W] + ([self.BV] if self.op.is_generalized else [])
        for arr in arrays:
            arr[:, :k] = arr[:, :m] @ C
        self.pm.rotate(C)
        self.basis_size = k
        self._images_fresh = False
        self.stats.estimate_residual_error += (
            np.sqrt(m) * MACHINE_EPS * self.tester.norm_estimate(self.stats)
        )

    def _reset_images(self):
        """ Recompute W = A V (and B V) from scratch, dropping the error
        accumulated by the rotations.
        """
        op, stats, m = self.op, self.stats, self.basis_size
        self._log(2, logging.INFO, "recomputing the images of the %d basis vectors", m)
        self.W[:, :m] = op.apply_operator(self.V[:, :m], stats)
        if op.is_generalized:
            self.BV[:, :m] = op.apply_mass(self.V[:, :m], stats)
        self.pm.size = 0
        self.pm.extend(op, stats, self.V, self.W, self.BV, m)
        stats.estimate_residual_error = 0.0
        self._images_fresh = True

    def _restart(self, ritz, candidates, k_new):
        params = self.params
        required = max(candidates.block) + 1 if candidates.block else 0
        if not params.locking:
            required = max(required, min(params.num_evals, ritz.size))
        required = min(required, params.max_basis_size - k_new)
        kept = min(max(params.min_restart_size, required), ritz.size)
        room = params.max_basis_size - k_new - kept

        C = self.restarter.restart_coefficients(
            ritz, required, self._prev, self._lead_residual, room,
        )
        self._rotate(C)
        self.stats.num_restarts += 1
        self._log(3, logging.DEBUG, "restart %d: basis size %d",
                  self.stats.num_restarts, self.basis_size)
        return C

    def _switch_method(self, method):
        params = self.params
        new = set_method(method, params)
        params.correction = new.correction
        retain = new.restarting.max_prev_retain
        retain = min(retain, params.max_basis_size - params.max_block_size
                     - params.min_restart_size)
        params.restarting.max_prev_retain = max(retain, 0)
        self.correction = CorrectionSolver(params.correction, params.target, self.op.n)
        self.restarter = RestartManager(params.restarting, params.min_restart_size,
                                        params.target)
        self._log(2, logging.INFO, "switched to method %s", method.name)

    # ------------------------------------------------------------------
    # Convergence testing and candidate selection
    # ------------------------------------------------------------------
    def _candidates(self, ritz, tol):
        op, stats, params = self.op, self.stats, self.params
        m = ritz.size
        num_wanted = params.num_evals - self.locked.count
        max_block = min(params.max_block_size, m)
        gap = gaps(ritz.values, self.locked.values, cluster_tol=tol)

        flags = np.zeros(m, dtype=bool)
        block, to_lock = [], []
        Xs, BXs, Rs, rns = [], [], [], []

        i = 0
        while i < m and len(block) < max_block:
            chunk = list(range(i, min(m, i + max_block - len(block))))
            i += len(chunk)

            if params.projection == Projection.REFINED:
                refine(self.pm, ritz, chunk, ritz.values[chunk])

            C = ritz.coefficients[:, chunk]
            C = C / np.linalg.norm(C, axis=0)
            values = ritz.values[chunk]
            X = self.basis @ C
            BX = self.BV[:, :m] @ C if op.is_generalized else X
            R = self.W[:, :m] @ C - BX * values
            rnorms = op.column_norms(R, stats)

            for j, idx in enumerate(chunk):
                previous = None
                if self._prev_values is not None and idx < len(self._prev_values):
                    previous = self._prev_values[idx]
                converged = self.tester.is_converged(
                    values[j], X[:, j], rnorms[j], stats,
                    num_locked=self.locked.count, gap=gap[idx], previous_value=previous,
                )
                if converged:
                    flags[idx] = True
                    if params.locking and idx < num_wanted:
                        to_lock.append(idx)
                elif len(block) < max_block:
                    block.append(idx)
                    Xs.append(X[:, j])
                    BXs.append(BX[:, j])
                    Rs.append(R[:, j])
                    rns.append(rnorms[j])

        def stack(cols):
            if len(cols) == 0:
                return np.zeros((op.n_local, 0), dtype=op.dtype)
            return np.column_stack(cols)

        return _Candidates(block, stack(Xs), stack(BXs), stack(Rs), np.array(rns),
                           flags, to_lock)

    def _accept(self, value, x, rnorm):
        return self.tester.accepts_residual(value, x, rnorm, self.stats, self.locked.count)

    def _verify_soft_locked(self, ritz):
        """ Check the residuals of the wanted pairs with a fresh matvec.
        """
        op, stats = self.op, self.stats
        k = self.params.num_evals
        C = ritz.coefficients[:, :k]
        C = C / np.linalg.norm(C, axis=0)
        X = self.basis @ C
        BX = self.BV[:, :self.basis_size] @ C if op.is_generalized else X
        R = op.apply_operator(X, stats) - BX * ritz.values[:k]
        rnorms = op.column_norms(R, stats)
        if all(self._accept(ritz.values[j], X[:, j], rnorms[j]) for j in range(k)):
            self._final = (ritz.values[:k].copy(), X.copy(), rnorms)
            return True
        return False

    def _keep_partial(self, ritz, candidates):
        """ Remember the converged wanted pairs in case the solve stops.
        """
        if self.params.locking:
            return
        k = min(self.params.num_evals, ritz.size)
        idx = [i for i in range(k) if candidates.flags[i]]
        if not idx:
            self._final = None
            return
        C = ritz.coefficients[:, idx]
        C = C / np.linalg.norm(C, axis=0)
        X = self.basis @ C
        BX = self.BV[:, :self.basis_size] @ C if self.op.is_generalized else X
        R = self.W[:, :self.basis_size] @ C - BX * ritz.values[idx]
        self._final = (ritz.values[idx].copy(), X, self.op.column_norms(R, self.stats))

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------
    def _budget_exhausted(self):
        params, stats = self.params, self.stats
        if params.max_outer_iterations is not None and \
                stats.num_outer_iterations >= params.max_outer_iterations:
            return True
        if params.max_matvecs is not None and stats.num_matvecs >= params.max_matvecs:
            return True
        return False

    def _iterate(self):
        op, stats, params = self.op, self.stats, self.params

        if self.constraints is not None and self.constraints.shape[1] > 0:
            self.Qc, self.BQc, _ = orthonormalize(
                op, stats, self.constraints, [], max_random=0,
            )
        self._initial_basis()
        if self.selector is not None:
            self.selector.start(stats, 0, None)

        while True:
            stats.elapsed_time = time.perf_counter() - self._t0
            if self.basis_size == 0:
                self._append(rand_block(op.n_local, 1, op.dtype, self.rng))

            # EXTRACT
            shift = current_shift(params.target, params.target_shifts, self.locked.count)
            ritz = extract(self.pm, params.projection, params.target, shift,
                           op.is_generalized)
            stats.update_estimates(ritz.values)
            tol = self.tester.tolerance(stats, self.locked.count)

            # TEST_CONVERGENCE
            candidates = self._candidates(ritz, tol)
            self.flags = candidates.flags
            self._prev_values = ritz.values.copy()
            if candidates.block:
                self._lead_residual = float(candidates.rnorms[0])

            # LOCK
            if candidates.to_lock:
                locked, failed = self.locking.lock(
                    op, stats, self.basis, self.BV[:, :self.basis_size], ritz,
                    candidates.to_lock, tol, accept=self._accept,
                )
                if locked:
                    self._log(2, logging.INFO, "locked %d pairs, %d/%d",
                              len(locked), self.locked.count, params.num_evals)
                    if self.locked.count >= params.num_evals:
                        return Status.SUCCESS, "converged"
                    self._rotate(complement_coefficients(ritz, locked))
                    self.correction.reset()
                    self._prev = None
                    self._prev_values = None
                    if failed and not self._images_fresh:
                        self._reset_images()
                    continue
                if not self._images_fresh:
                    self._reset_images()
                    continue
                # residuals of fresh images disagree with the true ones only
                # by rounding: go on correcting the other pairs

            elif not params.locking and ritz.size >= params.num_evals \
                    and np.all(candidates.flags[:params.num_evals]):
                if self._verify_soft_locked(ritz):
                    return Status.SUCCESS, "converged"
                if not self._images_fresh:
                    self._reset_images()
                    continue

            if self._budget_exhausted():
                self._log(1, logging.WARNING, "budget exhausted after %d iterations, "
                          "%d matvecs", stats.num_outer_iterations, stats.num_matvecs)
                self._keep_partial(ritz, candidates)
                return Status.MAX_ITERATIONS, "budget exhausted"

            # CORRECT
            if candidates.block:
                Q, BQ = self._q_block()
                T = self.correction.solve(
                    op, stats, ritz.values[candidates.block], candidates.X,
                    candidates.BX, candidates.R, candidates.rnorms, Q, BQ,
                    target_shift=shift, locked_values=self.locked.values,
                    converged_values=ritz.values[candidates.flags], tol=tol,
                    indices=candidates.block, exhausted=self._budget_exhausted,
                )
            else:
                # everything in the basis has converged but not the wanted
                # pairs: look somewhere else
                T = rand_block(op.n_local, 1, op.dtype, self.rng)

            # ORTHOGONALIZE
            bases = self._q_bases() + [(self.basis, self.BV[:, :self.basis_size])]
            T, BT, n_random = orthonormalize(op, stats, T, bases, rng=self.rng)
            if n_random:
                self._log(2, logging.INFO, "%d directions replaced by random vectors",
                          n_random)
            if T.shape[1] == 0:
                if self._stalled:
                    self._keep_partial(ritz, candidates)
                    return Status.MAX_ITERATIONS, "search space exhausted"
                self._stalled = True
                self._reset_images()
                continue
            self._stalled = False

            # RESTART
            k_new = T.shape[1]
            prev_sel = self._prev_selection(candidates)
            current = ritz.basis_coefficients[:, prev_sel]
            if self.basis_size + k_new > params.max_basis_size:
                C = self._restart(ritz, candidates, k_new)
                current = C.conj().T @ current
                if self.selector is not None:
                    new = self.selector.at_restart(
                        stats, self.locked.count + int(candidates.flags.sum()),
                        self._lead_residual, tol,
                    )
                    if new is not None:
                        self._switch_method(new)
            self._prev = current

            # EXPAND
            AT = op.apply_operator(T, stats)
            self._append(T, AT, BT)
            stats.num_outer_iterations += 1
            self._monitor(ritz, candidates)

    def _prev_selection(self, candidates):
        count = max(self.params.restarting.max_prev_retain + 1, 1)
        sel = list(candidates.block)
        m = len(candidates.flags)
        for i in range(m):
            if len(sel) >= count:
                break
            if i not in sel and not candidates.flags[i]:
                sel.append(i)
        return sel[:count]

    def _monitor(self, ritz, candidates):
        params = self.params
        info = IterationInfo(
            iteration=self.stats.num_outer_iterations,
            basis_size=self.basis_size,
            values=ritz.values.copy(),
            block=tuple(candidates.block),
            residual_norms=candidates.rnorms.copy(),
            flags=candidates.flags.copy(),
            num_locked=self.locked.count,
            locked_residuals=tuple(self.locked.residuals),
            method=self.method,
        )
        if params.print_level >= 3:
            logger.debug("iteration %d: basis %d, locked %d, residuals %s",
                         info.iteration, info.basis_size, info.num_locked,
                         np.array2string(info.residual_norms, precision=3))
        if params.monitor is not None:
            params.monitor(info)


def solve(matvec, n, params=None, *, n_local=None, preconditioner=None,
          mass_matvec=None, global_sum=None, constraints=None, initial_vectors=None,
          dtype=np.float64, proc_id=0):
    """ Find params.num_evals eigenpairs of the Hermitian operator given by
    matvec.

    Returns
    -------
    result: SolveResult
    """
    op = OperatorDescriptor(
        n, matvec, n_local=n_local, preconditioner=preconditioner,
        mass_matvec=mass_matvec, global_sum=global_sum, dtype=dtype,
    )
    solver = Solver(op, params, constraints=constraints,
                    initial_vectors=initial_vectors, proc_id=proc_id)
    return solver.solve()


def solve_real(matvec, n, params=None, **kwargs):
    """ solve() for real symmetric problems.
    """
    return solve(matvec, n, params, dtype=np.float64, **kwargs)


def solve_complex(matvec, n, params=None, **kwargs):
    """ solve() for complex Hermitian problems.
    """
    return solve(matvec, n, params, dtype=np.complex128, **kwargs)
