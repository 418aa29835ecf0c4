import logging

import numpy as np
import scipy.linalg

from .inner_solve import DynamicStopping, InnerSolveBreakdown, qmrs
from .params import ConvergenceTest, Target


logger = logging.getLogger(__name__)

# relative distance below which K r adds nothing to the Ritz vector x
COLLINEAR_TOL = 1e-8


def _cat(blocks):
    blocks = [b for b in blocks if b is not None and b.shape[1] > 0]
    if len(blocks) == 0:
        return None
    return np.hstack(blocks)


class _Projector:
    """ I - Y (BY)^H: the B-orthogonal projector onto the complement of the
    B-orthonormal columns of Y.
    """
    def __init__(self, op, stats, Y, BY):
        self.op, self.stats = op, stats
        self.Y, self.BY = Y, BY

    def apply(self, v):
        if self.Y is None:
            return v
        return v - self.Y @ self.op.inner(self.BY, v, self.stats)

    def apply_transpose(self, u):
        # I - BY Y^H
        if self.Y is None:
            return u
        return u - self.BY @ self.op.inner(self.Y, u, self.stats)


class CorrectionSolver:
    """ Compute the new search directions for a block of Ritz pairs.

    Without inner iterations the direction is the (preconditioned) residual
    K r, or, when a skew projector is active, the Olsen correction

        t = K r - K BY ((BY)^H K BY)^-1 (BY)^H K r

    which is B-orthogonal to Y (the Ritz vector and/or the locked vectors).
    With inner iterations the Jacobi-Davidson correction equation

        P_L (A - sigma B) P_R t = -P_L r

    is solved approximately with symmetric QMR, preconditioned by the skew
    projected preconditioner. The six projector toggles select whether Y
    includes the locked and constraint vectors Q and/or the Ritz vector x
    on the left, on the right and in the skew projection.
    """
    def __init__(self, params, target, n):
        self.params = params
        self.target = target
        self.n = n
        self._touches = {}

    def reset(self):
        self._touches.clear()

    def shifts(self, values, rnorms, target_shift, locked_values, tol, converged_values=()):
        """ The shifts of the correction equations, one per Ritz pair.

        Pairs far from an interior target aim at the target itself, unless
        an eigenvalue already found (locked or converged) lies on it: the
        correction equation would then be singular, and the Ritz value is
        used instead.
        """
        sigmas = np.array(values, dtype=np.float64)
        found = np.concatenate([np.asarray(locked_values, dtype=np.float64).ravel(),
                                np.asarray(converged_values, dtype=np.float64).ravel()])
        for i, (theta, rnorm) in enumerate(zip(values, rnorms)):
            interior = self.target in (Target.CLOSEST_GEQ, Target.CLOSEST_LEQ,
                                       Target.CLOSEST_ABS)
            if interior and target_shift is not None and abs(theta - target_shift) > rnorm:
                if not np.any(np.abs(found - target_shift) < max(rnorm, tol)):
                    sigmas[i] = target_shift
                continue

            if not self.params.robust_shifts:
                continue

            step = max(rnorm, tol)
            if self.target == Target.SMALLEST:
                sigmas[i] = theta - step
            elif self.target == Target.LARGEST:
                sigmas[i] = theta + step
            for locked in locked_values:
                if abs(sigmas[i] - locked) < step:
                    sigmas[i] += step if theta >= locked else -step
        return sigmas

    def solve(self, op, stats, values, X, BX, R, rnorms, Q, BQ, *,
              target_shift=None, locked_values=(), converged_values=(), tol=0.0,
              indices=None, exhausted=None):
        """ Compute one correction per column of the block.

        Parameters
        ----------
        values: ndarray of shape (k,)
            Ritz values of the block
        X, BX: ndarray of shape (n_local, k)
            Ritz vectors (B-normalized) and their B images
        R: ndarray of shape (n_local, k)
            residuals A X - B X diag(values)
        rnorms: ndarray of shape (k,)
        Q, BQ: ndarray of shape (n_local, j) or None
            locked and constraint vectors, B-orthonormal
        converged_values: sequence of float
            Ritz values flagged as converged but not locked
        indices: sequence of int
            position of each pair in the target ordering, to keep track of
            how many times a pair has been corrected

        Returns
        -------
        T: ndarray of shape (n_local, k)
        """
        p = self.params
        k = X.shape[1]
        indices = range(k) if indices is None else indices
        sigmas = self.shifts(values, rnorms, target_shift, locked_values, tol,
                             converged_values)

        if not p.precondition and p.max_inner_iterations == 0 and not p.projectors.any_skew:
            return R.copy()

        KR = None
        if p.precondition:
            KR = op.apply_preconditioner(R, sigmas, stats)
        else:
            KR = R.copy()

        T = np.empty_like(KR)
        for j in range(k):
            touch = self._touches.get(indices[j], 0)
            self._touches[indices[j]] = touch + 1

            x, Bx = X[:, j:j+1], BX[:, j:j+1]
            try:
                if p.max_inner_iterations == 0:
                    T[:, j] = self._olsen(op, stats, KR[:, j], sigmas[j], x, Bx, Q, BQ)
                else:
                    T[:, j] = self._jacobi_davidson(
                        op, stats, values[j], sigmas[j], x, Bx, R[:, j], rnorms[j],
                        Q, BQ, tol, touch, exhausted,
                    )
            except (InnerSolveBreakdown, scipy.linalg.LinAlgError) as e:
                logger.debug("correction of pair %d falls back to the residual: %s",
                             indices[j], e)
                T[:, j] = R[:, j]
        return T

    def _selected(self, use_q, use_x, x, Bx, Q, BQ):
        Y = _cat([Q if use_q else None, x if use_x else None])
        BY = _cat([BQ if use_q else None, Bx if use_x else None])
        return Y, BY

    def _skew(self, op, stats, sigma, BY):
        """ Return (BY, KBY, M = (BY)^H K BY) for the skew projection.
        """
        if self.params.precondition:
            KBY = op.apply_preconditioner(BY, np.full(BY.shape[1], sigma), stats)
        else:
            KBY = BY.copy()
        M = op.inner(BY, KBY, stats)
        return BY, KBY, M

    def _skew_preconditioner(self, op, stats, sigma, x, Bx, Q, BQ, with_x=False):
        """ Return (BY, KBY, M) for the skew projection, or None if inactive.
        """
        proj = self.params.projectors
        _, BY = self._selected(proj.skew_q, proj.skew_x or with_x, x, Bx, Q, BQ)
        if BY is None:
            return None
        return self._skew(op, stats, sigma, BY)

    def _collinear(self, op, stats, v, x, Bx):
        # v = x c + d with d B-orthogonal to x
        c = op.inner(Bx, v[:, None], stats)
        d = v[:, None] - x @ c
        d_norm, v_norm = op.column_norms(np.hstack([d, v[:, None]]), stats)
        return d_norm <= COLLINEAR_TOL * v_norm

    def _olsen(self, op, stats, Kr, sigma, x, Bx, Q, BQ):
        # a (nearly) exact shifted inverse maps r back onto x, which the
        # basis already holds: project x out skew-wise, giving the inverse
        # iteration direction
        with_x = (self.params.precondition and not self.params.projectors.skew_x
                  and self._collinear(op, stats, Kr, x, Bx))
        skew = self._skew_preconditioner(op, stats, sigma, x, Bx, Q, BQ, with_x)
        if skew is None:
            return Kr
        BY, KBY, M = skew
        coeffs = scipy.linalg.solve(M, op.inner(BY, Kr[:, None], stats))
        return Kr - (KBY @ coeffs)[:, 0]

    def _jacobi_davidson(self, op, stats, theta, sigma, x, Bx, r, rnorm, Q, BQ,
                         tol, touch, exhausted):
        p = self.params
        proj = p.projectors

        left = _Projector(op, stats, *self._selected(proj.left_q, proj.left_x, x, Bx, Q, BQ))
        right = _Projector(op, stats, *self._selected(proj.right_q, proj.right_x, x, Bx, Q, BQ))
        skew = self._skew_preconditioner(op, stats, sigma, x, Bx, Q, BQ)

        def apply_matrix(v):
            v = right.apply(v[:, None])
            u = op.apply_operator(v, stats)
            u -= sigma * (op.apply_mass(v, stats) if op.is_generalized else v)
            return left.apply_transpose(u)[:, 0]

        def apply_preconditioner(v):
            if p.precondition:
                z = op.apply_preconditioner(v[:, None], [sigma], stats)
            else:
                z = v[:, None].copy()
            if skew is not None:
                BY, KBY, M = skew
                z = z - KBY @ scipy.linalg.solve(M, op.inner(BY, z, stats))
            elif proj.any_right:
                z = right.apply(z)
            return z[:, 0]

        if p.conv_test == ConvergenceTest.DECREASING_LTOLERANCE:
            l_tolerance = max(tol, rnorm * p.rel_tol_base ** (-touch))
        else:
            l_tolerance = tol

        dynamic = None
        if p.conv_test == ConvergenceTest.ADAPTIVE:
            dynamic = DynamicStopping(theta, sigma, tol)
        elif p.conv_test == ConvergenceTest.ADAPTIVE_ETOLERANCE:
            dynamic = DynamicStopping(theta, sigma, max(tol, 0.1 * rnorm))

        if p.max_inner_iterations < 0:
            max_iterations = self.n
        else:
            max_iterations = p.max_inner_iterations

        b = -left.apply_transpose(r[:, None])[:, 0]
        t, info = qmrs(
            op, stats, apply_matrix, apply_preconditioner, b,
            max_iterations=max_iterations, l_tolerance=l_tolerance,
            dynamic=dynamic, exhausted=exhausted,
        )
        if info.iterations == 0:
            raise InnerSolveBreakdown(f"no inner iteration done ({info.reason})")
        return t
