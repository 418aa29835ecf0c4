import logging

import numpy as np

from .restart import orthonormal_columns


logger = logging.getLogger(__name__)


class LockedSet:
    """ The converged eigenpairs removed from the search space. Entries are
    written once and never modified.
    """
    def __init__(self, n_local, capacity, dtype, generalized=False):
        self._vectors = np.zeros((n_local, capacity), dtype=dtype)
        self._b_vectors = np.zeros_like(self._vectors) if generalized else self._vectors
        self.values = []
        self.residuals = []

    @property
    def count(self):
        return len(self.values)

    @property
    def vectors(self):
        return self._vectors[:, :self.count]

    @property
    def b_vectors(self):
        return self._b_vectors[:, :self.count]

    def append(self, x, Bx, value, rnorm):
        i = self.count
        if i == self._vectors.shape[1]:
            raise IndexError("locked set is full")
        self._vectors[:, i] = x
        if self._b_vectors is not self._vectors:
            self._b_vectors[:, i] = Bx
        self.values.append(float(value))
        self.residuals.append(float(rnorm))


def complement_coefficients(ritz, indices):
    """ Orthonormal coefficients spanning the part of the basis orthogonal
    to the Ritz vectors at the given indices, ordered as the remaining Ritz
    vectors.
    """
    m = ritz.size
    locked = orthonormal_columns(ritz.coefficients[:, list(indices)])
    others = [i for i in range(m) if i not in set(indices)]
    C = orthonormal_columns(ritz.basis_coefficients[:, others], against=locked,
                            max_columns=m - locked.shape[1])
    if C.shape[1] < m - locked.shape[1]:
        # the remaining coefficients do not span the complement (refined or
        # harmonic vectors): complete with a QR based basis
        full = np.eye(m, dtype=ritz.coefficients.dtype)
        extra = orthonormal_columns(full, against=np.hstack([locked, C]),
                                    max_columns=m - locked.shape[1] - C.shape[1])
        C = np.hstack([C, extra])
    return C


class LockingManager:
    """ Move converged pairs to the locked set.

    Before locking, the residual of a pair is recomputed with a fresh
    matvec: the residuals computed from W = A V drift as the basis is
    rotated by restarts. A pair failing this check is not locked and the
    caller must recompute W.
    """
    def __init__(self, locked_set):
        self.locked_set = locked_set

    def lock(self, op, stats, V, BV, ritz, indices, tol, accept=None):
        """ Try to lock the Ritz pairs at the given indices.

        accept(value, x, rnorm) replaces the test rnorm <= tol when given.

        Returns
        -------
        locked: list of int
            the indices actually locked
        failed: list of int
            the indices whose true residual is above tol
        """
        C = ritz.coefficients[:, list(indices)]
        C = C / np.linalg.norm(C, axis=0)
        X = V @ C
        BX = BV @ C if op.is_generalized else X
        AX = op.apply_operator(X, stats)
        values = ritz.values[list(indices)]
        R = AX - BX * values
        rnorms = op.column_norms(R, stats)

        locked, failed = [], []
        for j, i in enumerate(indices):
            ok = rnorms[j] <= tol if accept is None else accept(values[j], X[:, j], rnorms[j])
            if ok:
                self.locked_set.append(X[:, j], BX[:, j], values[j], rnorms[j])
                stats.max_conv_tol = max(stats.max_conv_tol, float(rnorms[j]))
                locked.append(i)
                logger.debug("locked eigenvalue %.15g with residual %.3e", values[j], rnorms[j])
            else:
                failed.append(i)
        stats.num_locked = self.locked_set.count
        return locked, failed
