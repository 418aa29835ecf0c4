import logging

import numpy as np

from .stats import timed
from .utils import rand_block


logger = logging.getLogger(__name__)

M_SQRT1_2 = np.sqrt(0.5)

# A column whose norm drops below RANK_TOL times its norm before
# orthogonalization is considered linearly dependent on the basis
RANK_TOL = 1e-10


def dgks_mgs(w: np.ndarray, C: np.ndarray, tol: float=1e-8, eta=M_SQRT1_2):
    """ Orthonormalize w against the orthonormal columns of C using Modified
    Gram-Schmidt, with DGKS-controlled double orthonormalization.

    Only used for small, non distributed coefficient vectors (restart and
    locking work in the coordinates of the basis).

    Parameters
    ----------
    w: ndarray of shape (m,)
        The array to orthonormalize (modified in place)
    C: ndarray of shape (m, j)
        The orthonormal columns to orthonormalize against
    eta: float
        Double reorthonormalization will be done if norm(w after ortho) /
        norm(w before ortho) < eta

    Returns
    -------
    beta: float
        the norm of w after orthogonalization, before normalization
    breakdown: bool
        True if w could not be orthonormalized against C, i.e. when w is in
        the span of C
    """
    before = np.linalg.norm(w)

    for _ in range(2):
        for i in range(C.shape[1]):
            w -= np.vdot(C[:, i], w) * C[:, i]
        after = np.linalg.norm(w)
        if after >= eta * before:
            break
        before = after

    beta = np.linalg.norm(w)
    breakdown = beta < tol
    if not breakdown:
        w /= beta
    return beta, breakdown


def dgks_gs(op, stats, w, Y, Bw=None, BY=None, eta=M_SQRT1_2, max_passes=3):
    """ B-orthogonalization of w against the B-orthonormal columns of Y using
    classical Gram-Schmidt, with DGKS criterion to trigger another pass.

    Every pass needs a single global reduction: the projection coefficients
    and the norm of w before the pass are reduced together, and the norm
    after the pass is obtained from Pythagoras.

    Parameters
    ----------
    w: ndarray of shape (n_local,)
        The array to orthogonalize (modified in place)
    Y: ndarray of shape (n_local, j)
        The basis to orthogonalize against
    Bw, BY:
        B w and B Y for generalized problems (Bw modified in place), None
        for standard problems
    eta: float
        Another pass is done if norm(w after) / norm(w before) < eta

    Returns
    -------
    beta: float
        the final B-norm of w
    beta_0: float
        the B-norm of w before orthogonalization
    """
    generalized = Bw is not None
    if not generalized:
        Bw, BY = w, Y
    j = Y.shape[1]

    beta_0 = None
    for _ in range(max_passes):
        local = np.empty(j + 1, dtype=np.result_type(w, Y))
        local[:j] = BY.conj().T @ w
        local[j] = np.vdot(w, Bw)
        reduced = op.global_sum(local, stats)
        stats.num_ortho_inner_prods += j + 1

        h = reduced[:j]
        before2 = max(float(np.real(reduced[j])), 0.0)
        if beta_0 is None:
            beta_0 = np.sqrt(before2)
        if j == 0:
            return np.sqrt(before2), beta_0

        w -= Y @ h
        if generalized:
            Bw -= BY @ h

        after2 = before2 - float(np.real(np.vdot(h, h)))
        if after2 > eta**2 * before2:
            return np.sqrt(after2), beta_0

    # After the last pass the Pythagoras estimate is not reliable anymore
    beta = op.column_norms(w[:, None], stats, Bw[:, None])[0]
    return beta, beta_0


def _stack(blocks, n_local, dtype):
    blocks = [b for b in blocks if b is not None and b.shape[1] > 0]
    if len(blocks) == 0:
        return np.zeros((n_local, 0), dtype=dtype)
    return np.hstack(blocks)


def orthonormalize(op, stats, X, bases, *, rng=None, max_random=3, rank_tol=RANK_TOL):
    """ B-orthonormalize the columns of X against the B-orthonormal blocks in
    bases and among themselves.

    A column found linearly dependent is replaced by a random vector, so
    that the basis stays full rank. If no random vector can be found either
    (the whole space is spanned), the column is dropped.

    Parameters
    ----------
    X: ndarray of shape (n_local, k)
        The columns to orthonormalize, not modified
    bases: list of (Y, BY) pairs
        B-orthonormal blocks, in the order they are orthogonalized against
        (constraints, locked vectors, basis). BY is ignored for standard
        problems

    Returns
    -------
    Q: ndarray of shape (n_local, k')
    BQ: ndarray of shape (n_local, k')
        B Q, computed with a fresh application of B for generalized problems
    n_random: int
        number of columns replaced by random vectors
    """
    generalized = op.is_generalized
    n_local, k = X.shape
    dtype = np.result_type(X, op.dtype)

    with timed(stats, "time_ortho"):
        Y = _stack([b[0] for b in bases], n_local, dtype)
        BY = _stack([b[1] for b in bases], n_local, dtype) if generalized else None
        BX = op.apply_mass(X, stats) if generalized else None

        accepted = []
        accepted_b = []
        n_random = 0
        for j in range(k):
            w = X[:, j].astype(dtype, copy=True)
            Bw = BX[:, j].astype(dtype, copy=True) if generalized else None

            for attempt in range(max_random + 1):
                Yj = _stack([Y] + [q[:, None] for q in accepted], n_local, dtype)
                BYj = None
                if generalized:
                    BYj = _stack([BY] + [q[:, None] for q in accepted_b], n_local, dtype)

                beta, beta_0 = dgks_gs(op, stats, w, Yj, Bw, BYj)
                if beta_0 > 0 and beta > rank_tol * beta_0:
                    break

                if attempt < max_random:
                    w = rand_block(n_local, 1, dtype, rng)[:, 0]
                    if generalized:
                        Bw = op.apply_mass(w[:, None], stats)[:, 0]
            else:
                logger.debug("dropping column %d: no independent direction left", j)
                continue

            if attempt > 0:
                n_random += 1
            accepted.append(w / beta)
            if generalized:
                accepted_b.append(Bw / beta)

        Q = _stack([q[:, None] for q in accepted], n_local, dtype)
        if generalized:
            # Bw was only updated through linear combinations
            BQ = op.apply_mass(Q, stats) if Q.shape[1] > 0 else Q.copy()
        else:
            BQ = Q

    return Q, BQ, n_random
