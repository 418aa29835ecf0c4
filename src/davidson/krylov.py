import numpy as np

from .ortho import orthonormalize
from .utils import rand_block


def krylov_basis(op, stats, v0, size, bases, *, rng=None):
    """Build a B-orthonormal basis of the Krylov space span(v0, A v0, ...,
    A^(size-1) v0), B-orthogonal to the blocks in bases.

    Parameters
    ----------
    op : OperatorDescriptor
    stats : Statistics
    v0 : ndarray of shape (n_local,) or None
        start vector, random if None
    size : int
        dimension of the Krylov space
    bases : list of (Y, BY) pairs
        B-orthonormal blocks (constraints, locked vectors, existing basis)
        the Krylov basis must be orthogonal to

    Returns
    -------
    V : ndarray of shape (n_local, m)
        the Krylov basis, m <= size. m is lower than size when an invariant
        subspace is found and no random vector can extend it
    AV : ndarray of shape (n_local, m)
    BV : ndarray of shape (n_local, m)
        B V, V itself for standard problems
    """
    if v0 is None:
        v0 = rand_block(op.n_local, 1, op.dtype, rng)[:, 0]

    V = np.zeros((op.n_local, size), dtype=op.dtype)
    AV = np.zeros_like(V)
    BV = np.zeros_like(V) if op.is_generalized else V

    q, Bq, _ = orthonormalize(op, stats, v0[:, None], bases, rng=rng)
    m = 0
    while q.shape[1] == 1:
        V[:, m] = q[:, 0]
        if op.is_generalized:
            BV[:, m] = Bq[:, 0]
        # A V_j is also the next direction of the Krylov space
        AV[:, m:m+1] = op.apply_operator(q, stats)
        m += 1
        if m == size:
            break

        known = bases + [(V[:, :m], BV[:, :m])]
        q, Bq, _ = orthonormalize(op, stats, AV[:, m-1:m], known, rng=rng)

    return V[:, :m], AV[:, :m], BV[:, :m]
