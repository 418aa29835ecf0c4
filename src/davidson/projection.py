import dataclasses
import logging

import numpy as np
import scipy.linalg

from .params import Projection
from .utils import target_order


logger = logging.getLogger(__name__)


class DenseKernelError(RuntimeError):
    """ The dense eigensolver failed on the projected matrix.
    """


def _hermitian(M):
    return 0.5 * (M + M.conj().T)


class ProjectedMatrices:
    """ The small dense matrices derived from the basis V, its image W = A V
    and BV = B V.

    H = V^H A V is always kept. The harmonic and refined projections also
    need the Gram matrices of the images:

    WW = W^H W, WB = W^H BV, BB = BV^H BV

    so that ||(A - s B) V c||^2 = c^H (WW - s (WB + WB^H) + s^2 BB) c can be
    computed for any shift s without touching the long vectors.
    """
    def __init__(self, max_dim, dtype, with_gram=False):
        self.max_dim = max_dim
        self.with_gram = with_gram
        self.size = 0

        self._H = np.zeros((max_dim, max_dim), dtype=dtype)
        if with_gram:
            self._WW = np.zeros_like(self._H)
            self._WB = np.zeros_like(self._H)
            self._BB = np.zeros_like(self._H)

    @property
    def H(self):
        return self._H[:self.size, :self.size]

    @property
    def WW(self):
        return self._WW[:self.size, :self.size]

    @property
    def WB(self):
        return self._WB[:self.size, :self.size]

    @property
    def BB(self):
        return self._BB[:self.size, :self.size]

    def extend(self, op, stats, V, W, BV, new_size):
        """ Add the rows and columns of the basis vectors [size, new_size).

        All the new inner products go through a single global reduction.
        """
        s, e = self.size, new_size
        if e <= s:
            self.size = e
            return
        k = e - s

        blocks = [V[:, :e].conj().T @ W[:, s:e]]
        if self.with_gram:
            blocks.append(W[:, :e].conj().T @ W[:, s:e])
            blocks.append(W[:, :e].conj().T @ BV[:, s:e])
            blocks.append(BV[:, :s].conj().T @ W[:, s:e])
            blocks.append(BV[:, :e].conj().T @ BV[:, s:e])

        flat = np.concatenate([b.ravel() for b in blocks])
        flat = op.global_sum(flat, stats)

        offset = 0
        reduced = []
        for b in blocks:
            reduced.append(flat[offset:offset + b.size].reshape(b.shape))
            offset += b.size

        _extend_hermitian(self._H, reduced[0], s, e)
        if self.with_gram:
            _extend_hermitian(self._WW, reduced[1], s, e)
            self._WB[:e, s:e] = reduced[2]
            self._WB[s:e, :s] = reduced[3].conj().T
            _extend_hermitian(self._BB, reduced[4], s, e)

        self.size = e

    def rotate(self, C):
        """ Update the matrices for the basis V C, C of shape (size, k).
        """
        k = C.shape[1]
        mats = [self._H] + ([self._WW, self._WB, self._BB] if self.with_gram else [])
        for M in mats:
            rotated = C.conj().T @ M[:self.size, :self.size] @ C
            M[:k, :k] = rotated
        self._H[:k, :k] = _hermitian(self._H[:k, :k])
        self.size = k

    def residual_gram(self, shift):
        """ Return G(s) such that c^H G(s) c = ||(A - s B) V c||^2.
        """
        WB = self.WB
        return _hermitian(self.WW - shift * (WB + WB.conj().T) + shift**2 * self.BB)


def _extend_hermitian(M, block, s, e):
    # block is M[:e, s:e]
    M[:e, s:e] = block
    M[s:e, :s] = block[:s].conj().T
    M[s:e, s:e] = _hermitian(block[s:e])


@dataclasses.dataclass
class RitzDecomposition:
    """ Approximate eigenpairs extracted from the basis, ordered from the
    most to the least wanted.

    Attributes
    ----------
    values: ndarray of shape (m,)
        eigenvalue estimates
    coefficients: ndarray of shape (m, m)
        unit norm coefficients of the approximate eigenvectors V c
    basis_coefficients: ndarray of shape (m, m)
        coefficients of the directions worth keeping at restart; the Ritz
        vectors themselves except for the refined projection
    """
    values: np.ndarray
    coefficients: np.ndarray
    basis_coefficients: np.ndarray

    @property
    def size(self):
        return len(self.values)

    @classmethod
    def from_h(cls, H, target, shift=None):
        """ Standard Rayleigh-Ritz extraction from H = V^H A V.
        """
        try:
            values, vectors = scipy.linalg.eigh(_hermitian(H))
        except (scipy.linalg.LinAlgError, ValueError) as e:
            raise DenseKernelError(f"eigh failed on the projected matrix: {e}") from e

        idx = target_order(values, target, shift)
        values, vectors = values[idx], vectors[:, idx]
        return cls(values, vectors, vectors)


def _harmonic_pencil(M, G, generalized, real):
    """ Solve M c = nu G c for G Hermitian semidefinite.

    Directions in the null space of G are exact eigenvectors at the shift
    (nu infinite). The pencil is solved on the range of G only.
    """
    g, P = scipy.linalg.eigh(G)
    eps = np.finfo(np.float64).eps
    null = g <= len(g) * eps * max(abs(g[-1]), np.finfo(np.float64).tiny)
    R = P[:, ~null]

    nu = np.zeros(0)
    Y = np.zeros((0, 0), dtype=P.dtype)
    if R.shape[1] > 0:
        Mr = R.conj().T @ M @ R
        D = np.diag(g[~null])
        if generalized:
            nu, Y = scipy.linalg.eig(Mr, D)
            nu = nu.real
            if real:
                Y = Y.real
        else:
            nu, Y = scipy.linalg.eigh(_hermitian(Mr), D)

    nu = np.concatenate([nu, np.full(int(null.sum()), np.inf)])
    C = np.hstack([R @ Y, P[:, null]])
    return nu, C


def harmonic_ritz(pm, target, shift, generalized=False):
    """ Harmonic Rayleigh-Ritz extraction around shift.

    The harmonic Ritz pairs satisfy (A - theta B) V c orthogonal to
    (A - shift B) V, i.e.

        Z^H BV c = nu Z^H Z c,    Z = (A - shift B) V,    nu = 1 / (theta - shift)

    so the eigenvalues closest to the shift are the best conditioned. The
    reported values are the Rayleigh quotients of the harmonic vectors.
    When the shift is an eigenvalue already captured by the basis, Z^H Z
    is singular and its null space gives the eigenvectors at the shift.
    """
    G = pm.residual_gram(shift)
    M = pm.WB - shift * pm.BB

    try:
        nu, C = _harmonic_pencil(M, G, generalized, not np.iscomplexobj(pm.H))
    except (scipy.linalg.LinAlgError, ValueError) as e:
        logger.warning("harmonic extraction failed, using Rayleigh-Ritz: %s", e)
        return RitzDecomposition.from_h(pm.H, target, shift)

    with np.errstate(divide="ignore"):
        harmonic_values = shift + 1.0 / nu
    harmonic_values = np.where(np.isfinite(harmonic_values), harmonic_values,
                               np.copysign(np.inf, nu))

    C = C / np.linalg.norm(C, axis=0)
    values = np.real(np.einsum("ij,ij->j", C.conj(), pm.H @ C))

    idx = target_order(harmonic_values, target, shift)
    C = C[:, idx]
    return RitzDecomposition(values[idx], C, C)


def refine(pm, ritz, indices, shifts):
    """ Replace the coefficients of the given Ritz pairs by the refined
    ones: for each index i, the unit vector c minimizing
    ||(A - shifts[i] B) V c||. The values are kept.

    A refined vector is only taken when its residual estimate is below
    the one of the Ritz vector, which is not the case once both are at
    the rounding level.
    """
    coefficients = ritz.coefficients.copy()
    for i, s in zip(indices, shifts):
        G = pm.residual_gram(s)
        try:
            sigma2, c = scipy.linalg.eigh(G, subset_by_index=[0, 0])
        except (scipy.linalg.LinAlgError, ValueError) as e:
            raise DenseKernelError(f"refined extraction failed: {e}") from e
        c = c[:, 0]
        c_rr = ritz.coefficients[:, i] / np.linalg.norm(ritz.coefficients[:, i])
        if not float(sigma2[0]) < np.real(np.vdot(c_rr, G @ c_rr)):
            continue
        # keep the sign convention of the Ritz vector
        phase = np.vdot(c_rr, c)
        if abs(phase) > 0:
            c = c * (abs(phase) / phase)
        coefficients[:, i] = c

    ritz.coefficients = coefficients


def extract(pm, projection, target, shift=None, generalized=False):
    """ Extract the Ritz decomposition of the current basis.
    """
    if projection == Projection.HARMONIC and shift is not None:
        return harmonic_ritz(pm, target, shift, generalized)
    # refined replaces some vectors later on, once the block is known
    return RitzDecomposition.from_h(pm.H, target, shift)
