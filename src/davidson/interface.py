import numpy as np

from .params import Projection, SolverParameters, Target
from .presets import Method, set_method
from .solver import Status, solve


_WHICH_TO_TARGET = {
    "SA": Target.SMALLEST,
    "LA": Target.LARGEST,
    # magnitudes are distances to 0
    "SM": Target.CLOSEST_ABS,
    "LM": Target.LARGEST_ABS,
}


class NoConvergence(RuntimeError):
    """ Not all the requested eigenpairs converged. The pairs that did are
    available on the attached result.
    """
    def __init__(self, result):
        super().__init__(
            f"{result.num_converged} eigenpairs converged "
            f"(status {Status(result.status).name}: {result.message})"
        )
        self.result = result
        self.eigenvalues = result.values
        self.eigenvectors = result.vectors


def eigsh(A, k=6, M=None, sigma=None, which="SA", v0=None, maxiter=None, tol=0,
          return_eigenvectors=True, *, preconditioner=None,
          method=Method.DEFAULT_MIN_TIME, locking=None, max_basis_size=0,
          max_block_size=1, seed=None, print_level=0):
    """ Find k eigenvalues and eigenvectors of the Hermitian matrix A,
    scipy.sparse.linalg.eigsh style.

    Parameters
    ----------
    A: ndarray, sparse matrix, LinearOperator or callable f(X) -> A X
    k: int
        number of eigenpairs
    M: same as A, optional
        Hermitian positive definite mass matrix of the problem A x = l M x
    sigma: float, optional
        find the eigenvalues closest to sigma
    which: str
        'SA', 'LA', 'SM' or 'LM', or a Target. Ignored when sigma is given,
        unless it is a Target
    v0: ndarray of shape (n,) or (n, j), optional
        initial guess(es)
    maxiter: int, optional
        maximum number of outer iterations
    tol: float
        relative tolerance; residuals are below tol * ||A||. 0 means machine
        precision
    preconditioner: optional
        f(X, shifts) -> approximate (A - shifts[j] M)^-1 X[:, j], or a
        matrix / LinearOperator approximating A^-1
    method: Method
        the preset to use

    Returns
    -------
    w: ndarray of shape (k,)
    v: ndarray of shape (n, k), if return_eigenvectors

    Raises
    ------
    NoConvergence
        when fewer than k eigenpairs converged
    """
    n = A.shape[0]
    dtype = np.result_type(getattr(A, "dtype", np.float64), np.float64)
    if M is not None:
        dtype = np.result_type(dtype, getattr(M, "dtype", np.float64))

    if isinstance(which, Target):
        target = which
    elif sigma is not None:
        target = Target.CLOSEST_ABS
    else:
        try:
            target = _WHICH_TO_TARGET[which]
        except KeyError:
            raise ValueError(f"which must be one of {sorted(_WHICH_TO_TARGET)}, got {which!r}")

    shifts = ()
    if target.needs_shift:
        shifts = (0.0 if sigma is None else float(sigma),)

    params = SolverParameters(
        num_evals=k, target=target, target_shifts=shifts,
        max_basis_size=max_basis_size, max_block_size=max_block_size,
        max_outer_iterations=maxiter, seed=seed, print_level=print_level,
    )
    if tol > 0:
        params.eps = tol
    if target in (Target.CLOSEST_ABS, Target.CLOSEST_GEQ, Target.CLOSEST_LEQ):
        # interior eigenvalues
        params.projection = Projection.HARMONIC
    params = set_method(method, params)
    if locking is not None:
        params.locking = locking

    initial_vectors = None
    if v0 is not None:
        initial_vectors = np.asarray(v0).reshape(n, -1)

    result = solve(
        A, n, params, preconditioner=preconditioner, mass_matvec=M,
        initial_vectors=initial_vectors, dtype=dtype,
    )
    if result.status != Status.SUCCESS:
        if result.status < 0:
            raise ValueError(result.message)
        raise NoConvergence(result)

    if return_eigenvectors:
        return result.values, result.vectors
    return result.values
