import dataclasses
import time

import numpy as np
import scipy.io
import scipy.sparse as sp

from scipy.optimize import linear_sum_assignment
from scipy.sparse.linalg import LinearOperator, eigsh

from davidson.params import SolverParameters, Target
from davidson.presets import Method, set_method
from davidson.solver import Status, solve
from davidson.utils import arg_largest, arg_smallest


WHICH_TO_SORT = {
    "SA": arg_smallest,
    "LA": arg_largest,
}

WHICH_TO_TARGET = {
    "SA": Target.SMALLEST,
    "LA": Target.LARGEST,
}


@dataclasses.dataclass
class Statistics:
    elapsed: float = 0.0
    dtype: np.dtype = dataclasses.field(default_factory=lambda: np.dtype("float64"))
    matvecs: int = 0
    restarts: int = 0
    converged: int = 0


@dataclasses.dataclass
class EigensolverParameters:
    nev: int = 6
    max_basis_size: int = 20
    tol: float = 1e-8
    max_iterations: int = 10_000
    method: Method = Method.DEFAULT_MIN_TIME
    which: str = "SA"
    max_block_size: int = 1

    @classmethod
    def from_cli_args(cls, args, n):
        max_basis_size = args.max_basis_size
        if max_basis_size is None:
            max_basis_size = min(max(2 * args.nev + 1, 20), n)

        return cls(
            args.nev, max_basis_size, args.tol, args.max_it,
            Method(args.method), args.which, args.block_size,
        )


class MatvecCounter(LinearOperator):
    def __init__(self, A):
        self.A = A
        self.shape = A.shape
        self.dtype = np.dtype(A.dtype)
        self.matvecs = 0

    def _matvec(self, x):
        self.matvecs += 1
        return self.A @ x

    def _matmat(self, X):
        self.matvecs += X.shape[1]
        return self.A @ X

    def _rmatvec(self, x):
        self.matvecs += 1
        return self.A.conj().T @ x


def find_best_matching(a, b):
    """
    Reorder both arrays so that they match as closely as possible
    """
    assert a.shape == b.shape, f"Shape mismatch: {a.shape} vs {b.shape}"

    # Cost matrix: |a[i] - b[j]| for all pairs
    cost_matrix = np.abs(a[:, np.newaxis] - b[np.newaxis, :])

    # Hungarian algorithm
    row_ind, col_ind = linear_sum_assignment(cost_matrix)

    return a[row_ind], b[col_ind]


def load_suitesparse_mat(path: str) -> sp.csr_matrix:
    """
    Load a SuiteSparse MATLAB .mat file.
    """
    data = scipy.io.loadmat(path, squeeze_me=False)

    prob = data.get("Problem")
    if prob:
        # prob is a (1,1) structured array; the matrix lives at field 'A'
        A = prob["A"][0, 0]
        if sp.issparse(A):
            return A.tocsr()

    raise ValueError(f"No sparse matrix found in {path!r}")


def symmetrize(A):
    """ Hermitian part of A, for matrices of the collection that are only
    numerically symmetric.
    """
    return ((A + A.conj().T) * 0.5).tocsr()


def print_residuals(label, A, vals, vecs):
    print(f"\n--- True residuals: {label} ---")
    a_norm = sp.linalg.norm(A, 1) if sp.issparse(A) else np.linalg.norm(A, 1)
    for k, (val, vec) in enumerate(zip(vals, vecs.T)):
        res = np.linalg.norm(A @ vec - val * vec)
        print(
            f"  eigval[{k}] = {val:+.10g}"
            f"    |Av-λv|={res:.3e}    |Av-λv|/|A|={res / a_norm:.3e}"
        )


def arpack_eig(A, parameters: EigensolverParameters):
    A = MatvecCounter(A)
    t0 = time.perf_counter()

    vals, vecs = eigsh(
        A,
        k=parameters.nev,
        which=parameters.which,
        ncv=parameters.max_basis_size,
        tol=parameters.tol,
        maxiter=parameters.max_iterations,
    )
    elapsed = time.perf_counter() - t0

    idx = WHICH_TO_SORT[parameters.which](vals)
    vals = vals[idx]
    vecs = vecs[:, idx]

    matvecs = A.matvecs
    ncv = parameters.max_basis_size
    n_iters = max(matvecs - ncv, 0) // max(ncv - parameters.nev, 1)

    return vals, vecs, Statistics(elapsed, A.dtype, matvecs, n_iters, len(vals))


def davidson_eig(A, parameters: EigensolverParameters, print_level=0):
    n = A.shape[0]
    params = SolverParameters(
        num_evals=parameters.nev,
        target=WHICH_TO_TARGET[parameters.which],
        max_basis_size=parameters.max_basis_size,
        max_block_size=parameters.max_block_size,
        max_outer_iterations=parameters.max_iterations,
        eps=parameters.tol,
        print_level=print_level,
    )
    params = set_method(parameters.method, params)

    t0 = time.perf_counter()
    result = solve(A, n, params, dtype=A.dtype)
    elapsed = time.perf_counter() - t0

    if result.status != Status.SUCCESS:
        print(
            f"\033[31m!!! davidson stopped with {Status(result.status).name}: "
            f"{result.message} !!!\033[0m"
        )

    stats = Statistics(
        elapsed, np.dtype(A.dtype), result.stats.num_matvecs,
        result.stats.num_restarts, result.num_converged,
    )
    return result.values, result.vectors, stats
