import numpy as np
import scipy.sparse as sp


def laplace_eigen(n):
    """ Returns the N eigen values of a Laplacian operator of dimension N.

    The Laplacian operator is the symmetric, tridiagonal matrix with -2 in the
    main diagonal, and 1 in the upper/lower diagonal.
    """
    # See e.g. https://www.cs.yale.edu/homes/spielman/561/2009/lect02-09.pdf
    # for the formula
    return -2 + 2 * np.cos(np.arange(1, n+1) * np.pi / (n + 1))


def laplace(n, dtype=None):
    """ Create a Laplacian operator of dimension n.

    The Laplacian operator is the symmetric, tridiagonal matrix with -2 in the
    main diagonal, and 1 in the upper/lower diagonal.
    """
    lower = np.ones(n-1, dtype=dtype)
    data = [-2 * np.ones(n, dtype=dtype), lower, lower]
    return sp.diags_array(data, offsets=[0, -1, 1]).tocsr()


def diagonal(values, dtype=None):
    """ Sparse diagonal matrix with the given values.
    """
    values = np.asarray(values, dtype=dtype)
    return sp.diags_array(values).tocsr()


def diagonal_pencil(n, dtype=None):
    """ Generalized pencil (A, B) with A = diag(1 .. n) and B = diag(2 .. n+1).

    Returns
    -------
    A, B: scipy.sparse.csr_array
    eigenvalues: ndarray
        i / (i + 1), in increasing order
    """
    a = np.arange(1, n + 1, dtype=np.float64)
    b = a + 1
    return diagonal(a, dtype), diagonal(b, dtype), a / b


def hermitian_with_spectrum(eigenvalues, dtype=np.float64, rng=None):
    """ Dense Hermitian matrix Q diag(eigenvalues) Q^H for a random unitary Q.
    """
    rng = np.random.default_rng() if rng is None else rng
    n = len(eigenvalues)
    X = rng.standard_normal((n, n)).astype(dtype)
    if np.iscomplexobj(X):
        X += 1j * rng.standard_normal((n, n))
    Q, _ = np.linalg.qr(X)
    A = (Q * np.asarray(eigenvalues)) @ Q.conj().T
    return 0.5 * (A + A.conj().T)


def jacobi_preconditioner(A, shifted=True):
    """ Inverse of the diagonal of A, as a preconditioner f(X, shifts).

    With shifted=True, column j is scaled by 1 / (diag(A) - shifts[j]),
    guarded away from zero.
    """
    d = np.asarray(A.diagonal())

    def apply(X, shifts):
        Y = np.empty_like(X, dtype=np.result_type(X, d))
        for j in range(X.shape[1]):
            s = shifts[j] if shifted else 0.0
            denom = d - s
            tiny = np.finfo(np.float64).eps * max(np.abs(d).max(), 1.0)
            denom = np.where(np.abs(denom) < tiny, tiny, denom)
            Y[:, j] = X[:, j] / denom
        return Y

    return apply
