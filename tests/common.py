import numpy as np

from davidson.operator import OperatorDescriptor
from davidson.stats import Statistics


MAX_RETRIES_SHORT = 3

norm = np.linalg.norm


def diagonal_operator(values, dtype=np.float64, **kwargs):
    """ OperatorDescriptor of diag(values), applied column-wise.
    """
    d = np.asarray(values, dtype=dtype)
    return OperatorDescriptor(len(d), lambda X: d[:, None] * X, dtype=dtype, **kwargs)


def dense_operator(A, **kwargs):
    return OperatorDescriptor(A.shape[0], A, dtype=A.dtype, **kwargs)


def b_orthonormality_error(X, BX=None):
    BX = X if BX is None else BX
    return norm(X.conj().T @ BX - np.eye(X.shape[1]))


def new_stats():
    return Statistics()
