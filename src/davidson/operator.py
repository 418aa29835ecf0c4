import numpy as np

from .stats import timed


class CallbackError(RuntimeError):
    """ A user callback reported a non-zero error code.
    """
    def __init__(self, name, code):
        super().__init__(f"{name} returned error code {code}")
        self.name = name
        self.code = code


def _unpack(name, out):
    """ Callbacks return either a value or a (value, ierr) pair.
    """
    if isinstance(out, tuple):
        value, ierr = out
        if ierr:
            raise CallbackError(name, ierr)
        return value
    return out


def _as_block_function(A):
    if A is None or callable(A):
        return A
    if hasattr(A, "shape"):
        return lambda X: A @ X
    raise TypeError(f"Cannot use object of type {type(A)} as an operator")


def _as_preconditioner(M):
    if M is None:
        return None
    if hasattr(M, "shape"):
        return lambda X, shifts: M @ X
    if callable(M):
        return M
    raise TypeError(f"Cannot use object of type {type(M)} as a preconditioner")


class OperatorDescriptor:
    """ The operators of the problem, seen only through their action on
    blocks of local vectors.

    Parameters
    ----------
    n: int
        global dimension of the problem
    matvec: callable, array, sparse matrix or LinearOperator
        f(X) -> A X for X of shape (n_local, k). May return (Y, ierr)
    n_local: int
        number of rows owned by this participant. Defaults to n
    preconditioner: callable, array, sparse matrix or LinearOperator
        f(X, shifts) -> K X where shifts has one entry per column of X
    mass_matvec: callable, array, sparse matrix or LinearOperator
        f(X) -> B X, only for generalized problems
    global_sum: callable
        f(local) -> sum of local over all participants. Defaults to the
        identity (single participant)
    dtype:
        float64 or complex128
    """
    def __init__(self, n, matvec, *, n_local=None, preconditioner=None,
                 mass_matvec=None, global_sum=None, dtype=np.float64):
        self.n = n
        self.n_local = n if n_local is None else n_local
        self.dtype = np.dtype(dtype)

        self._matvec = _as_block_function(matvec)
        self._mass_matvec = _as_block_function(mass_matvec)
        self._preconditioner = _as_preconditioner(preconditioner)
        self._global_sum = global_sum

    @property
    def has_preconditioner(self):
        return self._preconditioner is not None

    @property
    def is_generalized(self):
        return self._mass_matvec is not None

    def _block(self, name, Y, k):
        Y = np.asarray(Y)
        Y = Y.astype(np.result_type(Y.dtype, self.dtype), copy=False)
        if Y.size != self.n_local * k:
            raise ValueError(
                f"{name} returned {Y.shape}, expected ({self.n_local}, {k})"
            )
        return Y.reshape(self.n_local, k)

    def apply_operator(self, X, stats):
        k = X.shape[1]
        with timed(stats, "time_matvec"):
            Y = _unpack("matvec", self._matvec(X))
        stats.num_matvecs += k
        return self._block("matvec", Y, k)

    def apply_preconditioner(self, X, shifts, stats):
        """ Apply K to X, the identity if there is no preconditioner.
        """
        k = X.shape[1]
        if self._preconditioner is None:
            return X.copy()
        shifts = np.broadcast_to(np.asarray(shifts, dtype=np.float64), (k,))
        with timed(stats, "time_precond"):
            Y = _unpack("preconditioner", self._preconditioner(X, shifts))
        stats.num_preconds += k
        return self._block("preconditioner", Y, k)

    def apply_mass(self, X, stats):
        """ Apply B to X, a copy of X for standard problems.
        """
        if self._mass_matvec is None:
            return X.copy()
        k = X.shape[1]
        with timed(stats, "time_matvec"):
            Y = _unpack("mass_matvec", self._mass_matvec(X))
        return self._block("mass_matvec", Y, k)

    def global_sum(self, local, stats):
        local = np.asarray(local)
        stats.num_global_sum += 1
        stats.volume_global_sum += local.size
        if self._global_sum is None:
            return local
        with timed(stats, "time_global_sum"):
            out = _unpack("global_sum", self._global_sum(local))
        return np.asarray(out).reshape(local.shape)

    def inner(self, X, Y, stats):
        """ Global X^H Y.
        """
        return self.global_sum(X.conj().T @ Y, stats)

    def column_norms(self, X, stats, BX=None):
        """ Global (B-)norms of the columns of X.
        """
        BX = X if BX is None else BX
        local = np.real(np.einsum("ij,ij->j", X.conj(), BX))
        return np.sqrt(np.maximum(self.global_sum(local, stats), 0.0))


def mpi_global_sum(comm):
    """ Global reduction callback summing over all the ranks of an mpi4py
    communicator.
    """
    from mpi4py import MPI

    def global_sum(local):
        local = np.ascontiguousarray(local)
        out = np.empty_like(local)
        comm.Allreduce(local, out, op=MPI.SUM)
        return out

    return global_sum
