import contextlib
import dataclasses
import time

import numpy as np


@dataclasses.dataclass
class Statistics:
    """ Counters and running estimates of a solve.

    A single instance is owned by the solver and passed explicitly to every
    component that does work worth counting.
    """
    num_outer_iterations: int = 0
    num_restarts: int = 0
    num_matvecs: int = 0
    num_preconds: int = 0
    num_global_sum: int = 0
    # number of scalars reduced by the global sum
    volume_global_sum: int = 0
    num_ortho_inner_prods: float = 0.0
    num_inner_iterations: int = 0
    num_locked: int = 0

    elapsed_time: float = 0.0
    time_matvec: float = 0.0
    time_precond: float = 0.0
    time_ortho: float = 0.0
    time_global_sum: float = 0.0

    # leftmost / rightmost Ritz value seen
    estimate_min_eval: float = np.inf
    estimate_max_eval: float = -np.inf
    # absolute value of the farthest to zero Ritz value seen
    estimate_largest_svalue: float = -np.inf
    # largest residual norm of a locked eigenpair
    max_conv_tol: float = 0.0
    # accumulated error in the basis images W = A V
    estimate_residual_error: float = 0.0

    def update_estimates(self, values):
        if len(values) == 0:
            return
        self.estimate_min_eval = min(self.estimate_min_eval, float(np.min(values)))
        self.estimate_max_eval = max(self.estimate_max_eval, float(np.max(values)))
        self.estimate_largest_svalue = max(
            self.estimate_largest_svalue, float(np.max(np.abs(values)))
        )


@contextlib.contextmanager
def timed(stats, field):
    """ Accumulate the wall time spent in the block into stats.<field>.
    """
    t0 = time.perf_counter()
    try:
        yield
    finally:
        setattr(stats, field, getattr(stats, field) + time.perf_counter() - t0)
