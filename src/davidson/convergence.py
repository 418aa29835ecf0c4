import numpy as np

from .operator import _unpack
from .params import ConvergenceTest


MACHINE_EPS = np.finfo(np.float64).eps


class ConvergenceTester:
    """ Decide whether an approximate eigenpair has converged.

    With every policy a pair is converged only if its residual norm is below
    eps * ||A||, ||A|| being the user estimate a_norm or, when it is not
    given, the largest absolute Ritz value seen so far. The policies add:

    * FULL_LTOLERANCE: nothing.
    * DECREASING_LTOLERANCE: the tolerance is divided by
      rel_tol_base ** num_locked (at most by 10, and never below
      100 * machine eps * ||A||), so that the pairs found later, more exposed
      to the errors of the locked ones, are computed more accurately.
    * ADAPTIVE: the eigenvalue error bound ||r||^2 / gap must also be below
      the tolerance, gap being the distance to the closest other Ritz or
      locked value. This only bites for clustered pairs, and tightens as the
      gap estimates improve.
    * ADAPTIVE_ETOLERANCE: ADAPTIVE, and the eigenvalue must not have moved
      by more than the tolerance since the previous iteration.

    A user function conv_test_fun(value, vector, rnorm) replaces the policy
    entirely.
    """
    def __init__(self, policy, eps, a_norm=0.0, rel_tol_base=1.5, conv_test_fun=None):
        self.policy = policy
        self.eps = eps
        self.a_norm = a_norm
        self.rel_tol_base = rel_tol_base
        self.conv_test_fun = conv_test_fun

    def norm_estimate(self, stats):
        if self.a_norm > 0:
            return self.a_norm
        return max(stats.estimate_largest_svalue, MACHINE_EPS)

    def tolerance(self, stats, num_locked=0):
        a_norm = self.norm_estimate(stats)
        tol = self.eps * a_norm
        if self.policy == ConvergenceTest.DECREASING_LTOLERANCE:
            tol /= min(self.rel_tol_base ** num_locked, 10.0)
            tol = max(tol, min(100 * MACHINE_EPS * a_norm, self.eps * a_norm))
        return tol

    def accepts_residual(self, value, vector, rnorm, stats, num_locked=0):
        """ The residual part of the test, used to confirm a converged pair
        with its true residual.
        """
        if self.conv_test_fun is not None:
            return bool(_unpack("conv_test_fun",
                                self.conv_test_fun(value, vector, rnorm)))
        return rnorm <= self.tolerance(stats, num_locked)

    def is_converged(self, value, vector, rnorm, stats, *, num_locked=0,
                     gap=np.inf, previous_value=None):
        if self.conv_test_fun is not None:
            return bool(_unpack("conv_test_fun",
                                self.conv_test_fun(value, vector, rnorm)))

        tol = self.tolerance(stats, num_locked)
        if rnorm > tol:
            return False

        if self.policy in (ConvergenceTest.ADAPTIVE, ConvergenceTest.ADAPTIVE_ETOLERANCE):
            if gap > 0 and rnorm**2 / gap > tol:
                return False

        if self.policy == ConvergenceTest.ADAPTIVE_ETOLERANCE:
            if previous_value is not None and abs(value - previous_value) > tol:
                return False

        return True


def gaps(values, locked_values=(), cluster_tol=0.0):
    """ Distance of each value to the closest other value, ignoring the
    values closer than cluster_tol (same cluster).
    """
    values = np.asarray(values, dtype=np.float64)
    others = np.concatenate([values, np.asarray(locked_values, dtype=np.float64)])
    out = np.full(len(values), np.inf)
    for i, v in enumerate(values):
        d = np.abs(others - v)
        d[i] = np.inf
        d[d <= cluster_tol] = np.inf
        out[i] = d.min()
    return out
