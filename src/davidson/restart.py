import logging

import numpy as np

from .ortho import dgks_mgs
from .params import RestartScheme, Target


logger = logging.getLogger(__name__)


def _pad(C, m):
    """ Express coefficients of a smaller basis in the current basis of
    dimension m; the basis is only appended to between two restarts.
    """
    out = np.zeros((m, C.shape[1]), dtype=C.dtype)
    out[:C.shape[0]] = C
    return out


def orthonormal_columns(columns, against=None, tol=1e-8, max_columns=None):
    """ Orthonormalize the given coefficient columns one by one, against the
    orthonormal columns of `against` and the ones already accepted,
    skipping the dependent ones.
    """
    m = columns.shape[0]
    accepted = [] if against is None else [against[:, i] for i in range(against.shape[1])]
    n_against = len(accepted)
    for i in range(columns.shape[1]):
        if max_columns is not None and len(accepted) - n_against >= max_columns:
            break
        w = columns[:, i].copy()
        C = np.column_stack(accepted) if accepted else np.zeros((m, 0), dtype=w.dtype)
        _, breakdown = dgks_mgs(w, C, tol=tol)
        if not breakdown:
            accepted.append(w)
    new = accepted[n_against:]
    if len(new) == 0:
        return np.zeros((m, 0), dtype=columns.dtype)
    return np.column_stack(new)


class RestartManager:
    """ Choose the subspace kept when the basis is full.

    The basis is compressed to the span of the min_restart_size best Ritz
    vectors plus up to max_prev_retain directions taken from the Ritz
    vectors of the previous iteration (the "+k" directions, which make
    GD+k behave like a locally optimal method).

    With the thick scheme the best Ritz vectors are the first ones in the
    target order and exactly max_prev_retain previous directions are kept.
    With the dynamic thick scheme (DTR):

    * for extreme targets, l vectors are kept from the wanted end of the
      spectrum and min_restart_size - l from the other end, l maximizing
      the gap ratio (theta_l - theta_0) / (theta_(m-r-1) - theta_l) that
      governs the convergence of the wanted pair after the restart;
    * the number of previous directions grows by one when the leading
      residual norm did not at least halve since the previous restart, and
      shrinks by one when it dropped by more than ten times.
    """
    def __init__(self, params, min_restart_size, target):
        self.scheme = params.scheme
        self.max_prev_retain = params.max_prev_retain
        self.min_restart_size = min_restart_size
        self.target = target

        self._retain = params.max_prev_retain
        self._last_residual = None

    def prev_retain(self, lead_residual, room):
        """ Number of previous directions to keep at this restart.
        """
        if self.scheme == RestartScheme.DTR and lead_residual is not None:
            if self._last_residual is not None and self._last_residual > 0:
                ratio = lead_residual / self._last_residual
                if ratio > 0.5:
                    self._retain += 1
                elif ratio < 0.1:
                    self._retain -= 1
            self._last_residual = lead_residual
            self._retain = max(0, min(self._retain, room))
            return self._retain
        return max(0, min(self.max_prev_retain, room))

    def kept_indices(self, values, num_required):
        """ Indices, in the target order, of the Ritz vectors kept.
        """
        m = len(values)
        k = min(max(self.min_restart_size, num_required), m)
        extreme = self.target in (Target.SMALLEST, Target.LARGEST)
        if self.scheme != RestartScheme.DTR or not extreme or m <= k + 1:
            return np.arange(k)

        best_l, best_ratio = k, -np.inf
        for l in range(max(num_required, 1), k + 1):
            r = k - l
            num = abs(values[l] - values[0])
            den = abs(values[m - r - 1] - values[l])
            ratio = num / den if den > 0 else np.inf
            if ratio > best_ratio:
                best_l, best_ratio = l, ratio
        r = k - best_l
        return np.concatenate([np.arange(best_l), np.arange(m - r, m)]).astype(int)

    def restart_coefficients(self, ritz, num_required, prev_coefficients=None,
                             lead_residual=None, room=0):
        """ Return the orthonormal coefficients C (m, k) of the restarted
        basis V C.

        Parameters
        ----------
        ritz: RitzDecomposition
            of the current basis of dimension m
        num_required: int
            number of leading Ritz vectors that must be kept
        prev_coefficients: ndarray of shape (m', p) or None
            coefficients of the previous iteration Ritz vectors, m' <= m
        lead_residual: float or None
            residual norm of the first unconverged pair
        room: int
            max number of previous directions that fit in the basis
        """
        m = ritz.size
        keep = self.kept_indices(ritz.values, num_required)
        C = orthonormal_columns(ritz.basis_coefficients[:, keep])

        retain = self.prev_retain(lead_residual, room)
        if retain > 0 and prev_coefficients is not None and prev_coefficients.shape[0] <= m:
            P = orthonormal_columns(_pad(prev_coefficients, m), against=C,
                                    max_columns=retain)
            C = np.hstack([C, P])

        logger.debug("restart from %d to %d vectors (%d kept, %d previous)",
                     m, C.shape[1], len(keep), C.shape[1] - len(keep))
        return C
