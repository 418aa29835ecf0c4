import numpy as np

from .params import Target


def rand_block(n, k, dtype=np.float64, rng=None):
    """ Create a (n, k) block of random, not normalized, columns.

    Only the local slice is generated: each participant must pass its own
    rng so that slices differ between participants.
    """
    rng = np.random.default_rng() if rng is None else rng
    X = rng.standard_normal((n, k)).astype(dtype)
    if np.iscomplexobj(X):
        X += 1j * rng.standard_normal((n, k))
    return X


def make_rng(seed=None, proc_id=0):
    if seed is None:
        return np.random.default_rng()
    return np.random.default_rng([seed, proc_id])


def arg_smallest(values):
    return np.argsort(values, kind="stable")


def arg_largest(values):
    return np.argsort(-values, kind="stable")


def arg_closest_geq(values, shift):
    # values at or above the shift first, ascending, then the rest by
    # increasing distance to the shift
    return np.lexsort((np.abs(values - shift), values < shift))


def arg_closest_leq(values, shift):
    return np.lexsort((np.abs(values - shift), values > shift))


def arg_closest_abs(values, shift):
    return np.argsort(np.abs(values - shift), kind="stable")


def arg_largest_abs(values, shift):
    return np.argsort(-np.abs(values - shift), kind="stable")


_SORT_FUNCTIONS = {
    Target.SMALLEST: lambda values, shift: arg_smallest(values),
    Target.LARGEST: lambda values, shift: arg_largest(values),
    Target.CLOSEST_GEQ: arg_closest_geq,
    Target.CLOSEST_LEQ: arg_closest_leq,
    Target.CLOSEST_ABS: arg_closest_abs,
    Target.LARGEST_ABS: arg_largest_abs,
}


def target_order(values, target, shift=None):
    """ Return the permutation sorting values from the most to the least
    wanted for the given target.

    Parameters
    ----------
    values: ndarray of shape (m,)
        real eigenvalue estimates
    target: Target
    shift: float
        the target shift, ignored for SMALLEST and LARGEST

    Returns
    -------
    idx: ndarray of shape (m,)
    """
    values = np.asarray(values, dtype=np.float64)
    if target.needs_shift and shift is None:
        raise ValueError(f"target {target.name} needs a shift")
    return _SORT_FUNCTIONS[target](values, shift)


def current_shift(target, shifts, num_locked):
    """ The shift for the next eigenvalue to find: the i-th shift for the
    i-th eigenvalue, the last shift for all the following ones.
    """
    if not target.needs_shift:
        return shifts[0] if len(shifts) > 0 else None
    return shifts[min(num_locked, len(shifts) - 1)]
