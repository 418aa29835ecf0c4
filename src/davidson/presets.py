import enum

from .params import (
    ConvergenceTest, CorrectionParams, InitMode, JDProjectors, SolverParameters,
)


class Method(enum.Enum):
    DEFAULT_METHOD = "default"
    DYNAMIC = "dynamic"
    DEFAULT_MIN_TIME = "default_min_time"
    DEFAULT_MIN_MATVECS = "default_min_matvecs"
    ARNOLDI = "arnoldi"
    GD = "gd"
    GD_PLUSK = "gd_plusk"
    GD_OLSEN_PLUSK = "gd_olsen_plusk"
    JD_OLSEN_PLUSK = "jd_olsen_plusk"
    RQI = "rqi"
    JDQR = "jdqr"
    JDQMR = "jdqmr"
    JDQMR_ETOL = "jdqmr_etol"
    SUBSPACE_ITERATION = "subspace_iteration"
    LOBPCG_ORTHOBASIS = "lobpcg_orthobasis"
    LOBPCG_ORTHOBASIS_WINDOW = "lobpcg_orthobasis_window"


ALIASES = {
    Method.DEFAULT_METHOD: Method.JDQMR_ETOL,
    Method.DEFAULT_MIN_TIME: Method.JDQMR_ETOL,
    Method.DEFAULT_MIN_MATVECS: Method.GD_OLSEN_PLUSK,
    Method.DYNAMIC: Method.JDQMR_ETOL,
}


def _plusk_retain(params):
    if params.max_block_size == 1 and params.num_evals > 1:
        return 2
    return params.max_block_size


def _correction(method, params):
    """ The correction parameters of the given (resolved) method.
    """
    if method == Method.ARNOLDI:
        return CorrectionParams(precondition=False)
    if method == Method.GD:
        return CorrectionParams(precondition=True, robust_shifts=True)
    if method == Method.GD_PLUSK:
        return CorrectionParams(precondition=True)
    if method == Method.GD_OLSEN_PLUSK:
        return CorrectionParams(
            precondition=True, robust_shifts=True,
            projectors=JDProjectors(left_x=True, right_x=True, skew_x=True),
        )
    if method == Method.JD_OLSEN_PLUSK:
        return CorrectionParams(
            precondition=True, robust_shifts=True,
            projectors=JDProjectors(left_q=True, left_x=True, right_x=True,
                                    skew_q=True, skew_x=True),
        )
    if method == Method.RQI:
        return CorrectionParams(
            precondition=True, max_inner_iterations=-1,
            projectors=JDProjectors(left_q=True, left_x=True, right_q=True, right_x=True),
            conv_test=ConvergenceTest.FULL_LTOLERANCE,
        )
    if method == Method.JDQR:
        return CorrectionParams(
            precondition=True, max_inner_iterations=10,
            projectors=JDProjectors(True, True, True, True, True, True),
            conv_test=ConvergenceTest.DECREASING_LTOLERANCE, rel_tol_base=1.5,
        )
    if method in (Method.JDQMR, Method.JDQMR_ETOL):
        conv_test = (ConvergenceTest.ADAPTIVE if method == Method.JDQMR
                     else ConvergenceTest.ADAPTIVE_ETOLERANCE)
        return CorrectionParams(
            precondition=True, max_inner_iterations=-1,
            projectors=JDProjectors(left_q=True, left_x=True, skew_x=True),
            conv_test=conv_test,
        )
    if method == Method.SUBSPACE_ITERATION:
        return CorrectionParams(precondition=False)
    if method in (Method.LOBPCG_ORTHOBASIS, Method.LOBPCG_ORTHOBASIS_WINDOW):
        return CorrectionParams(precondition=True)
    raise ValueError(f"Unknown method {method}")


def _prev_retain(method, params):
    if method in (Method.ARNOLDI, Method.GD, Method.RQI, Method.SUBSPACE_ITERATION):
        return 0
    if method in (Method.GD_PLUSK, Method.GD_OLSEN_PLUSK):
        return _plusk_retain(params)
    if method == Method.LOBPCG_ORTHOBASIS:
        return params.num_evals
    if method == Method.LOBPCG_ORTHOBASIS_WINDOW:
        return params.max_block_size
    return 1


def set_method(method, params=None):
    """ Return a copy of params configured as the given preset method.

    The presets are specific assignments of the correction and restart
    parameters, and for the block methods (subspace iteration, LOBPCG) of
    the basis and block sizes. Other fields, the restart scheme included,
    are left untouched.

    Parameters
    ----------
    method: Method
    params: SolverParameters or None

    Returns
    -------
    params: SolverParameters
    """
    params = SolverParameters() if params is None else params.copy()
    if method == Method.DYNAMIC:
        params.dynamic_method_switch = True
    resolved = ALIASES.get(method, method)

    k = params.num_evals
    if resolved == Method.SUBSPACE_ITERATION:
        params.locking = True
        params.max_block_size = k
        params.max_basis_size = 2 * k
        params.min_restart_size = k
        params.init_basis_mode = InitMode.RANDOM
    elif resolved == Method.LOBPCG_ORTHOBASIS:
        params.max_block_size = k
        params.max_basis_size = 3 * k
        params.min_restart_size = k
        params.init_basis_mode = InitMode.RANDOM
    elif resolved == Method.LOBPCG_ORTHOBASIS_WINDOW:
        params.locking = True
        params.max_block_size = min(max(params.max_block_size, 1), k)
        params.max_basis_size = 3 * params.max_block_size
        params.min_restart_size = params.max_block_size
        params.init_basis_mode = InitMode.RANDOM

    params.correction = _correction(resolved, params)
    params.restarting.max_prev_retain = _prev_retain(resolved, params)
    return params
