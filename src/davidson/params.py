import dataclasses
import enum
import math

from typing import Callable, Optional, Sequence

import numpy as np


class Target(enum.Enum):
    SMALLEST = "smallest"          # leftmost eigenvalues
    LARGEST = "largest"            # rightmost eigenvalues
    CLOSEST_GEQ = "closest_geq"    # leftmost but greater than the target shift
    CLOSEST_LEQ = "closest_leq"    # rightmost but less than the target shift
    CLOSEST_ABS = "closest_abs"    # the closest to the target shift
    LARGEST_ABS = "largest_abs"    # the farthest to the target shift

    @property
    def needs_shift(self):
        return self not in (Target.SMALLEST, Target.LARGEST)


class Projection(enum.Enum):
    DEFAULT = "default"
    RR = "rayleigh_ritz"
    HARMONIC = "harmonic"
    REFINED = "refined"


class InitMode(enum.Enum):
    DEFAULT = "default"
    KRYLOV = "krylov"
    RANDOM = "random"
    USER = "user"


class RestartScheme(enum.Enum):
    THICK = "thick"
    DTR = "dtr"


class ConvergenceTest(enum.Enum):
    FULL_LTOLERANCE = "full"
    DECREASING_LTOLERANCE = "decreasing"
    ADAPTIVE_ETOLERANCE = "adaptive_etol"
    ADAPTIVE = "adaptive"


class ParameterError(ValueError):
    """ Inconsistent solver configuration, detected before any iteration.
    """
    def __init__(self, code, message):
        super().__init__(f"{message} (code {code})")
        self.code = code


@dataclasses.dataclass
class JDProjectors:
    left_q: bool = False
    left_x: bool = False
    right_q: bool = False
    right_x: bool = False
    skew_q: bool = False
    skew_x: bool = False

    @property
    def any_left(self):
        return self.left_q or self.left_x

    @property
    def any_right(self):
        return self.right_q or self.right_x

    @property
    def any_skew(self):
        return self.skew_q or self.skew_x


@dataclasses.dataclass
class CorrectionParams:
    precondition: bool = True
    robust_shifts: bool = False
    # 0: no inner solve, -1: until the inner tolerance is met
    max_inner_iterations: int = 0
    projectors: JDProjectors = dataclasses.field(default_factory=JDProjectors)
    conv_test: ConvergenceTest = ConvergenceTest.FULL_LTOLERANCE
    rel_tol_base: float = 1.5


@dataclasses.dataclass
class RestartingParams:
    scheme: RestartScheme = RestartScheme.THICK
    # -1: let the preset choose
    max_prev_retain: int = -1


@dataclasses.dataclass
class SolverParameters:
    num_evals: int = 1
    target: Target = Target.SMALLEST
    target_shifts: Sequence[float] = ()

    locking: bool = False
    max_basis_size: int = 0
    min_restart_size: int = 0
    max_block_size: int = 1
    # None means unlimited
    max_matvecs: Optional[int] = None
    max_outer_iterations: Optional[int] = None

    eps: float = 1e-12
    a_norm: float = 0.0

    projection: Projection = Projection.DEFAULT
    init_basis_mode: InitMode = InitMode.DEFAULT
    convergence_test: ConvergenceTest = ConvergenceTest.FULL_LTOLERANCE
    dynamic_method_switch: bool = False

    restarting: RestartingParams = dataclasses.field(default_factory=RestartingParams)
    correction: CorrectionParams = dataclasses.field(default_factory=CorrectionParams)

    seed: Optional[int] = None
    print_level: int = 1

    conv_test_fun: Optional[Callable] = None
    monitor: Optional[Callable] = None

    def copy(self):
        return dataclasses.replace(
            self,
            target_shifts=tuple(self.target_shifts),
            restarting=dataclasses.replace(self.restarting),
            correction=dataclasses.replace(
                self.correction,
                projectors=dataclasses.replace(self.correction.projectors),
            ),
        )


def fill_defaults(params, n, num_constraints=0):
    """ Fill the sizes left to 0 / -1 from the other parameters and the
    problem dimension n. Returns a new SolverParameters.

    Without locking, the basis must keep num_evals vectors at restart and
    still have room for a block. When it cannot (num_evals close to the
    dimension), the block is shrunk, or locking is turned on.
    """
    params = params.copy()
    available = n - num_constraints

    params.max_block_size = max(params.max_block_size, 1)

    if params.restarting.max_prev_retain < 0:
        params.restarting.max_prev_retain = 1 if params.correction.precondition else 0

    if params.max_basis_size <= 0:
        params.max_basis_size = max(
            15, 2 * params.num_evals + params.max_block_size,
            params.max_block_size + params.restarting.max_prev_retain + 2
        )
    params.max_basis_size = min(params.max_basis_size, available)

    if params.min_restart_size <= 0:
        if params.max_basis_size == 1:
            # a single vector spans the whole space
            params.min_restart_size = 1
        else:
            if not params.locking and params.num_evals >= params.max_basis_size:
                params.locking = True
            if not params.locking:
                params.max_block_size = min(
                    params.max_block_size, params.max_basis_size - params.num_evals
                )
            room = params.max_basis_size - params.max_block_size
            min_restart = min(math.ceil(0.4 * params.max_basis_size),
                              room - params.restarting.max_prev_retain)
            if not params.locking:
                min_restart = max(min_restart, params.num_evals)
            params.min_restart_size = max(min_restart, 1)
    # the prev-retain count is trimmed to fit in the basis
    room = params.max_basis_size - params.max_block_size
    params.restarting.max_prev_retain = max(
        0, min(params.restarting.max_prev_retain, room - params.min_restart_size)
    )

    if params.projection == Projection.DEFAULT:
        params.projection = Projection.RR

    if params.init_basis_mode == InitMode.DEFAULT:
        params.init_basis_mode = (
            InitMode.KRYLOV if params.max_block_size == 1 else InitMode.RANDOM
        )

    params.eps = max(params.eps, np.finfo(np.float64).eps)
    return params


def check_parameters(params, n, n_local, num_constraints=0, num_initial=0):
    """ Raise ParameterError if the (defaulted) parameters are inconsistent.
    """
    if n <= 0 or n_local < 0 or n_local > n:
        raise ParameterError(-1, f"invalid dimensions n={n}, n_local={n_local}")
    if params.num_evals < 1 or params.num_evals > n:
        raise ParameterError(-2, f"num_evals={params.num_evals} must be in [1, {n}]")
    # a one-dimensional search space is never restarted
    restarted = n - num_constraints > 1
    if params.max_basis_size < 2 and restarted:
        raise ParameterError(-3, f"max_basis_size={params.max_basis_size} must be >= 2")
    if restarted and not (0 < params.min_restart_size < params.max_basis_size):
        raise ParameterError(
            -4, f"min_restart_size={params.min_restart_size} must be in "
                f"(0, max_basis_size={params.max_basis_size})"
        )
    if params.max_block_size < 1 or restarted and (
        params.min_restart_size + params.max_block_size > params.max_basis_size
    ):
        raise ParameterError(
            -5, f"max_block_size={params.max_block_size} does not fit after a "
                f"restart to {params.min_restart_size} vectors"
        )
    retain = params.restarting.max_prev_retain
    if retain < 0 or restarted and (
        params.min_restart_size + retain + params.max_block_size > params.max_basis_size
    ):
        raise ParameterError(-6, f"max_prev_retain={retain} does not fit in the basis")
    if params.target.needs_shift and len(params.target_shifts) == 0:
        raise ParameterError(-7, f"target {params.target.name} needs target_shifts")
    if not (0 < params.eps < 1):
        raise ParameterError(-8, f"eps={params.eps} must be in (0, 1)")
    if num_constraints < 0 or num_constraints + params.num_evals > n:
        raise ParameterError(-9, f"{num_constraints} constraints leave no room "
                                 f"for {params.num_evals} eigenvectors")
    if num_initial > params.max_basis_size:
        raise ParameterError(-10, f"{num_initial} initial vectors exceed max_basis_size")
    if not params.locking and params.min_restart_size < params.num_evals:
        raise ParameterError(
            -11, "without locking min_restart_size must be >= num_evals"
        )
    for name in ("max_matvecs", "max_outer_iterations"):
        value = getattr(params, name)
        if value is not None and value <= 0:
            raise ParameterError(-12, f"{name}={value} must be positive")
    if params.a_norm < 0:
        raise ParameterError(-13, f"a_norm={params.a_norm} must be >= 0")
