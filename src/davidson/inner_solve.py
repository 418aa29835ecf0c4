import dataclasses
import logging

import numpy as np


logger = logging.getLogger(__name__)

MACHINE_EPS = np.finfo(np.float64).eps


class InnerSolveBreakdown(RuntimeError):
    """ The inner linear solve could not make any progress.
    """


@dataclasses.dataclass
class DynamicStopping:
    """ Data needed to estimate, during the inner solve for the correction
    t of the eigenpair (theta, x), the residual norm of the updated pair
    (x + t) / ||x + t||, and stop as soon as iterating further does not
    improve it.
    """
    theta: float
    shift: float
    # stop when the estimated eigen residual falls below this
    e_tolerance: float


@dataclasses.dataclass
class InnerSolveInfo:
    iterations: int = 0
    reason: str = "max_iterations"
    linear_residual: float = np.inf
    eigen_residual: float = np.inf


def _dot(op, stats, x, y):
    return op.global_sum(np.array([np.vdot(x, y)]), stats)[0]


def _norm(op, stats, x):
    return float(np.sqrt(max(np.real(_dot(op, stats, x, x)), 0.0)))


def qmrs(op, stats, apply_matrix, apply_preconditioner, b, *, max_iterations,
         l_tolerance, dynamic=None, exhausted=None):
    """ Solve M t = b with the symmetric QMR method, for M Hermitian,
    possibly indefinite, and a Hermitian positive definite preconditioner.

    Parameters
    ----------
    apply_matrix: callable
        v -> M v on local vectors of shape (n_local,)
    apply_preconditioner: callable
        v -> K v
    b: ndarray of shape (n_local,)
        the right hand side, -r for the correction equation
    max_iterations: int
    l_tolerance: float
        stop when the (quasi) residual norm falls below l_tolerance
    dynamic: DynamicStopping or None
        when given, also stop when the eigen residual of the updated
        eigenvector stops improving
    exhausted: callable or None
        () -> True when the matvec budget of the solve is exhausted

    Returns
    -------
    sol: ndarray of shape (n_local,)
    info: InnerSolveInfo

    Raises
    ------
    InnerSolveBreakdown
        if the method breaks down before its first update
    """
    info = InnerSolveInfo()
    sol = np.zeros_like(b)
    delta = np.zeros_like(b)
    g = b.copy()

    tau_prev = _norm(op, stats, g)
    info.linear_residual = tau_prev
    if tau_prev == 0.0:
        info.reason = "zero_rhs"
        return sol, info

    if dynamic is not None:
        Msol = np.zeros_like(b)
        Mdelta = np.zeros_like(b)
        eres_prev = np.inf

    d = apply_preconditioner(g)
    rho_prev = _dot(op, stats, g, d)
    theta_prev = 0.0

    for it in range(max_iterations):
        if exhausted is not None and exhausted():
            info.reason = "budget"
            break

        w = apply_matrix(d)
        sigma = _dot(op, stats, d, w)
        if abs(sigma) <= MACHINE_EPS * abs(rho_prev) or not np.isfinite(sigma):
            if it == 0:
                raise InnerSolveBreakdown("d^H M d vanished")
            info.reason = "breakdown"
            break

        alpha = rho_prev / sigma
        if abs(alpha) < MACHINE_EPS or abs(alpha) > 1.0 / MACHINE_EPS:
            if it == 0:
                raise InnerSolveBreakdown(f"step length {abs(alpha):.3e} out of range")
            info.reason = "breakdown"
            break

        g -= alpha * w
        theta = _norm(op, stats, g) / tau_prev
        c = 1.0 / np.sqrt(1.0 + theta**2)
        tau = tau_prev * theta * c
        gamma = c**2 * theta_prev**2
        eta = alpha * c**2

        delta = gamma * delta + eta * d
        sol += delta
        if dynamic is not None:
            Mdelta = gamma * Mdelta + eta * w
            Msol += Mdelta

        info.iterations = it + 1
        info.linear_residual = tau
        stats.num_inner_iterations += 1

        if tau < l_tolerance:
            info.reason = "tolerance"
            break

        if dynamic is not None:
            eres = _eigen_residual_estimate(op, stats, b, sol, Msol, tau, dynamic)
            info.eigen_residual = eres
            if eres < dynamic.e_tolerance:
                info.reason = "eigen_tolerance"
                break
            # the linear system is solved more accurately than the
            # eigenproblem can benefit from
            if tau <= eres or eres > eres_prev:
                info.reason = "stagnation"
                break
            eres_prev = eres

        if rho_prev == 0:
            info.reason = "breakdown"
            break

        z = apply_preconditioner(g)
        rho = _dot(op, stats, g, z)
        beta = rho / rho_prev
        d = z + beta * d

        rho_prev, tau_prev, theta_prev = rho, tau, theta

    if not np.all(np.isfinite(sol)):
        raise InnerSolveBreakdown("non finite correction")

    logger.debug("inner solve stopped after %d iterations (%s), tau=%.3e",
                 info.iterations, info.reason, info.linear_residual)
    return sol, info


def _eigen_residual_estimate(op, stats, b, sol, Msol, tau, dynamic):
    """ Estimate of ||A y - rq(y) y|| for y = (x + t) / ||x + t||.

    With r = -b the residual of x, t orthogonal to x and s = shift - theta:

        ||(A - theta) (x + t)||^2 ~ tau^2 + s^2 ||t||^2 + |r^H t|^2

    and the Rayleigh quotient moves by

        dtheta = (2 Re(r^H t) + t^H M t + s ||t||^2) / (1 + ||t||^2)
    """
    local = np.array([np.vdot(b, sol), np.vdot(sol, Msol), np.vdot(sol, sol)])
    bt, tMt, tt = op.global_sum(local, stats)
    rt = -bt
    tt = float(np.real(tt))
    s = dynamic.shift - dynamic.theta

    dtheta = (2 * np.real(rt) + np.real(tMt) + s * tt) / (1.0 + tt)
    eres2 = (tau**2 + s**2 * tt + abs(rt)**2) / (1.0 + tt) - dtheta**2
    return float(np.sqrt(max(eres2, 0.0)))
