import dataclasses
import logging
import math

from .presets import Method


logger = logging.getLogger(__name__)


@dataclasses.dataclass
class _Sample:
    elapsed: float = 0.0
    matvecs: int = 0
    progress: float = 0.0

    @property
    def cost(self):
        """ Seconds per converged eigenpair, inf while nothing was measured.
        """
        if self.progress <= 0:
            return math.inf
        return self.elapsed / self.progress


class MethodSelector:
    """ Switch between the "min time" and the "min matvecs" presets
    depending on which one currently costs less time per converged
    eigenpair.

    Progress is measured in eigenpairs: a locked pair counts for one, and a
    reduction of the leading residual norm counts for the fraction of the
    digits still needed to reach the tolerance. Decisions are only taken at
    restart boundaries. Each method is first sampled for `sample_restarts`
    restarts; afterwards the running method is replaced as soon as its cost
    exceeds `switch_ratio` times the last cost measured for the other one.
    """
    def __init__(self, methods=(Method.JDQMR_ETOL, Method.GD_OLSEN_PLUSK),
                 sample_restarts=2, switch_ratio=1.5):
        self.methods = methods
        self.sample_restarts = sample_restarts
        self.switch_ratio = switch_ratio

        self.current = methods[0]
        self._samples = {m: None for m in methods}
        self._running = _Sample()
        self._restarts = 0
        self._start = None

    def _snapshot(self, stats, num_converged, lead_residual):
        return (stats.elapsed_time, stats.num_matvecs, num_converged, lead_residual)

    def start(self, stats, num_converged, lead_residual):
        self._start = self._snapshot(stats, num_converged, lead_residual)

    def _progress(self, start, end, tol):
        converged = end[2] - start[2]
        r0, r1 = start[3], end[3]
        if r0 is None or r1 is None or r0 <= 0 or r1 <= 0 or tol <= 0:
            return float(converged)
        digits_needed = max(math.log10(r0 / tol), 1.0)
        return converged + max(math.log10(r0 / r1), 0.0) / digits_needed

    def at_restart(self, stats, num_converged, lead_residual, tol):
        """ Account the work done since the last call and return the method
        to use from now on (None if unchanged).
        """
        end = self._snapshot(stats, num_converged, lead_residual)
        if self._start is None:
            self._start = end
            return None

        start = self._start
        self._running.elapsed += end[0] - start[0]
        self._running.matvecs += end[1] - start[1]
        self._running.progress += self._progress(start, end, tol)
        self._start = end
        self._restarts += 1

        if self._restarts < self.sample_restarts:
            return None

        self._samples[self.current] = self._running
        other = self.methods[1] if self.current == self.methods[0] else self.methods[0]
        other_sample = self._samples[other]

        switch = (
            other_sample is None
            or self._running.cost > self.switch_ratio * other_sample.cost
        )
        self._running = _Sample()
        self._restarts = 0
        if not switch:
            return None

        logger.info("switching method from %s to %s (%.3g s per pair)",
                    self.current.name, other.name, self._samples[self.current].cost)
        self.current = other
        return other
