from davidson.presets import Method
from davidson.selector import MethodSelector

from .common import new_stats


def _advance(stats, seconds, matvecs):
    stats.elapsed_time += seconds
    stats.num_matvecs += matvecs


class TestMethodSelector:
    def test_samples_both_methods_first(self):
        ## Given
        selector = MethodSelector(sample_restarts=1)
        stats = new_stats()
        selector.start(stats, 0, 1.0)

        ## When
        _advance(stats, 1.0, 10)
        switched = selector.at_restart(stats, 1, 1.0, 1e-10)

        ## Then
        # the other method was never measured
        assert switched == Method.GD_OLSEN_PLUSK
        assert selector.current == Method.GD_OLSEN_PLUSK

    def test_keeps_cheaper_method(self):
        ## Given
        selector = MethodSelector(sample_restarts=1)
        stats = new_stats()
        selector.start(stats, 0, None)

        ## When
        # JDQMR: one pair per second
        _advance(stats, 1.0, 10)
        selector.at_restart(stats, 1, None, 1e-10)
        # GD+k: one pair in ten seconds
        _advance(stats, 10.0, 10)
        switched = selector.at_restart(stats, 2, None, 1e-10)

        ## Then
        assert switched == Method.JDQMR_ETOL

        # JDQMR keeps its pace: no switch
        _advance(stats, 1.0, 10)
        assert selector.at_restart(stats, 3, None, 1e-10) is None
        assert selector.current == Method.JDQMR_ETOL

    def test_residual_reduction_counts_as_progress(self):
        ## Given
        selector = MethodSelector(sample_restarts=1)
        stats = new_stats()

        ## When
        selector.start(stats, 0, 1.0)
        _advance(stats, 1.0, 10)
        selector.at_restart(stats, 0, 1e-5, 1e-10)

        ## Then
        # 5 of the 10 digits needed
        sample = selector._samples[Method.JDQMR_ETOL]
        assert abs(sample.progress - 0.5) < 1e-12
        assert abs(sample.cost - 2.0) < 1e-12
