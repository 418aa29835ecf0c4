import numpy as np
import pytest

from davidson.params import Target
from davidson.utils import (
    current_shift, make_rng, rand_block, target_order,
)


class TestRandom:
    @pytest.mark.parametrize("dtype", [np.float64, np.complex128])
    def test_rand_block(self, dtype):
        ## When
        X = rand_block(7, 3, dtype, np.random.default_rng(0))

        ## Then
        assert X.shape == (7, 3)
        assert X.dtype == dtype
        if dtype == np.complex128:
            assert np.abs(X.imag).max() > 0

    def test_make_rng_differs_per_participant(self):
        ## Given
        a = make_rng(42, proc_id=0).standard_normal(5)
        b = make_rng(42, proc_id=1).standard_normal(5)
        c = make_rng(42, proc_id=0).standard_normal(5)

        ## Then
        np.testing.assert_array_equal(a, c)
        assert not np.allclose(a, b)


class TestTargetOrder:
    values = np.array([3.0, -1.0, 5.0, 0.5, 2.0])

    def test_smallest(self):
        idx = target_order(self.values, Target.SMALLEST)
        np.testing.assert_array_equal(self.values[idx], [-1.0, 0.5, 2.0, 3.0, 5.0])

    def test_largest(self):
        idx = target_order(self.values, Target.LARGEST)
        np.testing.assert_array_equal(self.values[idx], [5.0, 3.0, 2.0, 0.5, -1.0])

    def test_closest_geq(self):
        ## When
        idx = target_order(self.values, Target.CLOSEST_GEQ, 1.0)

        ## Then
        # values >= shift come first, by increasing distance
        np.testing.assert_array_equal(self.values[idx][:3], [2.0, 3.0, 5.0])
        np.testing.assert_array_equal(self.values[idx][3:], [0.5, -1.0])

    def test_closest_leq(self):
        idx = target_order(self.values, Target.CLOSEST_LEQ, 1.0)
        np.testing.assert_array_equal(self.values[idx][:2], [0.5, -1.0])

    def test_closest_abs(self):
        idx = target_order(self.values, Target.CLOSEST_ABS, 2.4)
        np.testing.assert_array_equal(self.values[idx][:3], [2.0, 3.0, 0.5])

    def test_largest_abs(self):
        idx = target_order(self.values, Target.LARGEST_ABS, 2.0)
        np.testing.assert_array_equal(self.values[idx][:2], [-1.0, 5.0])

    def test_missing_shift(self):
        with pytest.raises(ValueError):
            target_order(self.values, Target.CLOSEST_ABS)


class TestCurrentShift:
    def test_one_shift_per_eigenvalue(self):
        shifts = (1.0, 2.0, 3.0)
        assert current_shift(Target.CLOSEST_ABS, shifts, 0) == 1.0
        assert current_shift(Target.CLOSEST_ABS, shifts, 2) == 3.0
        # the last shift is reused
        assert current_shift(Target.CLOSEST_ABS, shifts, 5) == 3.0

    def test_extreme_targets(self):
        assert current_shift(Target.SMALLEST, (), 3) is None
        assert current_shift(Target.LARGEST, (4.0,), 0) == 4.0
