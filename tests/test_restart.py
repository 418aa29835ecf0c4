import numpy as np

from davidson.params import RestartingParams, RestartScheme, Target
from davidson.projection import RitzDecomposition
from davidson.restart import RestartManager, orthonormal_columns


def _ritz(m, seed=0):
    rng = np.random.default_rng(seed)
    H = rng.standard_normal((m, m))
    return RitzDecomposition.from_h(H + H.T, Target.SMALLEST)


def _span_error(C, U):
    """ Distance of the columns of U to the span of the orthonormal C.
    """
    return np.linalg.norm(U - C @ (C.T @ U))


class TestOrthonormalColumns:
    def test_skips_dependent(self):
        ## Given
        a = np.array([1.0, 0.0, 0.0])
        b = np.array([1.0, 1.0, 0.0])
        columns = np.column_stack([a, 2 * a, b])

        ## When
        C = orthonormal_columns(columns)

        ## Then
        assert C.shape == (3, 2)
        np.testing.assert_allclose(C.T @ C, np.eye(2), atol=1e-14)

    def test_against_and_max_columns(self):
        against = np.eye(4)[:, :1]
        C = orthonormal_columns(np.eye(4), against=against, max_columns=2)
        np.testing.assert_allclose(C, np.eye(4)[:, 1:3])


class TestRestartManager:
    def test_thick_keeps_leading_vectors(self):
        ## Given
        ritz = _ritz(8)
        manager = RestartManager(RestartingParams(max_prev_retain=0), 4, Target.SMALLEST)

        ## When
        C = manager.restart_coefficients(ritz, 2)

        ## Then
        assert C.shape == (8, 4)
        np.testing.assert_allclose(C.T @ C, np.eye(4), atol=1e-12)
        assert _span_error(C, ritz.basis_coefficients[:, :4]) < 1e-12

    def test_required_vectors_override_restart_size(self):
        ritz = _ritz(8)
        manager = RestartManager(RestartingParams(max_prev_retain=0), 2, Target.SMALLEST)
        C = manager.restart_coefficients(ritz, 5)
        assert C.shape == (8, 5)

    def test_previous_directions(self):
        ## Given
        ritz = _ritz(8)
        manager = RestartManager(RestartingParams(max_prev_retain=2), 4, Target.SMALLEST)
        prev = np.random.default_rng(1).standard_normal((6, 3))

        ## When
        C = manager.restart_coefficients(ritz, 1, prev, room=3)

        ## Then
        # 4 Ritz vectors and 2 previous directions
        assert C.shape == (8, 6)
        np.testing.assert_allclose(C.T @ C, np.eye(6), atol=1e-12)
        P = np.zeros((8, 2))
        P[:6] = prev[:, :2]
        assert _span_error(C, P) < 1e-10

    def test_room_limits_previous_directions(self):
        ritz = _ritz(8)
        manager = RestartManager(RestartingParams(max_prev_retain=2), 4, Target.SMALLEST)
        prev = np.random.default_rng(1).standard_normal((6, 3))
        C = manager.restart_coefficients(ritz, 1, prev, room=1)
        assert C.shape == (8, 5)

    def test_dtr_keeps_both_ends(self):
        ## Given
        values = np.array([1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0, 8.0, 100.0, 1000.0])
        manager = RestartManager(RestartingParams(scheme=RestartScheme.DTR), 4,
                                 Target.SMALLEST)

        ## When/Then
        # keeping 1000 and 100 separates the wanted values from the rest
        np.testing.assert_array_equal(manager.kept_indices(values, 1), [0, 1, 8, 9])
        np.testing.assert_array_equal(manager.kept_indices(values, 3), [0, 1, 2, 9])

    def test_dtr_interior_target_is_thick(self):
        values = np.array([1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0, 8.0, 100.0, 1000.0])
        manager = RestartManager(RestartingParams(scheme=RestartScheme.DTR), 4,
                                 Target.CLOSEST_ABS)
        np.testing.assert_array_equal(manager.kept_indices(values, 1), [0, 1, 2, 3])

    def test_dtr_adapts_previous_directions(self):
        ## Given
        manager = RestartManager(
            RestartingParams(scheme=RestartScheme.DTR, max_prev_retain=1), 4,
            Target.SMALLEST,
        )

        ## When/Then
        assert manager.prev_retain(1.0, 10) == 1
        # slow progress
        assert manager.prev_retain(0.9, 10) == 2
        # fast progress
        assert manager.prev_retain(0.01, 10) == 1
        assert manager.prev_retain(0.009, 0) == 0
