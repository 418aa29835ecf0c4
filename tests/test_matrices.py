import numpy as np
import numpy.linalg as nlin

from davidson.matrices import (
    diagonal, diagonal_pencil, hermitian_with_spectrum, jacobi_preconditioner,
    laplace, laplace_eigen,
)


class TestMatrices:
    def test_laplace_5(self):
        ## Given
        r_m = np.array(
            [[-2.,  1.,  0.,  0.,  0.],
             [ 1., -2.,  1.,  0.,  0.],
             [ 0.,  1., -2.,  1.,  0.],
             [ 0.,  0.,  1., -2.,  1.],
             [ 0.,  0.,  0.,  1., -2.]]
        )

        ## When/Then
        m = laplace(5)
        np.testing.assert_array_almost_equal(m.todense(), r_m)

    def test_laplace_eivals(self):
        ## Given
        m = laplace(7).todense()
        r_eivals = np.sort(nlin.eigvalsh(m))[::-1]

        ## When/Then
        np.testing.assert_array_almost_equal(laplace_eigen(7), r_eivals)

    def test_diagonal_pencil(self):
        ## When
        A, B, r_eivals = diagonal_pencil(6)

        ## Then
        a, b = A.diagonal(), B.diagonal()
        np.testing.assert_allclose(np.sort(a / b), r_eivals)
        assert np.all(b > 0)

    def test_hermitian_with_spectrum(self):
        ## Given
        r_eivals = np.array([-1.0, 0.5, 2.0, 3.0])

        ## When
        A = hermitian_with_spectrum(r_eivals, np.complex128, np.random.default_rng(1))

        ## Then
        np.testing.assert_allclose(A, A.conj().T)
        np.testing.assert_allclose(nlin.eigvalsh(A), r_eivals, atol=1e-12)

    def test_jacobi_preconditioner_is_shifted_inverse(self):
        ## Given
        A = diagonal(np.arange(1.0, 6.0))
        K = jacobi_preconditioner(A)
        X = np.ones((5, 2))

        ## When
        Y = K(X, [0.0, 0.5])

        ## Then
        np.testing.assert_allclose(Y[:, 0], 1 / np.arange(1.0, 6.0))
        np.testing.assert_allclose(Y[:, 1], 1 / (np.arange(1.0, 6.0) - 0.5))
