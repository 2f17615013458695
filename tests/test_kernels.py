import numpy as np
import pytest

from erplatency.errors import NumericalError
from erplatency.kernels import (
    cholesky_with_jitter,
    cov_derivative_derivative,
    cov_value_derivative,
    covariance_matrix,
    distance_matrix,
    gaussian_logpdf_chol,
    powered_exponential_kernel,
)


def test_distance_matrix_is_signed_and_antisymmetric():
    x = np.array([0.0, 0.25, 1.0])
    H0 = distance_matrix(x)
    assert H0.shape == (3, 3)
    assert H0[2, 0] == pytest.approx(1.0)
    assert H0[0, 2] == pytest.approx(-1.0)
    np.testing.assert_allclose(H0, -H0.T)


def test_distance_matrix_rectangular():
    d = distance_matrix(np.array([0.0, 1.0]), np.array([0.5]))
    np.testing.assert_allclose(d, [[-0.5], [0.5]])


@pytest.mark.parametrize("tau,h,power", [(1.0, 0.2, 2.0), (3.5, 1.0, 1.5), (0.01, 5.0, 1.0)])
def test_covariance_is_symmetric_and_positive_definite(tau, h, power):
    x = np.linspace(0.0, 1.0, 40)
    K = covariance_matrix(distance_matrix(x), tau, h, power=power)
    np.testing.assert_allclose(K, K.T, atol=1e-12)
    eig = np.linalg.eigvalsh(K)
    assert np.all(eig > -1e-10 * tau)
    cholesky_with_jitter(K)


def test_kernel_diagonal_equals_tau():
    x = np.linspace(0.0, 1.0, 5)
    K = powered_exponential_kernel(distance_matrix(x), tau=2.0, h=0.3)
    np.testing.assert_allclose(np.diag(K), 2.0)


@pytest.mark.parametrize("tau,h", [(1.0, 0.0), (1.0, -0.1), (0.0, 1.0), (np.nan, 1.0)])
def test_invalid_hyperparameters_raise(tau, h):
    with pytest.raises(NumericalError):
        powered_exponential_kernel(np.zeros((2, 2)), tau, h)


def test_invalid_power_raises():
    with pytest.raises(NumericalError):
        powered_exponential_kernel(np.zeros((2, 2)), 1.0, 1.0, power=2.5)


def test_value_derivative_matches_finite_difference():
    tau, h, eps = 1.7, 0.4, 1e-6
    x = np.linspace(-1.0, 1.0, 11)
    t = 0.3
    k = lambda tt: powered_exponential_kernel(x - tt, tau, h)
    numeric = (k(t + eps) - k(t - eps)) / (2.0 * eps)
    analytic = cov_value_derivative(x - t, tau, h)
    np.testing.assert_allclose(analytic, numeric, rtol=1e-5, atol=1e-7)


def test_derivative_derivative_matches_finite_difference():
    tau, h, eps = 0.9, 0.5, 1e-4
    t, s = 0.2, 0.45
    k = lambda a, b: powered_exponential_kernel(np.array(a - b), tau, h)
    numeric = (k(t + eps, s + eps) - k(t + eps, s - eps) - k(t - eps, s + eps) + k(t - eps, s - eps)) / (4 * eps * eps)
    analytic = cov_derivative_derivative(np.array(t - s), tau, h)
    assert float(analytic) == pytest.approx(float(numeric), rel=1e-4)


def test_cholesky_retry_regularizes_singular_matrix():
    v = np.array([1.0, 2.0, 3.0])
    K = np.outer(v, v)  # rank one
    L = cholesky_with_jitter(K, jitter=1e-6, retries=1)
    assert np.all(np.isfinite(L))


def test_cholesky_raises_for_indefinite_matrix():
    K = np.array([[1.0, 0.0], [0.0, -5.0]])
    with pytest.raises(NumericalError):
        cholesky_with_jitter(K, jitter=1e-8, retries=1)


def test_cholesky_rejects_non_finite():
    with pytest.raises(NumericalError):
        cholesky_with_jitter(np.array([[np.inf]]))


def test_gaussian_logpdf_matches_scipy():
    from scipy.stats import multivariate_normal

    rng = np.random.default_rng(0)
    A = rng.standard_normal((4, 4))
    S = A @ A.T + 4 * np.eye(4)
    y = rng.standard_normal(4)
    L = np.linalg.cholesky(S)
    expected = multivariate_normal(mean=np.zeros(4), cov=S).logpdf(y)
    assert gaussian_logpdf_chol(y, L) == pytest.approx(expected)
