import numpy as np
import pytest

from erplatency.errors import ConfigError, NumericalError
from erplatency.kernels import distance_matrix
from erplatency.latent_model import (
    DerivativeGP,
    SearchWindow,
    change_to_r_latency,
    eta_to_latency,
    eta_to_r,
    inverse_gamma_logpdf,
    r_to_eta,
    r_to_latency,
)


@pytest.mark.parametrize("a,b", [(0.0, 0.5), (-200.0, 800.0), (0.5, 0.5000001), (10.0, 12.0)])
def test_r_latency_round_trip(a, b):
    r = np.linspace(0.001, 0.999, 37)
    lat = r_to_latency(r, a, b)
    assert np.all(lat > a) and np.all(lat < b)
    np.testing.assert_allclose(change_to_r_latency(lat, a, b), r, rtol=1e-9, atol=1e-6)


def test_change_to_r_latency_scalar():
    assert float(change_to_r_latency(0.15, 0.0, 0.5)) == pytest.approx(0.3)
    assert float(change_to_r_latency(0.85, 0.5, 1.0)) == pytest.approx(0.7)


@pytest.mark.parametrize("a,b", [(1.0, 1.0), (2.0, 1.0)])
def test_bad_window_raises(a, b):
    with pytest.raises(ConfigError):
        r_to_latency(0.5, a, b)
    with pytest.raises(ConfigError):
        change_to_r_latency(1.5, a, b)
    with pytest.raises(ConfigError):
        SearchWindow(a, b)


def test_search_window_helpers():
    w = SearchWindow(0.5, 1.0)
    assert w.width == pytest.approx(0.5)
    assert float(w.to_latency(0.7)) == pytest.approx(0.85)
    assert float(w.to_r(0.85)) == pytest.approx(0.7)


def test_eta_round_trip_and_latency_mapping():
    r = np.array([[0.3, 0.2], [0.7, 0.9]])
    eta = r_to_eta(r)
    np.testing.assert_allclose(eta_to_r(eta), r)
    windows = [SearchWindow(0.0, 0.5), SearchWindow(0.5, 1.0)]
    lat = eta_to_latency(eta, windows)
    np.testing.assert_allclose(lat, [[0.15, 0.1], [0.85, 0.95]])


def test_inverse_gamma_logpdf():
    from scipy.stats import invgamma

    assert inverse_gamma_logpdf(0.4, 2.0, 0.5) == pytest.approx(invgamma(a=2.0, scale=0.5).logpdf(0.4))
    assert inverse_gamma_logpdf(0.0, 2.0, 0.5) == -np.inf


def _bump(x, centre, width=0.1):
    return np.exp(-0.5 * ((x - centre) / width) ** 2)


def test_loglik_prefers_true_stationary_point():
    x = np.linspace(0.0, 1.0, 40)
    rng = np.random.default_rng(3)
    y = _bump(x, 0.5) + 0.02 * rng.standard_normal(x.size)
    gp = DerivativeGP(x, distance_matrix(x), tau=1.0, h=0.15)
    ll_true = gp.loglik(y, np.array([0.5]), 0.02 ** 2)
    ll_off = gp.loglik(y, np.array([0.35]), 0.02 ** 2)
    assert ll_true > ll_off


def test_conditional_covariance_shape_and_symmetry():
    x = np.linspace(0.0, 1.0, 15)
    gp = DerivativeGP(x, distance_matrix(x), tau=2.0, h=0.3)
    S = gp.conditional_covariance(np.array([0.2, 0.8]), 0.01)
    assert S.shape == (15, 15)
    np.testing.assert_allclose(S, S.T, atol=1e-12)
    assert np.all(np.linalg.eigvalsh(S) > 0)


def test_coincident_latencies_are_regularized():
    x = np.linspace(0.0, 1.0, 15)
    gp = DerivativeGP(x, distance_matrix(x), tau=1.0, h=0.3)
    y = np.sin(2 * np.pi * x)
    assert np.isfinite(gp.loglik(y, np.array([0.4, 0.4]), 0.01))


def test_invalid_noise_raises_but_safe_loglik_rejects():
    x = np.linspace(0.0, 1.0, 10)
    gp = DerivativeGP(x, distance_matrix(x), tau=1.0, h=0.3)
    y = np.zeros(10)
    with pytest.raises(NumericalError):
        gp.loglik(y, np.array([0.5]), -1.0)
    assert gp.safe_loglik(y, np.array([0.5]), -1.0) == -np.inf


def test_distance_matrix_shape_is_checked():
    x = np.linspace(0.0, 1.0, 10)
    with pytest.raises(ConfigError):
        DerivativeGP(x, np.zeros((9, 9)), tau=1.0, h=0.3)
