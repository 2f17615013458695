"""
Latent stationary-point model

Each subject curve ``y`` is a zero-mean GP observed with white noise, conditioned
on a zero first derivative at its latent latencies ``t = (t_1, ..., t_K)``:

    y | t, sig2 ~ N(0, K_xx - K_xd K_dd^{-1} K_dx + sig2 I)

Latencies live in search windows ``(a_k, b_k)`` through the r-parametrization
``t_k = a_k + r_k (b_k - a_k)`` with ``r_k = expit(eta_k)``. The logit-latencies
follow a latent ANOVA:

    eta_gks ~ N(beta0_k + beta1_k * [g == 2], sigma2_r_k)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple, Union

import numpy as np
from scipy import linalg
from scipy.special import expit, gammaln, logit

from .errors import ConfigError, NumericalError
from .kernels import (
    cholesky_with_jitter,
    cov_derivative_derivative,
    cov_value_derivative,
    covariance_matrix,
    distance_matrix,
    gaussian_logpdf_chol,
)

ArrayLike = Union[float, Sequence[float], np.ndarray]


@dataclass(frozen=True)
class SearchWindow:
    """Admissible latency range ``(a, b)`` for one stationary point."""

    a: float
    b: float

    def __post_init__(self) -> None:
        a = float(self.a)
        b = float(self.b)
        if not (np.isfinite(a) and np.isfinite(b)):
            raise ConfigError(f"Search window bounds must be finite, got ({self.a}, {self.b})")
        if a >= b:
            raise ConfigError(f"Search window requires a < b, got a={a}, b={b}")

    @property
    def width(self) -> float:
        return float(self.b - self.a)

    def to_latency(self, r: ArrayLike) -> np.ndarray:
        return r_to_latency(r, self.a, self.b)

    def to_r(self, latency: ArrayLike) -> np.ndarray:
        return change_to_r_latency(latency, self.a, self.b)


def _check_bounds(a: float, b: float) -> Tuple[float, float]:
    a = float(a)
    b = float(b)
    if a >= b:
        raise ConfigError(f"Search window requires a < b, got a={a}, b={b}")
    return a, b


def r_to_latency(r: ArrayLike, a: float, b: float) -> np.ndarray:
    """Map ``r`` in (0, 1) to a latency in ``(a, b)``."""
    a, b = _check_bounds(a, b)
    return a + np.asarray(r, dtype=np.float64) * (b - a)


def change_to_r_latency(latency: ArrayLike, a: float, b: float) -> np.ndarray:
    """Map a latency in ``(a, b)`` back to its r-value in (0, 1)."""
    a, b = _check_bounds(a, b)
    return (np.asarray(latency, dtype=np.float64) - a) / (b - a)


def eta_to_r(eta: ArrayLike) -> np.ndarray:
    return expit(np.asarray(eta, dtype=np.float64))


def r_to_eta(r: ArrayLike) -> np.ndarray:
    return logit(np.asarray(r, dtype=np.float64))


def eta_to_latency(eta: np.ndarray, windows: Sequence[SearchWindow]) -> np.ndarray:
    """``eta`` of shape (K, ...) to latencies using window k for row k."""
    eta = np.asarray(eta, dtype=np.float64)
    out = np.empty_like(eta)
    for k, win in enumerate(windows):
        out[k] = win.to_latency(expit(eta[k]))
    return out


class DerivativeGP:
    """
    Derivative-constrained GP likelihood for a fixed hyperparameter pair.

    ``K_xx`` depends only on ``(tau, h)`` and the distance matrix, so it is built
    once and reused for every latency / noise proposal of an E-step.
    """

    def __init__(
        self,
        x: np.ndarray,
        H0: np.ndarray,
        tau: float,
        h: float,
        *,
        jitter: float = 1e-8,
    ):
        self.x = np.asarray(x, dtype=np.float64).ravel()
        H0 = np.asarray(H0, dtype=np.float64)
        n = self.x.shape[0]
        if H0.shape != (n, n):
            raise ConfigError(f"H0 must have shape ({n}, {n}), got {H0.shape}")
        self.tau = float(tau)
        self.h = float(h)
        self.jitter = float(jitter)
        self.K_xx = covariance_matrix(H0, self.tau, self.h, power=2.0, jitter=self.jitter)

    @property
    def n(self) -> int:
        return int(self.x.shape[0])

    def conditional_covariance(self, t: np.ndarray, sig2: float) -> np.ndarray:
        """Marginal covariance of ``y`` given ``f'(t) = 0`` and noise ``sig2``."""
        t = np.atleast_1d(np.asarray(t, dtype=np.float64))
        K_xd = cov_value_derivative(distance_matrix(self.x, t), self.tau, self.h)
        K_dd = cov_derivative_derivative(distance_matrix(t), self.tau, self.h)
        K_dd[np.diag_indices_from(K_dd)] += self.jitter * K_dd[0, 0]
        L_dd = cholesky_with_jitter(K_dd)
        A = linalg.solve_triangular(L_dd, K_xd.T, lower=True, check_finite=False)
        S = self.K_xx - A.T @ A
        S = 0.5 * (S + S.T)
        S[np.diag_indices_from(S)] += float(sig2)
        return S

    def loglik(self, y: np.ndarray, t: np.ndarray, sig2: float) -> float:
        """
        ``log p(y | t, sig2, tau, h)``.

        Raises NumericalError when the covariance cannot be factorized even
        after one regularized retry.
        """
        if not (np.isfinite(sig2) and sig2 > 0):
            raise NumericalError(f"sig2 must be finite and > 0, got {sig2}")
        S = self.conditional_covariance(t, sig2)
        L = cholesky_with_jitter(S)
        return gaussian_logpdf_chol(np.asarray(y, dtype=np.float64), L)

    def safe_loglik(self, y: np.ndarray, t: np.ndarray, sig2: float) -> float:
        """Like :meth:`loglik` but returns ``-inf`` for numerical failures (proposal use)."""
        try:
            value = self.loglik(y, t, sig2)
        except NumericalError:
            return -np.inf
        return value if np.isfinite(value) else -np.inf


# Prior log-densities


def normal_logpdf(x: ArrayLike, mean: ArrayLike, var: ArrayLike) -> float:
    x = np.asarray(x, dtype=np.float64)
    d = x - np.asarray(mean, dtype=np.float64)
    var = np.asarray(var, dtype=np.float64)
    return float(np.sum(-0.5 * d * d / var - 0.5 * np.log(2.0 * np.pi * var)))


def inverse_gamma_logpdf(x: float, shape: float, rate: float) -> float:
    if not x > 0:
        return -np.inf
    return float(shape * np.log(rate) - gammaln(shape) - (shape + 1.0) * np.log(x) - rate / x)
