"""
Kernel / covariance builder

Powered-exponential covariance on a precomputed signed distance matrix, plus the
first-derivative cross-covariances needed to condition a GP on ``f'(t) = 0``.

    k(d) = tau * exp(-(|d| / h) ** p)

For ``p = 2`` the process is mean-square differentiable and

    cov(f(x), f'(t))   = k(x - t) * 2 (x - t) / h**2
    cov(f'(t), f'(t')) = k(t - t') * (2 / h**2 - 4 (t - t')**2 / h**4)

All Cholesky factorizations go through :func:`cholesky_with_jitter`, which adds a
diagonal regularizer once before giving up with :class:`NumericalError`.
"""

from __future__ import annotations

from typing import Optional

import numpy as np
from scipy import linalg

from .errors import NumericalError


def _check_hyperparameters(tau: float, h: float) -> None:
    if not (np.isfinite(tau) and tau > 0):
        raise NumericalError(f"tau must be finite and > 0, got {tau}")
    if not (np.isfinite(h) and h > 0):
        raise NumericalError(f"h must be finite and > 0, got {h}")


def distance_matrix(x: np.ndarray, y: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Signed pairwise differences ``x[i] - y[j]``.

    Parameters
    ----------
    x : (n,) array
    y : (m,) array, optional
        Defaults to ``x`` (square, antisymmetric result).

    Returns
    -------
    (n, m) float64 array
    """
    x = np.asarray(x, dtype=np.float64).ravel()
    y = x if y is None else np.asarray(y, dtype=np.float64).ravel()
    return x[:, None] - y[None, :]


def powered_exponential_kernel(dist: np.ndarray, tau: float, h: float, power: float = 2.0) -> np.ndarray:
    """``tau * exp(-(|d|/h)**power)`` evaluated elementwise on ``dist``."""
    tau = float(tau)
    h = float(h)
    _check_hyperparameters(tau, h)
    power = float(power)
    if not (0.0 < power <= 2.0):
        raise NumericalError(f"power must satisfy 0 < power <= 2, got {power}")
    d = np.abs(np.asarray(dist, dtype=np.float64))
    return tau * np.exp(-((d / h) ** power))


def covariance_matrix(
    dist: np.ndarray,
    tau: float,
    h: float,
    power: float = 2.0,
    jitter: float = 1e-8,
) -> np.ndarray:
    """
    Square covariance matrix from a square distance matrix.

    The result is symmetrized and carries ``jitter * tau`` on the diagonal so
    that downstream Cholesky factorizations succeed for nearby grid points.
    """
    dist = np.asarray(dist, dtype=np.float64)
    if dist.ndim != 2 or dist.shape[0] != dist.shape[1]:
        raise NumericalError(f"Expected a square distance matrix, got shape {dist.shape}")
    K = powered_exponential_kernel(dist, tau, h, power)
    K = 0.5 * (K + K.T)
    K[np.diag_indices_from(K)] += float(jitter) * float(tau)
    return K


def cov_value_derivative(dist_xt: np.ndarray, tau: float, h: float) -> np.ndarray:
    """
    ``cov(f(x_i), f'(t_j))`` for the squared-exponential (p = 2) kernel.

    ``dist_xt`` holds ``x_i - t_j``.
    """
    _check_hyperparameters(float(tau), float(h))
    d = np.asarray(dist_xt, dtype=np.float64)
    h2 = float(h) ** 2
    return float(tau) * np.exp(-(d * d) / h2) * (2.0 * d / h2)


def cov_derivative_derivative(dist_tt: np.ndarray, tau: float, h: float) -> np.ndarray:
    """``cov(f'(t_i), f'(t_j))`` for the squared-exponential (p = 2) kernel."""
    _check_hyperparameters(float(tau), float(h))
    d = np.asarray(dist_tt, dtype=np.float64)
    h2 = float(h) ** 2
    return float(tau) * np.exp(-(d * d) / h2) * (2.0 / h2 - 4.0 * d * d / (h2 * h2))


def cholesky_with_jitter(K: np.ndarray, jitter: float = 1e-6, retries: int = 1) -> np.ndarray:
    """
    Lower Cholesky factor of ``K``.

    On failure, ``jitter * mean(diag(K))`` is added to the diagonal (growing
    tenfold per attempt) up to ``retries`` times before raising NumericalError.
    """
    K = np.asarray(K, dtype=np.float64)
    if not np.all(np.isfinite(K)):
        raise NumericalError("Covariance matrix contains non-finite values.")
    scale = float(np.mean(np.abs(np.diag(K)))) or 1.0
    eye = np.eye(K.shape[0])
    bump = float(jitter)
    current = K
    for attempt in range(int(retries) + 1):
        try:
            return linalg.cholesky(current, lower=True, check_finite=False)
        except linalg.LinAlgError:
            if attempt == int(retries):
                break
            current = K + bump * scale * eye
            bump *= 10.0
    raise NumericalError(f"Covariance matrix of size {K.shape[0]} is not positive definite after jitter.")


def gaussian_logpdf_chol(y: np.ndarray, L: np.ndarray) -> float:
    """``log N(y | 0, L L^T)`` given the lower Cholesky factor ``L``."""
    alpha = linalg.solve_triangular(L, y, lower=True, check_finite=False)
    n = y.shape[0]
    return float(-0.5 * alpha @ alpha - np.sum(np.log(np.diag(L))) - 0.5 * n * np.log(2.0 * np.pi))
