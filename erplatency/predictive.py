"""
Posterior predictive curve reconstruction.

For every posterior draw ``(t, sig2)`` the GP is conditioned jointly on the
noisy observations and on ``f'(t) = 0``:

    z = [y; 0],   C = [[K_xx + sig2 I, K_xd], [K_dx, K_dd]]
    f* | z ~ N(K_*z C^{-1} z, K_** - K_*z C^{-1} K_z*)

and one curve is drawn on ``x_test``. Draws are independent given their inputs,
so they are farmed out with joblib when ``n_jobs != 1``. Each draw gets its own
child ``SeedSequence``, which keeps results identical for any ``n_jobs``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from joblib import Parallel, delayed
from scipy import linalg

from .errors import ConfigError
from .kernels import (
    cholesky_with_jitter,
    cov_derivative_derivative,
    cov_value_derivative,
    covariance_matrix,
    distance_matrix,
    powered_exponential_kernel,
)


@dataclass
class PredictiveBundle:
    """Pointwise summaries, the raw ensemble of predictive curves and the draws behind them."""

    x_test: np.ndarray  # (m,)
    mean: np.ndarray  # (m,)
    lower: np.ndarray  # (m,)
    upper: np.ndarray  # (m,)
    draws: np.ndarray  # (n_draws, m)
    t_draws: np.ndarray  # (n_draws, K) latency draws, row i produced draws[i]
    sig2_draws: np.ndarray  # (n_draws,)
    lower_pct: float = 2.5
    upper_pct: float = 97.5


def conditional_moments(
    y: np.ndarray,
    x: np.ndarray,
    x_test: np.ndarray,
    t: np.ndarray,
    sig2: float,
    tau: float,
    h: float,
    *,
    jitter: float = 1e-8,
) -> Tuple[np.ndarray, np.ndarray]:
    """Mean ``(m,)`` and covariance ``(m, m)`` of ``f(x_test)`` given ``y`` and ``f'(t) = 0``."""
    t = np.atleast_1d(np.asarray(t, dtype=np.float64))
    K = t.shape[0]

    K_xx = covariance_matrix(distance_matrix(x), tau, h, jitter=jitter)
    K_xx[np.diag_indices_from(K_xx)] += float(sig2)
    K_xd = cov_value_derivative(distance_matrix(x, t), tau, h)
    K_dd = cov_derivative_derivative(distance_matrix(t), tau, h)
    K_dd[np.diag_indices_from(K_dd)] += jitter * K_dd[0, 0]
    C = np.block([[K_xx, K_xd], [K_xd.T, K_dd]])

    K_sx = powered_exponential_kernel(distance_matrix(x_test, x), tau, h)
    K_sd = cov_value_derivative(distance_matrix(x_test, t), tau, h)
    K_sz = np.hstack([K_sx, K_sd])
    K_ss = covariance_matrix(distance_matrix(x_test), tau, h, jitter=jitter)

    L = cholesky_with_jitter(C)
    z = np.concatenate([y, np.zeros(K)])
    alpha = linalg.cho_solve((L, True), z, check_finite=False)
    mean = K_sz @ alpha
    V = linalg.solve_triangular(L, K_sz.T, lower=True, check_finite=False)
    cov = K_ss - V.T @ V
    cov = 0.5 * (cov + cov.T)
    return mean, cov


def _predictive_draw(
    y: np.ndarray,
    x: np.ndarray,
    x_test: np.ndarray,
    t: np.ndarray,
    sig2: float,
    tau: float,
    h: float,
    jitter: float,
    seed: np.random.SeedSequence,
) -> np.ndarray:
    mean, cov = conditional_moments(y, x, x_test, t, sig2, tau, h, jitter=jitter)
    rng = np.random.default_rng(seed)
    # eigh tolerates the near-singular posterior covariance at training inputs
    return rng.multivariate_normal(mean, cov, method="eigh", check_valid="ignore")


def get_pi_t_sig(
    y: np.ndarray,
    x: np.ndarray,
    x_test: np.ndarray,
    t_draws: np.ndarray,
    sig2_draws: np.ndarray,
    tau: float,
    h: float,
    *,
    lower_pct: float = 2.5,
    upper_pct: float = 97.5,
    seed: Optional[int] = None,
    n_jobs: int = 1,
    jitter: float = 1e-8,
) -> PredictiveBundle:
    """
    Posterior predictive bundle for one curve from latency and noise draws.

    Parameters
    ----------
    y : (n,) array
        Observed curve on ``x``.
    x, x_test : 1-D arrays
        Training and test input grids.
    t_draws : (n_draws, K) or (n_draws,) array
        Latency draws (one column per stationary point).
    sig2_draws : (n_draws,) array
        Noise variance draws, paired row-wise with ``t_draws``.
    tau, h : float
        Fixed kernel hyperparameters (typically the converged MCEM estimate).
    seed : int, optional
        Makes the ensemble reproducible, independent of ``n_jobs``.
    n_jobs : int
        joblib workers; 1 runs serially.
    """
    y = np.asarray(y, dtype=np.float64).ravel()
    x = np.asarray(x, dtype=np.float64).ravel()
    x_test = np.asarray(x_test, dtype=np.float64).ravel()
    if y.shape[0] != x.shape[0]:
        raise ConfigError(f"y has {y.shape[0]} samples but x has {x.shape[0]}")
    t_draws = np.asarray(t_draws, dtype=np.float64)
    if t_draws.ndim == 1:
        t_draws = t_draws[:, None]
    sig2_draws = np.asarray(sig2_draws, dtype=np.float64).ravel()
    if t_draws.shape[0] != sig2_draws.shape[0]:
        raise ConfigError(
            f"t_draws has {t_draws.shape[0]} rows but sig2_draws has {sig2_draws.shape[0]}"
        )
    if t_draws.shape[0] < 1:
        raise ConfigError("At least one posterior draw is required")
    if not (0.0 <= lower_pct < upper_pct <= 100.0):
        raise ConfigError("Require 0 <= lower_pct < upper_pct <= 100")

    n_draws = t_draws.shape[0]
    seeds: List[np.random.SeedSequence] = np.random.SeedSequence(seed).spawn(n_draws)
    args = [
        (y, x, x_test, t_draws[i], float(sig2_draws[i]), float(tau), float(h), float(jitter), seeds[i])
        for i in range(n_draws)
    ]
    if int(n_jobs) == 1:
        curves = [_predictive_draw(*a) for a in args]
    else:
        curves = Parallel(n_jobs=int(n_jobs))(delayed(_predictive_draw)(*a) for a in args)

    draws = np.vstack(curves)
    return PredictiveBundle(
        x_test=x_test,
        mean=np.mean(draws, axis=0),
        lower=np.percentile(draws, lower_pct, axis=0),
        upper=np.percentile(draws, upper_pct, axis=0),
        draws=draws,
        t_draws=t_draws,
        sig2_draws=sig2_draws,
        lower_pct=float(lower_pct),
        upper_pct=float(upper_pct),
    )


def posterior_predictive(
    result,
    y: np.ndarray,
    x: np.ndarray,
    x_test: np.ndarray,
    *,
    group: int = 1,
    subject: int = 1,
    max_draws: Optional[int] = None,
    **kwargs,
) -> PredictiveBundle:
    """
    :func:`get_pi_t_sig` driven by an :class:`~erplatency.mcem.MCEMResult`.

    With ``max_draws`` an evenly spaced subset of the posterior draws is used;
    ``bundle.t_draws`` holds the latencies of exactly those draws, row-paired
    with ``bundle.draws`` for :func:`erplatency.amplitude.get_amp_max`.
    """
    from .mcem import latency_draws

    t = latency_draws(result, group=group, subject=subject)
    sig2 = np.asarray(result.sig2, dtype=np.float64)
    if max_draws is not None and t.shape[0] > int(max_draws):
        idx = np.unique(np.round(np.linspace(0, t.shape[0] - 1, int(max_draws))).astype(np.int64))
        t, sig2 = t[idx], sig2[idx]
    kwargs.setdefault("jitter", result.config.jitter)
    return get_pi_t_sig(y, x, x_test, t, sig2, result.tau, result.h, **kwargs)
