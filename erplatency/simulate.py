"""
Synthetic ERP-like curves with known stationary points.

Two generators:

- ``'cubic'``: ``f'(x) = c (x - t_1)(x - t_2)``, so the stationary points are
  exactly the requested latencies and there are no others (one peak, one trough).
- ``'dgp'``: a draw from the zero-mean GP conditioned on ``f'(t) = 0``, i.e. the
  model's own data-generating process.
"""

from __future__ import annotations

from typing import Dict, Optional, Sequence

import numpy as np
from scipy.special import expit, logit

from .errors import ConfigError
from .kernels import distance_matrix
from .latent_model import DerivativeGP, SearchWindow


def stationary_cubic_curve(x: np.ndarray, t1: float, t2: float, amplitude: float = 1.0) -> np.ndarray:
    """Centered cubic whose only stationary points are ``t1`` (max) and ``t2`` (min), ``t1 < t2``."""
    x = np.asarray(x, dtype=np.float64)
    f = x ** 3 / 3.0 - 0.5 * (t1 + t2) * x ** 2 + t1 * t2 * x
    f = f - np.mean(f)
    scale = float(np.max(np.abs(f)))
    return amplitude * f / scale if scale > 0 else f


def simulate_dgp_curve(
    x: np.ndarray,
    latencies: Sequence[float],
    *,
    tau: float,
    h: float,
    sig2: float,
    rng: np.random.Generator,
) -> np.ndarray:
    """One noisy draw ``y ~ N(0, K_xx - K_xd K_dd^{-1} K_dx + sig2 I)``."""
    gp = DerivativeGP(x, distance_matrix(x), tau, h)
    cov = gp.conditional_covariance(np.asarray(latencies, dtype=np.float64), sig2)
    return rng.multivariate_normal(np.zeros(gp.n), cov, method="eigh", check_valid="ignore")


def simulate_erp_groups(
    *,
    n_samples: int = 50,
    n_subjects: Sequence[int] = (3,),
    windows: Sequence[SearchWindow] = (SearchWindow(0.0, 0.5), SearchWindow(0.5, 1.0)),
    r_true: Sequence[Sequence[float]] = ((0.3, 0.7),),
    r_sd: float = 0.0,
    noise_sd: float = 0.05,
    method: str = "cubic",
    tau: float = 1.0,
    h: float = 0.3,
    x_range: Sequence[float] = (0.0, 1.0),
    seed: Optional[int] = 42,
) -> Dict[str, object]:
    """
    Simulate one or more groups of noisy curves with known latencies.

    Parameters
    ----------
    n_subjects : sequence of int
        Subjects per group.
    r_true : sequence of sequences
        Group-level r-values, one sequence (one value per window) per group.
    r_sd : float
        Between-subject standard deviation on the logit scale (0 = identical).
    method : {'cubic', 'dgp'}
        Curve generator; 'cubic' needs exactly two windows.

    Returns
    -------
    dict with 'x', 'H0', 'y' (list of (n, S_g) arrays), 'latencies' (list of
    (K, S_g) arrays), 'r' (list of (K, S_g) arrays) and 'windows'.
    """
    windows = [w if isinstance(w, SearchWindow) else SearchWindow(*w) for w in windows]
    if len(r_true) != len(n_subjects):
        raise ConfigError("r_true needs one entry per group")
    method = str(method).lower().strip()
    if method not in ("cubic", "dgp"):
        raise ConfigError(f"Unknown method='{method}'. Use 'cubic' or 'dgp'.")
    if method == "cubic" and len(windows) != 2:
        raise ConfigError("method='cubic' requires exactly two windows")

    rng = np.random.default_rng(seed)
    x = np.linspace(float(x_range[0]), float(x_range[1]), int(n_samples))
    K = len(windows)

    ys, lats, rs = [], [], []
    for g, n_s in enumerate(n_subjects):
        r_g = np.asarray(r_true[g], dtype=np.float64)
        if r_g.shape != (K,):
            raise ConfigError(f"r_true[{g}] must have {K} entries")
        eta = logit(r_g)[:, None] + float(r_sd) * rng.standard_normal((K, int(n_s)))
        r = expit(eta)
        lat = np.vstack([windows[k].to_latency(r[k]) for k in range(K)])
        y = np.empty((x.shape[0], int(n_s)), dtype=np.float64)
        for s in range(int(n_s)):
            if method == "cubic":
                clean = stationary_cubic_curve(x, lat[0, s], lat[1, s])
                y[:, s] = clean + float(noise_sd) * rng.standard_normal(x.shape[0])
            else:
                y[:, s] = simulate_dgp_curve(x, lat[:, s], tau=tau, h=h, sig2=float(noise_sd) ** 2, rng=rng)
        ys.append(y)
        lats.append(lat)
        rs.append(r)

    return {
        "x": x,
        "H0": distance_matrix(x),
        "y": ys,
        "latencies": lats,
        "r": rs,
        "windows": windows,
    }
