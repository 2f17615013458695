"""
Amplitude extraction ("Max Peak").

For every posterior draw and stationary point, the grid index nearest the
latency draw is located and a small neighborhood around it is scanned for the
extremal value of that draw's predictive curve. Scanning a neighborhood rather
than reading the single nearest sample keeps the estimate stable when the
latency falls between grid points.
"""

from __future__ import annotations

from typing import Dict, Sequence, Union

import numpy as np

from .errors import ConfigError

_KINDS = ("auto", "max", "min")


def _resolve_kinds(kinds: Union[str, Sequence[str]], n_points: int) -> Sequence[str]:
    if isinstance(kinds, str):
        kinds = [kinds] * n_points
    kinds = [str(k).lower().strip() for k in kinds]
    if len(kinds) != n_points:
        raise ConfigError(f"kinds must have one entry per stationary point ({n_points}), got {len(kinds)}")
    for k in kinds:
        if k not in _KINDS:
            raise ConfigError(f"Unknown kind='{k}'. Use 'auto', 'max' or 'min'.")
    return kinds


def _peak_value(segment: np.ndarray, centre: int, kind: str) -> float:
    if kind == "max":
        return float(np.max(segment))
    if kind == "min":
        return float(np.min(segment))
    # auto: a local maximum sits above the neighborhood edges, a minimum below
    edges = 0.5 * (segment[0] + segment[-1])
    return float(np.max(segment)) if segment[centre] >= edges else float(np.min(segment))


def get_amp_max(
    pred_draws: np.ndarray,
    x_test: np.ndarray,
    latency_draws: np.ndarray,
    *,
    neighborhood: int = 3,
    kinds: Union[str, Sequence[str]] = "auto",
) -> np.ndarray:
    """
    Peak amplitude per draw and stationary point.

    Parameters
    ----------
    pred_draws : (n_draws, m) array
        Predictive curves on ``x_test`` (e.g. ``PredictiveBundle.draws``).
    x_test : (m,) array
    latency_draws : (n_draws, K) or (n_draws,) array
        Latency draws paired row-wise with ``pred_draws``.
    neighborhood : int
        Half-width, in grid samples, of the scanned neighborhood.
    kinds : str or sequence of str
        ``'max'``, ``'min'`` or ``'auto'`` (decide from the curve shape), per point.

    Returns
    -------
    amps : (n_draws, K) array
    """
    pred_draws = np.atleast_2d(np.asarray(pred_draws, dtype=np.float64))
    x_test = np.asarray(x_test, dtype=np.float64).ravel()
    latency_draws = np.asarray(latency_draws, dtype=np.float64)
    if latency_draws.ndim == 1:
        latency_draws = latency_draws[:, None]
    n_draws, m = pred_draws.shape
    if m != x_test.shape[0]:
        raise ConfigError(f"pred_draws has {m} columns but x_test has {x_test.shape[0]} points")
    if latency_draws.shape[0] != n_draws:
        raise ConfigError(f"latency_draws has {latency_draws.shape[0]} rows but pred_draws has {n_draws}")
    if int(neighborhood) < 0:
        raise ConfigError("neighborhood must be >= 0")

    n_points = latency_draws.shape[1]
    kinds = _resolve_kinds(kinds, n_points)
    half = int(neighborhood)

    # nearest grid index for every latency draw
    idx = np.abs(latency_draws[:, :, None] - x_test[None, None, :]).argmin(axis=-1)

    amps = np.empty((n_draws, n_points), dtype=np.float64)
    for i in range(n_draws):
        curve = pred_draws[i]
        for k in range(n_points):
            c = int(idx[i, k])
            lo = max(0, c - half)
            hi = min(m, c + half + 1)
            amps[i, k] = _peak_value(curve[lo:hi], c - lo, kinds[k])
    return amps


def summarize_amplitude(
    amps: np.ndarray,
    *,
    lower_pct: float = 2.5,
    upper_pct: float = 97.5,
) -> Dict[str, np.ndarray]:
    """Posterior mean and percentile interval of each column of ``amps``."""
    amps = np.atleast_2d(np.asarray(amps, dtype=np.float64))
    return {
        "mean": np.mean(amps, axis=0),
        "lower": np.percentile(amps, lower_pct, axis=0),
        "upper": np.percentile(amps, upper_pct, axis=0),
    }
