"""
Typed configuration for MCEM runs.

``MCEMConfig`` enumerates every sampler / optimizer knob with explicit defaults
and validates itself at construction. ``StartValues`` replaces the loosely typed
start list: one array per parameter block with checked shapes.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .errors import ConfigError


def n_kept_draws(n_mcmc: int, burn: int, thin: int) -> int:
    """Number of retained draws: ``floor((n_mcmc - burn) / thin)``."""
    return (int(n_mcmc) - int(burn)) // int(thin)


def _check_chain(label: str, n_mcmc: int, burn: int, thin: int) -> None:
    if int(n_mcmc) < 1:
        raise ConfigError(f"{label}: n_mcmc must be >= 1, got {n_mcmc}")
    if int(burn) < 0 or int(burn) >= int(n_mcmc):
        raise ConfigError(f"{label}: burn must satisfy 0 <= burn < n_mcmc, got burn={burn}, n_mcmc={n_mcmc}")
    if int(thin) < 1:
        raise ConfigError(f"{label}: thin must be >= 1, got {thin}")
    if n_kept_draws(n_mcmc, burn, thin) < 1:
        raise ConfigError(f"{label}: (n_mcmc - burn) / thin keeps no draws")


def _check_positive(name: str, value: float) -> None:
    if not (np.isfinite(value) and value > 0):
        raise ConfigError(f"{name} must be finite and > 0, got {value}")


def _check_bounds_pair(name: str, bounds: Tuple[float, float]) -> None:
    if len(bounds) != 2:
        raise ConfigError(f"{name} must be a (low, high) pair, got {bounds}")
    low, high = float(bounds[0]), float(bounds[1])
    if not (0.0 < low < high):
        raise ConfigError(f"{name} must satisfy 0 < low < high, got {bounds}")


@dataclass(frozen=True)
class MCEMConfig:
    """Configuration for :class:`erplatency.mcem.MCEMDriver`."""

    # E-step chain used inside every outer iteration
    n_mcmc_e: int = 1000
    burn_e: int = 500
    thin_e: int = 1

    # Final E-step run with the converged hyperparameters
    n_mcmc_final: int = 5000
    burn_final: int = 1000
    thin_final: int = 5

    # Outer loop. em_tol=None runs exactly n_em_iter iterations; otherwise stop
    # early once both tau and h change by less than em_tol (relative).
    n_em_iter: int = 10
    em_tol: Optional[float] = None

    # Priors: sig2 ~ IG(ga_shape, ga_rate), sigma2_r ~ IG(shape, rate), beta ~ N(0, var)
    ga_shape: float = 2.0
    ga_rate: float = 0.01
    sigma2_r_shape: float = 2.0
    sigma2_r_rate: float = 1.0
    beta_prior_var: float = 10.0

    # Adaptive random-walk Metropolis (tuned during burn-in only)
    target_accept: Tuple[float, float] = (0.2, 0.5)
    adapt_interval: int = 50
    adapt_max_delta: float = 0.5
    init_step_eta: float = 0.5
    init_step_log_sig2: float = 0.2

    # M-step
    m_step_max_draws: int = 50
    m_step_maxiter: int = 100
    tau_bounds: Tuple[float, float] = (1e-4, 1e4)
    h_bounds: Tuple[float, float] = (1e-3, 1e3)

    # Numerics / bookkeeping
    jitter: float = 1e-8
    seed: Optional[int] = None
    run_name: str = "mcem_slam"
    log_dir: Optional[str] = None
    checkpoint_path: Optional[str] = None

    def __post_init__(self) -> None:
        _check_chain("E-step", self.n_mcmc_e, self.burn_e, self.thin_e)
        _check_chain("final E-step", self.n_mcmc_final, self.burn_final, self.thin_final)
        if int(self.n_em_iter) < 1:
            raise ConfigError(f"n_em_iter must be >= 1, got {self.n_em_iter}")
        if self.em_tol is not None:
            _check_positive("em_tol", float(self.em_tol))
        for name in ("ga_shape", "ga_rate", "sigma2_r_shape", "sigma2_r_rate", "beta_prior_var",
                     "adapt_max_delta", "init_step_eta", "init_step_log_sig2"):
            _check_positive(name, float(getattr(self, name)))
        if float(self.jitter) < 0:
            raise ConfigError(f"jitter must be >= 0, got {self.jitter}")
        low, high = (float(v) for v in self.target_accept)
        if not (0.0 < low < high < 1.0):
            raise ConfigError(f"target_accept must satisfy 0 < low < high < 1, got {self.target_accept}")
        if int(self.adapt_interval) < 1:
            raise ConfigError(f"adapt_interval must be >= 1, got {self.adapt_interval}")
        if int(self.m_step_max_draws) < 1 or int(self.m_step_maxiter) < 1:
            raise ConfigError("m_step_max_draws and m_step_maxiter must be >= 1")
        _check_bounds_pair("tau_bounds", self.tau_bounds)
        _check_bounds_pair("h_bounds", self.h_bounds)

    @property
    def n_keep_e(self) -> int:
        return n_kept_draws(self.n_mcmc_e, self.burn_e, self.thin_e)

    @property
    def n_keep_final(self) -> int:
        return n_kept_draws(self.n_mcmc_final, self.burn_final, self.thin_final)

    def replace(self, **changes: Any) -> "MCEMConfig":
        return MCEMConfig.from_dict({**self.to_dict(), **changes})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> "MCEMConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigError(f"Unknown MCEMConfig keys: {unknown}")
        kwargs = dict(values)
        for key in ("target_accept", "tau_bounds", "h_bounds"):
            if key in kwargs:
                kwargs[key] = tuple(float(v) for v in kwargs[key])
        return cls(**kwargs)


def load_config(path: Union[str, Path]) -> MCEMConfig:
    """Read an :class:`MCEMConfig` from a YAML (``.yml``/``.yaml``) or JSON file."""
    path = Path(path).expanduser()
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        if path.suffix.lower() in (".yml", ".yaml"):
            import yaml

            data = yaml.safe_load(f)
        else:
            data = json.load(f)
    data = data or {}
    # Allow the settings to sit under a top-level "mcem" section.
    if isinstance(data, Mapping) and "mcem" in data and isinstance(data["mcem"], Mapping):
        data = data["mcem"]
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file must contain a mapping, got {type(data).__name__}")
    return MCEMConfig.from_dict(data)


# ═════════════════════════════════════════════════════════════════════════════
#  Parameter names and start values
# ═════════════════════════════════════════════════════════════════════════════


def default_parameter_names(n_points: int, n_subjects: Sequence[int]) -> List[str]:
    """
    Names of the traced parameters, in trace column order.

    ``r{k}_g{g}_s{s}`` for every group g, point k and subject s, then
    ``beta0_{k}``, ``beta1_{k}`` (two groups only), ``sigma2_r{k}`` and ``sig2``.
    """
    names: List[str] = []
    for g, n_s in enumerate(n_subjects, start=1):
        for k in range(1, int(n_points) + 1):
            names.extend(f"r{k}_g{g}_s{s}" for s in range(1, int(n_s) + 1))
    names.extend(f"beta0_{k}" for k in range(1, int(n_points) + 1))
    if len(n_subjects) > 1:
        names.extend(f"beta1_{k}" for k in range(1, int(n_points) + 1))
    names.extend(f"sigma2_r{k}" for k in range(1, int(n_points) + 1))
    names.append("sig2")
    return names


def validate_parameter_names(name_par: Sequence[str], n_points: int, n_subjects: Sequence[int]) -> List[str]:
    names = [str(n) for n in name_par]
    expected = len(default_parameter_names(n_points, n_subjects))
    if len(names) != expected:
        raise ConfigError(
            f"name_par has {len(names)} entries but the start values define {expected} parameters"
        )
    if len(set(names)) != len(names):
        raise ConfigError("name_par entries must be unique")
    return names


@dataclass
class StartValues:
    """
    Initial values of every sampled parameter plus the initial hyperparameters.

    ``r`` holds one ``(K, S_g)`` array per group with entries in (0, 1).
    """

    r: List[np.ndarray]
    beta0: np.ndarray
    sigma2_r: np.ndarray
    sig2: float
    tau: float
    h: float
    beta1: Optional[np.ndarray] = None

    _KEYS = ("r", "r_g1", "r_g2", "beta0", "beta1", "sigma2_r", "sig2", "tau", "h")

    @classmethod
    def from_data(
        cls,
        y_groups: Sequence[np.ndarray],
        x: np.ndarray,
        n_points: int,
    ) -> "StartValues":
        """Neutral start: r = 0.5, zero regression, data-scaled tau / sig2 / h."""
        y_all = np.concatenate([np.asarray(y, dtype=np.float64).ravel() for y in y_groups])
        var_y = float(np.var(y_all)) if y_all.size > 1 else 1.0
        var_y = var_y if var_y > 0 else 1.0
        x = np.asarray(x, dtype=np.float64)
        span = float(np.ptp(x)) if x.size > 1 else 1.0
        K = int(n_points)
        return cls(
            r=[np.full((K, np.asarray(y).shape[1]), 0.5) for y in y_groups],
            beta0=np.zeros(K),
            beta1=np.zeros(K) if len(y_groups) > 1 else None,
            sigma2_r=np.ones(K),
            sig2=0.1 * var_y,
            tau=var_y,
            h=span / 4.0 if span > 0 else 1.0,
        )

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any], defaults: "StartValues") -> "StartValues":
        """Override ``defaults`` with the entries of a start list mapping."""
        unknown = sorted(set(values) - set(cls._KEYS))
        if unknown:
            raise ConfigError(f"Unknown start value keys: {unknown}")
        r = [np.array(a, dtype=np.float64, copy=True) for a in defaults.r]
        if "r" in values:
            r = [np.asarray(a, dtype=np.float64) for a in values["r"]]
        if "r_g1" in values:
            r[0] = np.asarray(values["r_g1"], dtype=np.float64)
        if "r_g2" in values:
            if len(r) < 2:
                raise ConfigError("r_g2 given but only one group of curves was supplied")
            r[1] = np.asarray(values["r_g2"], dtype=np.float64)
        beta1 = values.get("beta1", defaults.beta1)
        return cls(
            r=r,
            beta0=np.asarray(values.get("beta0", defaults.beta0), dtype=np.float64),
            beta1=None if beta1 is None else np.asarray(beta1, dtype=np.float64),
            sigma2_r=np.asarray(values.get("sigma2_r", defaults.sigma2_r), dtype=np.float64),
            sig2=float(values.get("sig2", defaults.sig2)),
            tau=float(values.get("tau", defaults.tau)),
            h=float(values.get("h", defaults.h)),
        )

    def validate(self, n_points: int, n_subjects: Sequence[int]) -> None:
        K = int(n_points)
        if len(self.r) != len(n_subjects):
            raise ConfigError(f"Start values define {len(self.r)} groups, data has {len(n_subjects)}")
        for g, (r_g, n_s) in enumerate(zip(self.r, n_subjects), start=1):
            r_g = np.atleast_2d(np.asarray(r_g, dtype=np.float64))
            if r_g.shape != (K, int(n_s)):
                raise ConfigError(f"r for group {g} must have shape ({K}, {n_s}), got {r_g.shape}")
            if np.any(r_g <= 0.0) or np.any(r_g >= 1.0):
                raise ConfigError(f"r for group {g} must lie strictly inside (0, 1)")
        for name in ("beta0", "sigma2_r"):
            arr = np.atleast_1d(np.asarray(getattr(self, name), dtype=np.float64))
            if arr.shape != (K,):
                raise ConfigError(f"{name} must have shape ({K},), got {arr.shape}")
        if len(n_subjects) > 1:
            if self.beta1 is None or np.atleast_1d(self.beta1).shape != (K,):
                raise ConfigError(f"beta1 must have shape ({K},) for two-group runs")
        elif self.beta1 is not None and np.any(np.asarray(self.beta1) != 0):
            raise ConfigError("beta1 is only defined for two-group runs")
        if np.any(np.asarray(self.sigma2_r) <= 0):
            raise ConfigError("sigma2_r start values must be > 0")
        for name in ("sig2", "tau", "h"):
            _check_positive(name, float(getattr(self, name)))

    def vector_size(self) -> int:
        n_points = int(np.atleast_2d(self.r[0]).shape[0])
        n_subjects = [int(np.atleast_2d(r).shape[1]) for r in self.r]
        return len(default_parameter_names(n_points, n_subjects))
