"""
Monte Carlo EM driver for stationary-point (latency) estimation.

Goal
----
Alternate E-steps (Metropolis-within-Gibbs draws of latencies, regression terms,
variance components and noise, with kernel hyperparameters fixed) and M-steps
(point estimate of the kernel scale ``tau`` and lengthscale ``h``), then run one
longer final E-step with the converged hyperparameters.

M-step objective
----------------
Monte Carlo estimate of the expected complete-data log-likelihood

    Q(tau, h) = mean_m  sum_{g,s} log N(y_gs | 0, Sigma(t_gs^(m), sig2^(m); tau, h))

over at most ``m_step_max_draws`` evenly spaced E-step draws, maximized with
L-BFGS-B on ``(log tau, log h)`` inside ``tau_bounds`` / ``h_bounds``.

Failure handling
----------------
- Proposal-level numerical failures are rejections (see :mod:`sampler`).
- M-step failure keeps the previous estimate, flags the row in
  ``theta_converged`` and emits :class:`ConvergenceWarning`.
- A non-decomposable covariance for the *current* state raises NumericalError.
- Bad inputs raise ConfigError from the constructor, before any sampling.
"""

from __future__ import annotations

import logging
import time
import warnings
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from scipy import optimize

from .config import (
    MCEMConfig,
    StartValues,
    default_parameter_names,
    validate_parameter_names,
)
from .errors import ConfigError, ConvergenceWarning, NumericalError
from .latent_model import DerivativeGP, SearchWindow
from .results_io import load_checkpoint, save_checkpoint
from .sampler import EStepResult, SamplerState, run_e_step
from .utils.logging_utils import close_run_logger, get_run_logger, log_mapping, log_section

logger = logging.getLogger(__name__)


@dataclass
class MCMCOutput:
    """Final-E-step trace: ``draws[:, j]`` is the chain of ``names[j]``."""

    draws: np.ndarray
    names: List[str]
    acceptance: Dict[str, float]
    step_sizes: Dict[str, float] = field(default_factory=dict)

    @property
    def n_draws(self) -> int:
        return int(self.draws.shape[0])

    def column(self, name: str) -> np.ndarray:
        try:
            j = self.names.index(name)
        except ValueError:
            raise KeyError(f"Unknown parameter '{name}'") from None
        return self.draws[:, j]

    def posterior_mean(self) -> Dict[str, float]:
        means = np.mean(self.draws, axis=0)
        return {n: float(m) for n, m in zip(self.names, means)}


@dataclass
class MCEMResult:
    """Everything an MCEM run returns."""

    theta_mat: np.ndarray  # (n_em, 2) rows of (tau, h), one per M-step
    theta_converged: np.ndarray  # (n_em,) bool
    mcmc_output: MCMCOutput
    windows: List[SearchWindow]
    latencies: List[np.ndarray]  # per group, (n_keep, K, S_g)
    sig2: np.ndarray  # (n_keep,)
    config: MCEMConfig
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def tau(self) -> float:
        return float(self.theta_mat[-1, 0])

    @property
    def h(self) -> float:
        return float(self.theta_mat[-1, 1])


def latency_draws(result: MCEMResult, group: int = 1, subject: int = 1) -> np.ndarray:
    """Posterior latency draws ``(n_keep, K)`` for a 1-based group / subject."""
    g = int(group) - 1
    s = int(subject) - 1
    if not (0 <= g < len(result.latencies)):
        raise ConfigError(f"group must be in 1..{len(result.latencies)}, got {group}")
    lat = result.latencies[g]
    if not (0 <= s < lat.shape[2]):
        raise ConfigError(f"subject must be in 1..{lat.shape[2]}, got {subject}")
    return lat[:, :, s].copy()


# ═════════════════════════════════════════════════════════════════════════════
#  M-step
# ═════════════════════════════════════════════════════════════════════════════


def _m_step_draw_indices(n_draws: int, max_draws: int) -> np.ndarray:
    n_use = min(int(n_draws), int(max_draws))
    return np.unique(np.round(np.linspace(0, n_draws - 1, n_use)).astype(np.int64))


def expected_loglik(
    tau: float,
    h: float,
    *,
    x: np.ndarray,
    H0: np.ndarray,
    y_groups: Sequence[np.ndarray],
    latencies: Sequence[np.ndarray],
    sig2: np.ndarray,
    jitter: float = 1e-8,
) -> float:
    """
    Monte Carlo expected complete-data log-likelihood at ``(tau, h)``.

    Returns ``-inf`` when any covariance is not decomposable.
    """
    try:
        gp = DerivativeGP(x, H0, tau, h, jitter=jitter)
    except NumericalError:
        return -np.inf
    n_draws = int(sig2.shape[0])
    total = 0.0
    for m in range(n_draws):
        for g, y in enumerate(y_groups):
            t_m = latencies[g][m]
            for s in range(y.shape[1]):
                ll = gp.safe_loglik(y[:, s], t_m[:, s], float(sig2[m]))
                if not np.isfinite(ll):
                    return -np.inf
                total += ll
    return total / float(n_draws)


def maximize_hyperparameters(
    e_step: EStepResult,
    *,
    x: np.ndarray,
    H0: np.ndarray,
    y_groups: Sequence[np.ndarray],
    theta_prev: Tuple[float, float],
    config: MCEMConfig,
) -> Tuple[float, float, bool]:
    """
    One M-step.

    Returns ``(tau, h, converged)``. When the optimizer fails, the previous
    estimate is returned with ``converged=False``; when it only hits the
    iteration cap, an improved estimate is kept but still flagged.
    """
    idx = _m_step_draw_indices(e_step.sig2.shape[0], config.m_step_max_draws)
    latencies = [lat[idx] for lat in e_step.latencies]
    sig2 = e_step.sig2[idx]

    def objective(log_theta: np.ndarray) -> float:
        tau, h = np.exp(log_theta)
        value = expected_loglik(
            float(tau), float(h), x=x, H0=H0, y_groups=y_groups,
            latencies=latencies, sig2=sig2, jitter=config.jitter,
        )
        return -value if np.isfinite(value) else np.inf

    bounds = [
        (np.log(config.tau_bounds[0]), np.log(config.tau_bounds[1])),
        (np.log(config.h_bounds[0]), np.log(config.h_bounds[1])),
    ]
    x0 = np.clip(np.log(np.asarray(theta_prev, dtype=np.float64)), [b[0] for b in bounds], [b[1] for b in bounds])
    f_prev = objective(x0)

    try:
        res = optimize.minimize(
            objective, x0, method="L-BFGS-B", bounds=bounds,
            options={"maxiter": int(config.m_step_maxiter)},
        )
    except (ValueError, FloatingPointError) as exc:
        warnings.warn(f"M-step optimizer raised {exc!r}; keeping previous (tau, h).", ConvergenceWarning)
        return float(theta_prev[0]), float(theta_prev[1]), False

    finite = bool(np.all(np.isfinite(res.x)) and np.isfinite(res.fun))
    if res.success and finite:
        tau, h = np.exp(res.x)
        return float(tau), float(h), True

    hit_cap = int(getattr(res, "nit", 0)) >= int(config.m_step_maxiter)
    if hit_cap and finite and res.fun <= f_prev:
        tau, h = np.exp(res.x)
        warnings.warn(
            f"M-step optimizer hit maxiter={config.m_step_maxiter}; keeping improved (tau, h) flagged as not converged.",
            ConvergenceWarning,
        )
        return float(tau), float(h), False

    warnings.warn(
        f"M-step optimizer failed ({res.message}); keeping previous (tau, h).",
        ConvergenceWarning,
    )
    return float(theta_prev[0]), float(theta_prev[1]), False


# ═════════════════════════════════════════════════════════════════════════════
#  Driver
# ═════════════════════════════════════════════════════════════════════════════


def _as_response_matrix(y: Any, n: int, label: str) -> np.ndarray:
    arr = np.asarray(y, dtype=np.float64)
    if arr.ndim == 1:
        arr = arr[:, None]
    if arr.ndim != 2 or arr.shape[0] != n:
        raise ConfigError(f"{label} must have shape ({n}, n_subjects), got {np.shape(y)}")
    if arr.shape[1] < 1:
        raise ConfigError(f"{label} must contain at least one subject")
    if not np.all(np.isfinite(arr)):
        raise ConfigError(f"{label} contains non-finite values")
    return arr.copy()


class MCEMDriver:
    """
    Monte Carlo EM over one or two groups of response curves.

    Typical usage:
        driver = MCEMDriver([y_g1, y_g2], x, H0, [SearchWindow(0, .5), SearchWindow(.5, 1)])
        result = driver.run()
    """

    def __init__(
        self,
        y_groups: Sequence[np.ndarray],
        x: np.ndarray,
        H0: np.ndarray,
        windows: Sequence[SearchWindow],
        config: Optional[MCEMConfig] = None,
        start: Optional[Union[StartValues, Mapping[str, Any]]] = None,
        name_par: Optional[Sequence[str]] = None,
    ):
        self.config = config or MCEMConfig()

        x = np.asarray(x, dtype=np.float64)
        if x.ndim != 1 or x.size < 2:
            raise ConfigError(f"x must be a 1-D grid with at least 2 points, got shape {x.shape}")
        if np.any(np.diff(x) <= 0):
            raise ConfigError("x must be strictly increasing")
        self.x = x
        n = x.shape[0]

        H0 = np.asarray(H0, dtype=np.float64)
        if H0.shape != (n, n):
            raise ConfigError(f"H0 must have shape ({n}, {n}), got {H0.shape}")
        self.H0 = H0

        if not 1 <= len(y_groups) <= 2:
            raise ConfigError(f"Expected one or two groups of curves, got {len(y_groups)}")
        self.y_groups = [_as_response_matrix(y, n, f"group {g + 1} responses") for g, y in enumerate(y_groups)]

        windows = [w if isinstance(w, SearchWindow) else SearchWindow(*w) for w in windows]
        if not 1 <= len(windows) <= 2:
            raise ConfigError(f"Expected one or two search windows, got {len(windows)}")
        self.windows = windows

        n_points = len(windows)
        n_subjects = [y.shape[1] for y in self.y_groups]
        defaults = StartValues.from_data(self.y_groups, x, n_points)
        if start is None:
            start = defaults
        elif not isinstance(start, StartValues):
            start = StartValues.from_mapping(start, defaults)
        start.validate(n_points, n_subjects)
        self.start = start

        if name_par is None:
            self.names = default_parameter_names(n_points, n_subjects)
        else:
            self.names = validate_parameter_names(name_par, n_points, n_subjects)

    @property
    def n_points(self) -> int:
        return len(self.windows)

    def _gp(self, tau: float, h: float) -> DerivativeGP:
        return DerivativeGP(self.x, self.H0, tau, h, jitter=self.config.jitter)

    def run(self, resume_from: Optional[str] = None) -> MCEMResult:
        cfg = self.config
        run_logger = get_run_logger(cfg.run_name, output_dir=cfg.log_dir)
        t_start = time.time()
        try:
            return self._run(run_logger, resume_from, t_start)
        finally:
            if cfg.log_dir is not None:
                close_run_logger(run_logger)

    def _run(self, run_logger: logging.Logger, resume_from: Optional[str], t_start: float) -> MCEMResult:
        cfg = self.config
        log_section(run_logger, "MCEM START")
        log_mapping(run_logger, {
            "n_groups": len(self.y_groups),
            "n_subjects": [y.shape[1] for y in self.y_groups],
            "n_samples": self.x.shape[0],
            "windows": [(w.a, w.b) for w in self.windows],
            **cfg.to_dict(),
        })

        theta_rows: List[Tuple[float, float]] = []
        converged_flags: List[bool] = []
        e_step_acceptance: List[float] = []
        first_iter = 0
        stopped_early = False
        if resume_from is not None:
            ckpt = load_checkpoint(resume_from)
            state = ckpt["state"]
            if state.n_subjects != [y.shape[1] for y in self.y_groups] or state.n_points != self.n_points:
                raise ConfigError(f"Checkpoint {resume_from} does not match the data / windows of this run")
            theta_rows = [tuple(row) for row in ckpt["theta_mat"]]
            converged_flags = [bool(v) for v in ckpt["theta_converged"]]
            first_iter = int(ckpt["em_iter"])
            stopped_early = bool(ckpt["stopped_early"])
            tau, h = theta_rows[-1] if theta_rows else (self.start.tau, self.start.h)
            run_logger.info("resumed from=%s em_iter=%d stopped_early=%s", str(resume_from), first_iter, stopped_early)
        else:
            state = SamplerState.from_start(self.start, cfg)
            tau, h = float(self.start.tau), float(self.start.h)

        # a checkpoint written after an em_tol stop goes straight to the final E-step
        last_iter = first_iter if stopped_early else int(cfg.n_em_iter)
        for it in range(first_iter, last_iter):
            t_step = time.time()
            e_res = run_e_step(
                state, self._gp(tau, h), self.y_groups, self.windows, cfg,
                n_mcmc=cfg.n_mcmc_e, burn=cfg.burn_e, thin=cfg.thin_e, names=self.names,
            )
            tau_new, h_new, ok = maximize_hyperparameters(
                e_res, x=self.x, H0=self.H0, y_groups=self.y_groups, theta_prev=(tau, h), config=cfg,
            )
            theta_rows.append((tau_new, h_new))
            converged_flags.append(ok)
            mean_acc = float(np.mean(list(e_res.acceptance.values())))
            e_step_acceptance.append(mean_acc)
            run_logger.info(
                "em_iter=%d tau=%.6g h=%.6g m_step_converged=%s mean_accept=%.3f elapsed_sec=%.3f",
                it + 1, tau_new, h_new, ok, mean_acc, float(time.time() - t_step),
            )

            rel = max(abs(tau_new - tau) / tau, abs(h_new - h) / h)
            tau, h = tau_new, h_new
            # a failed M-step repeats the previous estimate; that is not convergence
            if cfg.em_tol is not None and ok and rel < float(cfg.em_tol):
                run_logger.info("em_tol reached at em_iter=%d (rel_change=%.3g)", it + 1, rel)
                stopped_early = True

            if cfg.checkpoint_path is not None:
                save_checkpoint(
                    cfg.checkpoint_path, state=state, theta_mat=np.asarray(theta_rows),
                    theta_converged=np.asarray(converged_flags, dtype=bool), em_iter=it + 1,
                    stopped_early=stopped_early,
                )
            if stopped_early:
                break

        t_step = time.time()
        final = run_e_step(
            state, self._gp(tau, h), self.y_groups, self.windows, cfg,
            n_mcmc=cfg.n_mcmc_final, burn=cfg.burn_final, thin=cfg.thin_final, names=self.names,
        )
        run_logger.info("step=final_e_step kept=%d elapsed_sec=%.3f", final.draws.shape[0], float(time.time() - t_step))

        log_section(run_logger, "MCEM SUMMARY")
        run_logger.info("tau=%.6g h=%.6g", tau, h)
        for name, rate in final.acceptance.items():
            run_logger.info("accept[%s]=%.3f", name, rate)
        run_logger.info("elapsed_sec=%.3f", float(time.time() - t_start))
        log_section(run_logger, "MCEM END")

        return MCEMResult(
            theta_mat=np.asarray(theta_rows, dtype=np.float64).reshape(-1, 2),
            theta_converged=np.asarray(converged_flags, dtype=bool),
            mcmc_output=MCMCOutput(
                draws=final.draws, names=list(self.names),
                acceptance=final.acceptance, step_sizes=final.step_sizes,
            ),
            windows=list(self.windows),
            latencies=final.latencies,
            sig2=final.sig2,
            config=cfg,
            meta={
                "e_step_mean_acceptance": e_step_acceptance,
                "stopped_early": stopped_early,
                "n_sampler_iterations": state.n_iterations,
                "elapsed_sec": float(time.time() - t_start),
            },
        )


def mcem_slam(
    multi_y_g1: np.ndarray,
    multi_y_g2: Optional[np.ndarray],
    x: np.ndarray,
    H0: np.ndarray,
    a_1: float,
    b_1: float,
    a_2: Optional[float] = None,
    b_2: Optional[float] = None,
    start_lst: Optional[Union[StartValues, Mapping[str, Any]]] = None,
    name_par: Optional[Sequence[str]] = None,
    n_mcmc_e: Optional[int] = None,
    burn_e: Optional[int] = None,
    thin_e: Optional[int] = None,
    n_mcmc_final: Optional[int] = None,
    burn_final: Optional[int] = None,
    thin_final: Optional[int] = None,
    ga_shape: Optional[float] = None,
    ga_rate: Optional[float] = None,
    *,
    config: Optional[MCEMConfig] = None,
    resume_from: Optional[str] = None,
    **config_overrides: Any,
) -> MCEMResult:
    """
    Fit latencies of one or two stationary points by Monte Carlo EM.

    Parameters
    ----------
    multi_y_g1, multi_y_g2 : (n, S_g) arrays
        Response curves (columns = subjects) on the shared grid ``x``.
        ``multi_y_g2=None`` fits a single group.
    x : (n,) array
        Strictly increasing input grid.
    H0 : (n, n) array
        Signed distances ``x[i] - x[j]`` (see :func:`erplatency.kernels.distance_matrix`).
    a_1, b_1, a_2, b_2 : float
        Search windows. ``a_2 = b_2 = None`` fits one stationary point.
    start_lst : StartValues or mapping, optional
        Start values; mapping keys override data-driven defaults.
    name_par : sequence of str, optional
        Trace column names; must match the number of sampled parameters.
    n_mcmc_e, burn_e, thin_e, n_mcmc_final, burn_final, thin_final, ga_shape, ga_rate
        Override the corresponding :class:`MCEMConfig` fields when given.
    config : MCEMConfig, optional
        Base configuration; ``config_overrides`` are applied on top.

    Returns
    -------
    MCEMResult
        ``theta_mat`` (one ``(tau, h)`` row per outer iteration, last row =
        converged estimate) and ``mcmc_output`` (named draws + acceptance rates).
    """
    windows = [SearchWindow(a_1, b_1)]
    if (a_2 is None) != (b_2 is None):
        raise ConfigError("a_2 and b_2 must be given together")
    if a_2 is not None:
        windows.append(SearchWindow(a_2, b_2))

    explicit = {
        "n_mcmc_e": n_mcmc_e, "burn_e": burn_e, "thin_e": thin_e,
        "n_mcmc_final": n_mcmc_final, "burn_final": burn_final, "thin_final": thin_final,
        "ga_shape": ga_shape, "ga_rate": ga_rate,
    }
    changes = {k: v for k, v in explicit.items() if v is not None}
    changes.update(config_overrides)
    base = config or MCEMConfig()
    cfg = base.replace(**changes) if changes else base

    y_groups = [multi_y_g1] if multi_y_g2 is None else [multi_y_g1, multi_y_g2]
    driver = MCEMDriver(y_groups, x, H0, windows, config=cfg, start=start_lst, name_par=name_par)
    return driver.run(resume_from=resume_from)
