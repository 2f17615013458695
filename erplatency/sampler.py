"""
E-step: adaptive Metropolis-within-Gibbs over the latent parameters.

One sweep updates, in order:

1. every logit-latency ``eta_gks`` (random-walk Metropolis, one point at a time)
2. ``(beta0_k, beta1_k)`` per point (conjugate normal regression, Gibbs)
3. ``sigma2_r_k`` per point (conjugate inverse gamma, Gibbs)
4. ``log sig2`` (random-walk Metropolis, Jacobian included)

All mutable chain state lives in :class:`SamplerState`, which the MCEM driver
owns and hands to every E-step. Step sizes adapt during burn-in only, so the
retained draws come from a fixed transition kernel.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np
from scipy import linalg

from .config import MCEMConfig, StartValues
from .latent_model import (
    DerivativeGP,
    SearchWindow,
    eta_to_latency,
    eta_to_r,
    inverse_gamma_logpdf,
    normal_logpdf,
    r_to_eta,
)

logger = logging.getLogger(__name__)


@dataclass
class SamplerState:
    """Current point of the Markov chain plus the tuned proposal scales."""

    eta: List[np.ndarray]  # per group, (K, S_g) logit of r
    beta0: np.ndarray  # (K,)
    beta1: np.ndarray  # (K,), all zero for single-group runs
    sigma2_r: np.ndarray  # (K,)
    sig2: float
    log_step_eta: List[np.ndarray]  # per group, (K, S_g)
    log_step_sig2: float
    rng: np.random.Generator
    n_iterations: int = 0

    @classmethod
    def from_start(
        cls,
        start: StartValues,
        config: MCEMConfig,
        rng: Optional[np.random.Generator] = None,
    ) -> "SamplerState":
        eta = [r_to_eta(np.atleast_2d(np.asarray(r, dtype=np.float64))) for r in start.r]
        K = eta[0].shape[0]
        beta1 = np.zeros(K) if start.beta1 is None else np.asarray(start.beta1, dtype=np.float64).copy()
        return cls(
            eta=eta,
            beta0=np.asarray(start.beta0, dtype=np.float64).copy(),
            beta1=beta1,
            sigma2_r=np.asarray(start.sigma2_r, dtype=np.float64).copy(),
            sig2=float(start.sig2),
            log_step_eta=[np.full(e.shape, np.log(config.init_step_eta)) for e in eta],
            log_step_sig2=float(np.log(config.init_step_log_sig2)),
            rng=rng if rng is not None else np.random.default_rng(config.seed),
        )

    @property
    def n_groups(self) -> int:
        return len(self.eta)

    @property
    def n_points(self) -> int:
        return int(self.eta[0].shape[0])

    @property
    def n_subjects(self) -> List[int]:
        return [int(e.shape[1]) for e in self.eta]

    def group_locations(self) -> List[np.ndarray]:
        """``mu_gk = beta0_k + beta1_k * [g == 2]`` on the logit scale, per group."""
        return [self.beta0 + (self.beta1 if g == 1 else 0.0) for g in range(self.n_groups)]

    def r(self) -> List[np.ndarray]:
        return [eta_to_r(e) for e in self.eta]

    def to_vector(self) -> np.ndarray:
        """Flatten in trace column order (see ``default_parameter_names``)."""
        parts = [r_g.ravel() for r_g in self.r()]
        parts.append(self.beta0)
        if self.n_groups > 1:
            parts.append(self.beta1)
        parts.append(self.sigma2_r)
        parts.append(np.array([self.sig2]))
        return np.concatenate(parts).astype(np.float64)

    def to_arrays(self) -> Dict[str, np.ndarray]:
        """Plain arrays for ``.npz`` checkpoints; the RNG state is stored as a JSON string."""
        out: Dict[str, np.ndarray] = {
            "beta0": self.beta0,
            "beta1": self.beta1,
            "sigma2_r": self.sigma2_r,
            "sig2": np.array(self.sig2),
            "log_step_sig2": np.array(self.log_step_sig2),
            "n_iterations": np.array(self.n_iterations, dtype=np.int64),
            "n_groups": np.array(self.n_groups, dtype=np.int64),
            "rng_state": np.array(json.dumps(self.rng.bit_generator.state)),
        }
        for g in range(self.n_groups):
            out[f"eta_g{g + 1}"] = self.eta[g]
            out[f"log_step_eta_g{g + 1}"] = self.log_step_eta[g]
        return out

    @classmethod
    def from_arrays(cls, arrays: Dict[str, np.ndarray]) -> "SamplerState":
        n_groups = int(arrays["n_groups"])
        rng = np.random.default_rng()
        rng.bit_generator.state = json.loads(str(arrays["rng_state"]))
        return cls(
            eta=[np.asarray(arrays[f"eta_g{g + 1}"], dtype=np.float64) for g in range(n_groups)],
            beta0=np.asarray(arrays["beta0"], dtype=np.float64),
            beta1=np.asarray(arrays["beta1"], dtype=np.float64),
            sigma2_r=np.asarray(arrays["sigma2_r"], dtype=np.float64),
            sig2=float(arrays["sig2"]),
            log_step_eta=[np.asarray(arrays[f"log_step_eta_g{g + 1}"], dtype=np.float64) for g in range(n_groups)],
            log_step_sig2=float(arrays["log_step_sig2"]),
            rng=rng,
            n_iterations=int(arrays["n_iterations"]),
        )


@dataclass
class EStepResult:
    """Retained draws of one E-step."""

    draws: np.ndarray  # (n_keep, n_par) in name order
    names: List[str]
    latencies: List[np.ndarray]  # per group, (n_keep, K, S_g)
    sig2: np.ndarray  # (n_keep,)
    acceptance: Dict[str, float]  # post-burn-in rates of the Metropolis-updated parameters
    step_sizes: Dict[str, float]


def _current_logliks(
    state: SamplerState,
    gp: DerivativeGP,
    y_groups: Sequence[np.ndarray],
    windows: Sequence[SearchWindow],
) -> List[np.ndarray]:
    # The current state must be valid; NumericalError propagates from here.
    out = []
    for g, y in enumerate(y_groups):
        t = eta_to_latency(state.eta[g], windows)
        out.append(np.array([gp.loglik(y[:, s], t[:, s], state.sig2) for s in range(y.shape[1])]))
    return out


def _update_latencies(
    state: SamplerState,
    gp: DerivativeGP,
    y_groups: Sequence[np.ndarray],
    windows: Sequence[SearchWindow],
    cur_ll: List[np.ndarray],
    accepted: List[np.ndarray],
) -> None:
    mus = state.group_locations()
    rng = state.rng
    for g, y in enumerate(y_groups):
        eta_g = state.eta[g]
        for s in range(y.shape[1]):
            for k in range(state.n_points):
                prop = eta_g[:, s].copy()
                prop[k] += np.exp(state.log_step_eta[g][k, s]) * rng.standard_normal()
                ll_prop = gp.safe_loglik(y[:, s], eta_to_latency(prop, windows), state.sig2)
                log_alpha = (
                    ll_prop
                    + normal_logpdf(prop[k], mus[g][k], state.sigma2_r[k])
                    - cur_ll[g][s]
                    - normal_logpdf(eta_g[k, s], mus[g][k], state.sigma2_r[k])
                )
                if np.isfinite(log_alpha) and np.log(rng.random()) < log_alpha:
                    eta_g[k, s] = prop[k]
                    cur_ll[g][s] = ll_prop
                    accepted[g][k, s] += 1


def _gibbs_regression(state: SamplerState, config: MCEMConfig) -> None:
    """Draw ``(beta0_k, beta1_k)`` from their conjugate normal full conditional."""
    rng = state.rng
    two_groups = state.n_groups > 1
    for k in range(state.n_points):
        e = np.concatenate([eta_g[k, :] for eta_g in state.eta])
        cols = [np.ones_like(e)]
        if two_groups:
            cols.append(np.concatenate([np.full(eta_g.shape[1], float(g == 1)) for g, eta_g in enumerate(state.eta)]))
        X = np.column_stack(cols)
        s2 = float(state.sigma2_r[k])
        prec = X.T @ X / s2 + np.eye(X.shape[1]) / float(config.beta_prior_var)
        L = linalg.cholesky(prec, lower=True)
        mean = linalg.cho_solve((L, True), X.T @ e / s2)
        beta = mean + linalg.solve_triangular(L.T, rng.standard_normal(X.shape[1]), lower=False)
        state.beta0[k] = beta[0]
        if two_groups:
            state.beta1[k] = beta[1]


def _gibbs_variance_components(state: SamplerState, config: MCEMConfig) -> None:
    rng = state.rng
    mus = state.group_locations()
    for k in range(state.n_points):
        resid = np.concatenate([eta_g[k, :] - mus[g][k] for g, eta_g in enumerate(state.eta)])
        shape = float(config.sigma2_r_shape) + 0.5 * resid.size
        rate = float(config.sigma2_r_rate) + 0.5 * float(resid @ resid)
        state.sigma2_r[k] = 1.0 / rng.gamma(shape, 1.0 / rate)


def _update_noise(
    state: SamplerState,
    gp: DerivativeGP,
    y_groups: Sequence[np.ndarray],
    windows: Sequence[SearchWindow],
    cur_ll: List[np.ndarray],
    config: MCEMConfig,
) -> bool:
    rng = state.rng
    log_cur = np.log(state.sig2)
    log_prop = log_cur + np.exp(state.log_step_sig2) * rng.standard_normal()
    sig2_prop = float(np.exp(log_prop))

    prop_ll: List[np.ndarray] = []
    for g, y in enumerate(y_groups):
        t = eta_to_latency(state.eta[g], windows)
        ll = np.array([gp.safe_loglik(y[:, s], t[:, s], sig2_prop) for s in range(y.shape[1])])
        prop_ll.append(ll)
        if not np.all(np.isfinite(ll)):
            return False

    log_alpha = (
        sum(float(np.sum(ll)) for ll in prop_ll)
        - sum(float(np.sum(ll)) for ll in cur_ll)
        + inverse_gamma_logpdf(sig2_prop, config.ga_shape, config.ga_rate)
        - inverse_gamma_logpdf(state.sig2, config.ga_shape, config.ga_rate)
        + (log_prop - log_cur)
    )
    if np.isfinite(log_alpha) and np.log(rng.random()) < log_alpha:
        state.sig2 = sig2_prop
        for g in range(len(cur_ll)):
            cur_ll[g][:] = prop_ll[g]
        return True
    return False


def _adapt_steps(
    state: SamplerState,
    batch_eta: List[np.ndarray],
    batch_sig2: int,
    n_batch_iter: int,
    batch_index: int,
    config: MCEMConfig,
) -> None:
    low, high = config.target_accept
    delta = min(float(config.adapt_max_delta), 1.0 / np.sqrt(float(batch_index)))
    for g in range(state.n_groups):
        rate = batch_eta[g] / float(n_batch_iter)
        state.log_step_eta[g][rate < low] -= delta
        state.log_step_eta[g][rate > high] += delta
    rate_sig2 = batch_sig2 / float(n_batch_iter)
    if rate_sig2 < low:
        state.log_step_sig2 -= delta
    elif rate_sig2 > high:
        state.log_step_sig2 += delta


def run_e_step(
    state: SamplerState,
    gp: DerivativeGP,
    y_groups: Sequence[np.ndarray],
    windows: Sequence[SearchWindow],
    config: MCEMConfig,
    *,
    n_mcmc: int,
    burn: int,
    thin: int,
    names: Sequence[str],
) -> EStepResult:
    """
    Run ``n_mcmc`` sweeps from ``state`` (mutated in place) with hyperparameters fixed in ``gp``.

    Iteration ``i`` is retained when ``i >= burn`` and ``(i - burn + 1) % thin == 0``,
    giving ``floor((n_mcmc - burn) / thin)`` rows.
    """
    n_mcmc, burn, thin = int(n_mcmc), int(burn), int(thin)
    names = list(names)
    n_keep = (n_mcmc - burn) // thin
    n_par = len(names)
    K = state.n_points

    draws = np.empty((n_keep, n_par), dtype=np.float64)
    latencies = [np.empty((n_keep, K, n_s), dtype=np.float64) for n_s in state.n_subjects]
    sig2_draws = np.empty((n_keep,), dtype=np.float64)

    cur_ll = _current_logliks(state, gp, y_groups, windows)

    batch_eta = [np.zeros(e.shape, dtype=np.int64) for e in state.eta]
    batch_sig2 = 0
    batch_index = 0
    post_eta = [np.zeros(e.shape, dtype=np.int64) for e in state.eta]
    post_sig2 = 0

    row = 0
    for i in range(n_mcmc):
        in_burn = i < burn
        acc_eta = batch_eta if in_burn else post_eta
        _update_latencies(state, gp, y_groups, windows, cur_ll, acc_eta)
        _gibbs_regression(state, config)
        _gibbs_variance_components(state, config)
        sig2_accepted = _update_noise(state, gp, y_groups, windows, cur_ll, config)
        state.n_iterations += 1

        if in_burn:
            batch_sig2 += int(sig2_accepted)
            if (i + 1) % int(config.adapt_interval) == 0:
                batch_index += 1
                _adapt_steps(state, batch_eta, batch_sig2, int(config.adapt_interval), batch_index, config)
                for b in batch_eta:
                    b[:] = 0
                batch_sig2 = 0
            continue

        post_sig2 += int(sig2_accepted)
        if (i - burn + 1) % thin == 0:
            draws[row] = state.to_vector()
            for g in range(state.n_groups):
                latencies[g][row] = eta_to_latency(state.eta[g], windows)
            sig2_draws[row] = state.sig2
            row += 1

    n_post = float(n_mcmc - burn)
    acceptance: Dict[str, float] = {}
    step_sizes: Dict[str, float] = {}
    col = 0
    for g in range(state.n_groups):
        rates = (post_eta[g] / n_post).ravel()
        steps = np.exp(state.log_step_eta[g]).ravel()
        for j in range(rates.size):
            acceptance[names[col + j]] = float(rates[j])
            step_sizes[names[col + j]] = float(steps[j])
        col += rates.size
    acceptance[names[-1]] = float(post_sig2 / n_post)
    step_sizes[names[-1]] = float(np.exp(state.log_step_sig2))

    logger.debug(
        "E-step done: n_mcmc=%d burn=%d thin=%d kept=%d mean_accept=%.3f",
        n_mcmc, burn, thin, n_keep, float(np.mean(list(acceptance.values()))),
    )
    return EStepResult(
        draws=draws,
        names=names,
        latencies=latencies,
        sig2=sig2_draws,
        acceptance=acceptance,
        step_sizes=step_sizes,
    )
