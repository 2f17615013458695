"""
Keep package import lightweight.

``import erplatency`` only pulls in the small modules; the sampler, the MCEM
driver and the joblib-backed predictive code are resolved on first attribute
access via PEP 562 ``__getattr__``.
"""

from __future__ import annotations

import importlib
from typing import Any, Dict, Tuple

from .errors import ConfigError, ConvergenceWarning, ErpLatencyError, NumericalError

__version__ = "0.1.0"


# Lazy-exported symbols (module, attr)
_LAZY_EXPORTS: Dict[str, Tuple[str, str]] = {
    # kernels
    "distance_matrix": ("erplatency.kernels", "distance_matrix"),
    "powered_exponential_kernel": ("erplatency.kernels", "powered_exponential_kernel"),
    "covariance_matrix": ("erplatency.kernels", "covariance_matrix"),
    "cholesky_with_jitter": ("erplatency.kernels", "cholesky_with_jitter"),
    # latent model
    "SearchWindow": ("erplatency.latent_model", "SearchWindow"),
    "DerivativeGP": ("erplatency.latent_model", "DerivativeGP"),
    "change_to_r_latency": ("erplatency.latent_model", "change_to_r_latency"),
    "r_to_latency": ("erplatency.latent_model", "r_to_latency"),
    # configuration
    "MCEMConfig": ("erplatency.config", "MCEMConfig"),
    "StartValues": ("erplatency.config", "StartValues"),
    "load_config": ("erplatency.config", "load_config"),
    "default_parameter_names": ("erplatency.config", "default_parameter_names"),
    # sampler / driver
    "SamplerState": ("erplatency.sampler", "SamplerState"),
    "run_e_step": ("erplatency.sampler", "run_e_step"),
    "MCEMDriver": ("erplatency.mcem", "MCEMDriver"),
    "MCEMResult": ("erplatency.mcem", "MCEMResult"),
    "MCMCOutput": ("erplatency.mcem", "MCMCOutput"),
    "mcem_slam": ("erplatency.mcem", "mcem_slam"),
    "latency_draws": ("erplatency.mcem", "latency_draws"),
    # predictive / amplitude
    "PredictiveBundle": ("erplatency.predictive", "PredictiveBundle"),
    "get_pi_t_sig": ("erplatency.predictive", "get_pi_t_sig"),
    "posterior_predictive": ("erplatency.predictive", "posterior_predictive"),
    "get_amp_max": ("erplatency.amplitude", "get_amp_max"),
    "summarize_amplitude": ("erplatency.amplitude", "summarize_amplitude"),
    # simulation / persistence
    "simulate_erp_groups": ("erplatency.simulate", "simulate_erp_groups"),
    "save_mcem_result": ("erplatency.results_io", "save_mcem_result"),
    "load_mcem_result": ("erplatency.results_io", "load_mcem_result"),
}

__all__ = [
    "__version__",
    "ConfigError",
    "ConvergenceWarning",
    "ErpLatencyError",
    "NumericalError",
    *_LAZY_EXPORTS.keys(),
]


def __getattr__(name: str) -> Any:
    """
    Lazy attribute access for heavier modules.

    Example:
      from erplatency import mcem_slam
    """
    if name in _LAZY_EXPORTS:
        mod_name, attr = _LAZY_EXPORTS[name]
        mod = importlib.import_module(mod_name)
        return getattr(mod, attr)
    raise AttributeError(f"module 'erplatency' has no attribute '{name}'")
