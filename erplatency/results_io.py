"""
``.npz`` persistence for MCEM checkpoints and results.

Checkpoints are written after every outer EM iteration when
``MCEMConfig.checkpoint_path`` is set; they hold the sampler state (including
the RNG state) and the hyperparameter trace so far, which is all
``MCEMDriver.run(resume_from=...)`` needs.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Union

import numpy as np

PathLike = Union[str, Path]


def _npz_path(path: PathLike) -> Path:
    p = Path(path).expanduser()
    return p if p.suffix == ".npz" else p.with_suffix(".npz")


def save_checkpoint(
    path: PathLike,
    *,
    state,
    theta_mat: np.ndarray,
    theta_converged: np.ndarray,
    em_iter: int,
    stopped_early: bool = False,
) -> str:
    """Atomically write a checkpoint (temp file + rename) and return its path."""
    out = _npz_path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    tmp = out.with_name(out.stem + ".tmp.npz")
    arrays = {f"state__{k}": v for k, v in state.to_arrays().items()}
    np.savez_compressed(
        str(tmp),
        theta_mat=np.asarray(theta_mat, dtype=np.float64).reshape(-1, 2),
        theta_converged=np.asarray(theta_converged, dtype=bool),
        em_iter=np.array(int(em_iter), dtype=np.int64),
        stopped_early=np.array(bool(stopped_early)),
        **arrays,
    )
    os.replace(tmp, out)
    return str(out)


def load_checkpoint(path: PathLike) -> Dict[str, Any]:
    """Read a checkpoint written by :func:`save_checkpoint`."""
    from .sampler import SamplerState

    p = _npz_path(path)
    if not p.exists():
        raise FileNotFoundError(f"Checkpoint not found: {p}")
    with np.load(str(p), allow_pickle=False) as data:
        state_arrays = {k[len("state__"):]: data[k] for k in data.files if k.startswith("state__")}
        return {
            "state": SamplerState.from_arrays(state_arrays),
            "theta_mat": np.array(data["theta_mat"]),
            "theta_converged": np.array(data["theta_converged"]),
            "em_iter": int(data["em_iter"]),
            "stopped_early": bool(data["stopped_early"]) if "stopped_early" in data.files else False,
        }


def save_mcem_result(result, path: PathLike) -> str:
    """Write an :class:`erplatency.mcem.MCEMResult` to ``.npz``."""
    out = _npz_path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    names = list(result.mcmc_output.names)
    acc_names = list(result.mcmc_output.acceptance.keys())
    arrays: Dict[str, np.ndarray] = {
        "theta_mat": result.theta_mat,
        "theta_converged": result.theta_converged,
        "draws": result.mcmc_output.draws,
        "names": np.array(names, dtype=str),
        "acceptance_names": np.array(acc_names, dtype=str),
        "acceptance": np.array([result.mcmc_output.acceptance[n] for n in acc_names], dtype=np.float64),
        "step_sizes": np.array([result.mcmc_output.step_sizes.get(n, np.nan) for n in acc_names], dtype=np.float64),
        "windows": np.array([[w.a, w.b] for w in result.windows], dtype=np.float64),
        "sig2": result.sig2,
        "n_groups": np.array(len(result.latencies), dtype=np.int64),
        "config_json": np.array(json.dumps(result.config.to_dict())),
        "meta_json": np.array(json.dumps(result.meta, default=float)),
    }
    for g, lat in enumerate(result.latencies):
        arrays[f"latencies_g{g + 1}"] = lat
    np.savez_compressed(str(out), **arrays)
    return str(out)


def load_mcem_result(path: PathLike):
    """Inverse of :func:`save_mcem_result`."""
    from .config import MCEMConfig
    from .latent_model import SearchWindow
    from .mcem import MCEMResult, MCMCOutput

    p = _npz_path(path)
    if not p.exists():
        raise FileNotFoundError(f"Result file not found: {p}")
    with np.load(str(p), allow_pickle=False) as data:
        acc_names = [str(n) for n in data["acceptance_names"]]
        acceptance = {n: float(v) for n, v in zip(acc_names, data["acceptance"])}
        step_sizes = {n: float(v) for n, v in zip(acc_names, data["step_sizes"])}
        n_groups = int(data["n_groups"])
        return MCEMResult(
            theta_mat=np.array(data["theta_mat"]),
            theta_converged=np.array(data["theta_converged"]),
            mcmc_output=MCMCOutput(
                draws=np.array(data["draws"]),
                names=[str(n) for n in data["names"]],
                acceptance=acceptance,
                step_sizes=step_sizes,
            ),
            windows=[SearchWindow(float(a), float(b)) for a, b in data["windows"]],
            latencies=[np.array(data[f"latencies_g{g + 1}"]) for g in range(n_groups)],
            sig2=np.array(data["sig2"]),
            config=MCEMConfig.from_dict(json.loads(str(data["config_json"]))),
            meta=json.loads(str(data["meta_json"])),
        )
