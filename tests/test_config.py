import json

import numpy as np
import pytest

from erplatency.config import (
    MCEMConfig,
    StartValues,
    default_parameter_names,
    load_config,
    n_kept_draws,
    validate_parameter_names,
)
from erplatency.errors import ConfigError


def test_default_parameter_names_two_groups():
    names = default_parameter_names(2, [2, 1])
    assert names == [
        "r1_g1_s1", "r1_g1_s2", "r2_g1_s1", "r2_g1_s2",
        "r1_g2_s1", "r2_g2_s1",
        "beta0_1", "beta0_2", "beta1_1", "beta1_2",
        "sigma2_r1", "sigma2_r2", "sig2",
    ]


def test_default_parameter_names_single_group_has_no_slope():
    names = default_parameter_names(1, [3])
    assert not any(n.startswith("beta1") for n in names)
    assert len(names) == 3 + 1 + 1 + 1


def test_validate_parameter_names_length_mismatch():
    with pytest.raises(ConfigError):
        validate_parameter_names(["a", "b"], 2, [3])


def test_validate_parameter_names_duplicates():
    names = default_parameter_names(1, [1])
    names[-1] = names[0]
    with pytest.raises(ConfigError):
        validate_parameter_names(names, 1, [1])


@pytest.mark.parametrize(
    "n,burn,thin,expected",
    [(100, 0, 1, 100), (100, 10, 3, 30), (53, 10, 4, 10), (5000, 1000, 5, 800)],
)
def test_n_kept_draws(n, burn, thin, expected):
    assert n_kept_draws(n, burn, thin) == expected


@pytest.mark.parametrize(
    "changes",
    [
        {"burn_e": 1000},  # burn >= n_mcmc
        {"thin_final": 0},
        {"n_mcmc_final": 10, "burn_final": 5, "thin_final": 6},  # keeps nothing
        {"target_accept": (0.6, 0.3)},
        {"ga_shape": 0.0},
        {"tau_bounds": (1.0, 0.5)},
        {"n_em_iter": 0},
        {"em_tol": -1.0},
    ],
)
def test_invalid_config_raises(changes):
    with pytest.raises(ConfigError):
        MCEMConfig(**changes)


def test_config_from_dict_rejects_unknown_keys():
    with pytest.raises(ConfigError):
        MCEMConfig.from_dict({"n_mcmc_e": 10, "burn_e": 1, "bogus": 1})


def test_config_replace_keeps_other_fields():
    cfg = MCEMConfig(seed=5).replace(n_em_iter=3)
    assert cfg.n_em_iter == 3
    assert cfg.seed == 5
    assert cfg.target_accept == (0.2, 0.5)


def test_load_config_yaml(tmp_path):
    p = tmp_path / "mcem.yaml"
    p.write_text(
        "mcem:\n"
        "  n_mcmc_e: 200\n"
        "  burn_e: 100\n"
        "  thin_e: 2\n"
        "  target_accept: [0.25, 0.45]\n"
        "  seed: 9\n",
        encoding="utf-8",
    )
    cfg = load_config(p)
    assert cfg.n_mcmc_e == 200
    assert cfg.thin_e == 2
    assert cfg.target_accept == (0.25, 0.45)
    assert cfg.seed == 9


def test_load_config_json(tmp_path):
    p = tmp_path / "mcem.json"
    p.write_text(json.dumps({"n_em_iter": 4, "ga_rate": 0.5}), encoding="utf-8")
    cfg = load_config(p)
    assert cfg.n_em_iter == 4
    assert cfg.ga_rate == 0.5


def test_load_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_start_values_from_data_validate():
    y = [np.random.default_rng(0).standard_normal((20, 3))]
    x = np.linspace(0.0, 1.0, 20)
    start = StartValues.from_data(y, x, n_points=2)
    start.validate(2, [3])
    assert start.r[0].shape == (2, 3)
    assert start.beta1 is None
    assert start.vector_size() == len(default_parameter_names(2, [3]))


def test_start_values_from_mapping_overrides_and_checks():
    y = [np.zeros((10, 2)) + np.arange(10)[:, None], np.ones((10, 1)) * np.arange(10)[:, None]]
    x = np.linspace(0.0, 1.0, 10)
    defaults = StartValues.from_data(y, x, n_points=1)
    start = StartValues.from_mapping({"r_g1": [[0.2, 0.4]], "sig2": 0.5, "h": 0.2}, defaults)
    start.validate(1, [2, 1])
    np.testing.assert_allclose(start.r[0], [[0.2, 0.4]])
    assert start.sig2 == 0.5 and start.h == 0.2

    with pytest.raises(ConfigError):
        StartValues.from_mapping({"unknown": 1}, defaults)
    bad = StartValues.from_mapping({"r_g1": [[0.0, 0.4]]}, defaults)
    with pytest.raises(ConfigError):
        bad.validate(1, [2, 1])
    bad_shape = StartValues.from_mapping({"r_g2": [[0.5, 0.5]]}, defaults)
    with pytest.raises(ConfigError):
        bad_shape.validate(1, [2, 1])
