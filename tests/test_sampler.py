import numpy as np
import pytest

from erplatency.config import MCEMConfig, StartValues, default_parameter_names
from erplatency.kernels import distance_matrix
from erplatency.latent_model import DerivativeGP, SearchWindow
from erplatency.sampler import SamplerState, run_e_step


def _bump_problem(n=30, centre=0.5, noise_sd=0.05, seed=3):
    rng = np.random.default_rng(seed)
    x = np.linspace(0.0, 1.0, n)
    y = np.exp(-0.5 * ((x - centre) / 0.15) ** 2)
    y = y - y.mean() + noise_sd * rng.standard_normal(n)
    return x, y[:, None]


def _setup(y, x, windows, config):
    start = StartValues.from_data([y], x, len(windows))
    start.validate(len(windows), [y.shape[1]])
    state = SamplerState.from_start(start, config)
    gp = DerivativeGP(x, distance_matrix(x), tau=float(np.var(y)), h=0.2)
    names = default_parameter_names(len(windows), [y.shape[1]])
    return state, gp, names


def test_trace_row_count_and_column_order():
    x, y = _bump_problem()
    windows = [SearchWindow(0.2, 0.8)]
    cfg = MCEMConfig(seed=1, adapt_interval=5)
    state, gp, names = _setup(y, x, windows, cfg)

    res = run_e_step(state, gp, [y], windows, cfg, n_mcmc=53, burn=10, thin=4, names=names)

    assert res.draws.shape == (10, len(names))
    assert res.names == ["r1_g1_s1", "beta0_1", "sigma2_r1", "sig2"]
    assert res.latencies[0].shape == (10, 1, 1)
    # latency column is the window map of the r column
    np.testing.assert_allclose(res.latencies[0][:, 0, 0], 0.2 + 0.6 * res.draws[:, 0])
    np.testing.assert_allclose(res.sig2, res.draws[:, -1])
    assert np.all((res.draws[:, 0] > 0.0) & (res.draws[:, 0] < 1.0))
    assert np.all(res.draws[:, 2] > 0.0) and np.all(res.sig2 > 0.0)
    assert state.n_iterations == 53
    assert set(res.acceptance) == {"r1_g1_s1", "sig2"}


def test_same_seed_same_chain():
    x, y = _bump_problem()
    windows = [SearchWindow(0.2, 0.8)]
    cfg = MCEMConfig(seed=9, adapt_interval=5)
    a = run_e_step(*_setup(y, x, windows, cfg)[:2], [y], windows, cfg, n_mcmc=30, burn=10, thin=2,
                   names=default_parameter_names(1, [1]))
    b = run_e_step(*_setup(y, x, windows, cfg)[:2], [y], windows, cfg, n_mcmc=30, burn=10, thin=2,
                   names=default_parameter_names(1, [1]))
    np.testing.assert_array_equal(a.draws, b.draws)


@pytest.mark.parametrize("data_seed", [3, 5, 8])
def test_adapted_acceptance_and_latency_location(data_seed):
    x, y = _bump_problem(seed=data_seed)
    windows = [SearchWindow(0.2, 0.8)]
    cfg = MCEMConfig(seed=2024)
    state, gp, names = _setup(y, x, windows, cfg)

    res = run_e_step(state, gp, [y], windows, cfg, n_mcmc=1500, burn=1000, thin=1, names=names)

    low, high = cfg.target_accept
    for name in ("r1_g1_s1", "sig2"):
        assert low - 0.05 <= res.acceptance[name] <= high + 0.05, name
    assert abs(float(np.mean(res.latencies[0][:, 0, 0])) - 0.5) < 0.05


def test_two_group_state_tracks_group_slope(sim_two_groups):
    sim = sim_two_groups
    windows = sim["windows"]
    cfg = MCEMConfig(seed=4, adapt_interval=5)
    start = StartValues.from_data(sim["y"], sim["x"], 2)
    state = SamplerState.from_start(start, cfg)
    gp = DerivativeGP(sim["x"], sim["H0"], tau=1.0, h=0.3)
    names = default_parameter_names(2, [2, 2])

    res = run_e_step(state, gp, sim["y"], windows, cfg, n_mcmc=40, burn=10, thin=3, names=names)

    assert res.draws.shape == (10, len(names))
    assert [lat.shape for lat in res.latencies] == [(10, 2, 2), (10, 2, 2)]
    locs = state.group_locations()
    np.testing.assert_allclose(locs[1] - locs[0], state.beta1)
    # latencies stay inside their windows
    for lat in res.latencies:
        assert np.all((lat[:, 0, :] > 0.0) & (lat[:, 0, :] < 0.5))
        assert np.all((lat[:, 1, :] > 0.5) & (lat[:, 1, :] < 1.0))


def test_state_array_round_trip_restores_rng():
    x, y = _bump_problem()
    cfg = MCEMConfig(seed=77)
    state, _, _ = _setup(y, x, [SearchWindow(0.2, 0.8)], cfg)
    state.rng.standard_normal(5)

    restored = SamplerState.from_arrays(state.to_arrays())

    assert restored.rng.standard_normal() == state.rng.standard_normal()
    np.testing.assert_array_equal(restored.eta[0], state.eta[0])
    assert restored.sig2 == state.sig2


def test_initial_step_sizes_follow_config():
    cfg = MCEMConfig(init_step_eta=0.25, init_step_log_sig2=0.1)
    x, y = _bump_problem()
    state, _, _ = _setup(y, x, [SearchWindow(0.2, 0.8)], cfg)
    assert np.exp(state.log_step_eta[0][0, 0]) == pytest.approx(0.25)
    assert np.exp(state.log_step_sig2) == pytest.approx(0.1)
