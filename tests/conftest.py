import numpy as np
import pytest

from erplatency.config import MCEMConfig
from erplatency.simulate import simulate_erp_groups


@pytest.fixture(scope="session")
def sim_single_group():
    """3 subjects, one group, latencies at r=0.3 in (0, .5) and r=0.7 in (.5, 1)."""
    return simulate_erp_groups(
        n_samples=30,
        n_subjects=(3,),
        r_true=((0.3, 0.7),),
        noise_sd=0.05,
        seed=7,
    )


@pytest.fixture(scope="session")
def sim_two_groups():
    return simulate_erp_groups(
        n_samples=25,
        n_subjects=(2, 2),
        r_true=((0.3, 0.7), (0.4, 0.6)),
        r_sd=0.1,
        noise_sd=0.05,
        seed=11,
    )


@pytest.fixture
def fast_config():
    return MCEMConfig(
        n_mcmc_e=60,
        burn_e=20,
        thin_e=2,
        n_mcmc_final=80,
        burn_final=20,
        thin_final=3,
        n_em_iter=2,
        m_step_max_draws=5,
        m_step_maxiter=20,
        adapt_interval=10,
        seed=123,
    )

