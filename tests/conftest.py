"""Shared fixtures: synthetic samples drawn from the mixture itself."""

from __future__ import annotations

import numpy as np
import pytest

from stormtail import AnalysisConfig, MixtureLikelihood, MixtureModel, ObservationSet

TRUE_PARAMS = np.array([2.0, 1.0, 3.0, 0.1])
TRUE_PHIU = 0.1


@pytest.fixture(scope="session")
def true_model() -> MixtureModel:
    """Gamma(2, 1) bulk, threshold 3, xi = 0.1, 10% of the mass in the tail."""
    return MixtureModel(TRUE_PARAMS, phiu=TRUE_PHIU)


@pytest.fixture(scope="session")
def wave_sample(true_model: MixtureModel) -> np.ndarray:
    """3000 draws from the true mixture."""
    return true_model.rvs(3000, rng=np.random.default_rng(42))


@pytest.fixture(scope="session")
def likelihood(wave_sample: np.ndarray) -> MixtureLikelihood:
    return MixtureLikelihood(wave_sample, phiu=TRUE_PHIU)


@pytest.fixture
def fast_config() -> AnalysisConfig:
    """Small settings that keep fits and chains quick."""
    return AnalysisConfig(
        phiu=TRUE_PHIU,
        n_starts=2,
        verify_draws=5_000,
        mcmc_chain_length=1_500,
        mcmc_burnin=500,
        mcmc_thin=2,
        mcmc_n_chains=3,
        mcmc_start_perturbation=(0.01, 0.01, 0.01, 0.005),
        mcmc_tune=(0.03, 0.02, 0.03, 0.02),
        executor="thread",
        return_periods=(10.0, 100.0),
    )


@pytest.fixture(scope="session")
def observations(wave_sample: np.ndarray) -> ObservationSet:
    return ObservationSet.from_raw(wave_sample)
