"""Tests for the maximum-likelihood fit."""

import numpy as np
import pytest

from stormtail import (
    AnalysisConfig,
    DomainError,
    FittedModel,
    MixtureModel,
    ObservationSet,
    OptimizationError,
    fit_mixture,
)
from stormtail.fitting import OPTIMIZER_METHODS, default_start, random_start


@pytest.fixture(scope="module")
def recovery_sample():
    """5000 draws: gamma(1, 1) bulk, u = 1.2, xi = -0.2, 30% tail."""
    model = MixtureModel([1.0, 1.0, 1.2, -0.2], phiu=0.3)
    return model.rvs(5000, rng=np.random.default_rng(2024))


@pytest.fixture(scope="module")
def recovered(recovery_sample):
    config = AnalysisConfig(phiu=0.3, n_starts=4)
    return fit_mixture(recovery_sample, config, rng=np.random.default_rng(7))


RECOVERY_PARAMS = np.array([1.0, 1.0, 1.2, -0.2])


@pytest.fixture(scope="module")
def recovery_model():
    return MixtureModel(RECOVERY_PARAMS, phiu=0.3)


@pytest.fixture(scope="module")
def quantile_grid_sample(recovery_model):
    """5000 quantiles at evenly spaced probabilities, so sampling noise cannot blur recovery."""
    return recovery_model.ppf((np.arange(5000) + 0.5) / 5000)


class TestRecoveryWithinTenPercent:
    @pytest.mark.parametrize("seed", [7, 11])
    def test_each_parameter_within_ten_percent(self, quantile_grid_sample, seed):
        config = AnalysisConfig(phiu=0.3, n_starts=3)
        fitted = fit_mixture(quantile_grid_sample, config, rng=np.random.default_rng(seed))
        np.testing.assert_allclose(fitted.params, RECOVERY_PARAMS, rtol=0.1)

    @pytest.mark.parametrize("seed", [0, 5])
    def test_default_config(self, quantile_grid_sample, recovery_model, seed):
        """Empirical phiu (the default) fits without error and reproduces the upper tail."""
        fitted = fit_mixture(quantile_grid_sample, rng=np.random.default_rng(seed))
        assert np.isfinite(fitted.nll)
        assert fitted.phiu == pytest.approx(np.mean(quantile_grid_sample > fitted.params[2]))
        assert fitted.ppf(0.99) == pytest.approx(recovery_model.ppf(0.99), rel=0.05)

    def test_default_config_on_random_draws(self, recovery_sample, recovery_model):
        fitted = fit_mixture(recovery_sample, rng=np.random.default_rng(3))
        assert np.isfinite(fitted.nll)
        assert fitted.ppf(0.99) == pytest.approx(recovery_model.ppf(0.99), rel=0.1)


class TestParameterRecovery:
    def test_recovers_parameters(self, recovered):
        """MLE from random draws lands near the generating parameters."""
        gshape, gscale, u, xi = recovered.params
        assert abs(gshape - 1.0) < 0.3
        assert abs(gscale - 1.0) < 0.3
        assert abs(u - 1.2) < 0.6
        assert abs(xi + 0.2) < 0.15

    def test_fitted_fields(self, recovered, recovery_sample):
        assert isinstance(recovered, FittedModel)
        assert recovered.phiu == 0.3
        assert recovered.n_obs == len(recovery_sample)
        assert recovered.sigmau > 0
        assert np.isfinite(recovered.nll)
        assert recovered.verification is None

    def test_params_read_only(self, recovered):
        with pytest.raises(ValueError):
            recovered.params[0] = 2.0

    def test_both_optimizers_reported(self, recovered):
        assert tuple(run.method for run in recovered.runs) == OPTIMIZER_METHODS
        assert all(run.n_starts == 4 for run in recovered.runs)
        best = min(run.nll for run in recovered.runs if run.found)
        assert recovered.nll == pytest.approx(best)

    def test_agreement_fields(self, recovered):
        """Agreement diagnostics are recorded whether or not the optimizers agree."""
        assert recovered.param_difference >= 0
        assert recovered.nll_difference >= 0
        if all(run.found for run in recovered.runs):
            assert np.isfinite(recovered.param_difference)
        assert isinstance(recovered.agreement_failed, bool)

    def test_quantile_functions_delegate(self, recovered):
        p = np.array([0.1, 0.5, 0.9, 0.99])
        np.testing.assert_allclose(recovered.cdf(recovered.ppf(p)), p, atol=1e-8)
        assert np.max(np.abs(recovered.inverse_check(p))) < 1e-8

    def test_as_dict(self, recovered):
        d = recovered.as_dict()
        assert set(d) == {"gshape", "gscale", "u", "xi", "phiu", "sigmau", "nll"}


class TestFitOptions:
    def test_offset_added_back(self, wave_sample):
        """Raw data are shifted by the offset and return levels shifted back."""
        config = AnalysisConfig(phiu=0.1, n_starts=2, data_offset=10.0)
        fitted = fit_mixture(wave_sample + 10.0, config, rng=np.random.default_rng(1))
        assert fitted.data_offset == 10.0
        assert fitted.return_level(100, 10) == pytest.approx(fitted.model.ppf(0.999) + 10.0)

    def test_observation_set_input(self, observations):
        config = AnalysisConfig(phiu="empirical", n_starts=2)
        fitted = fit_mixture(observations, config, rng=np.random.default_rng(3))
        u = fitted.params[2]
        assert fitted.phiu == pytest.approx(np.mean(observations.values > u))

    def test_explicit_initial_guess(self, wave_sample):
        config = AnalysisConfig(phiu=0.1, n_starts=1)
        fitted = fit_mixture(wave_sample, config, initial_guess=[2.0, 1.0, 3.0, 0.1])
        assert abs(fitted.params[3] - 0.1) < 0.2

    def test_bad_initial_guess(self, wave_sample):
        config = AnalysisConfig(phiu=0.1, n_starts=1)
        with pytest.raises(DomainError):
            fit_mixture(wave_sample, config, initial_guess=[2.0, 1.0])
        with pytest.raises(ValueError):
            fit_mixture(wave_sample, config, initial_guess="best")

    def test_no_finite_start_raises(self, wave_sample):
        """A threshold box above every observation leaves no finite likelihood."""
        top = float(wave_sample.max())
        config = AnalysisConfig(
            phiu=0.1,
            n_starts=3,
            prior_lower=[None, None, top + 1.0, None],
            prior_upper=[None, None, top + 2.0, None],
        )
        with pytest.raises(OptimizationError) as excinfo:
            fit_mixture(wave_sample, config, rng=np.random.default_rng(0))
        assert excinfo.value.n_starts == 3


class TestStartingPoints:
    def test_default_start_inside_box(self, likelihood):
        start = default_start(likelihood)
        assert likelihood.in_bounds(start)
        assert start[2] < likelihood.tail_cap
        assert np.isfinite(likelihood(start))

    def test_random_start_inside_box(self, likelihood):
        rng = np.random.default_rng(11)
        for _ in range(20):
            assert likelihood.in_bounds(random_start(likelihood, rng))
