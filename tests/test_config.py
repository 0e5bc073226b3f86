"""Tests for AnalysisConfig."""

from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import pytest

from stormtail import AnalysisConfig
from stormtail.errors import ConfigurationError


@pytest.fixture
def values() -> np.ndarray:
    return np.random.default_rng(5).gamma(2.0, 1.0, 500)


class TestAnalysisConfig:
    """Tests for AnalysisConfig dataclass."""

    def test_defaults(self) -> None:
        config = AnalysisConfig()
        assert config.phiu == "empirical"
        assert config.min_tail_count == 50
        assert config.executor == "process"
        assert config.return_periods == (10.0, 50.0, 100.0)
        assert config.retained_per_chain == 1800

    def test_retained_per_chain(self) -> None:
        """6000 iterations, 1000 burn-in, thin 5 keeps 1000 draws."""
        config = AnalysisConfig(mcmc_chain_length=6000, mcmc_burnin=1000, mcmc_thin=5)
        assert config.retained_per_chain == 1000

    def test_normalisation(self) -> None:
        config = AnalysisConfig(
            phiu="EMPIRICAL", executor="Thread", return_periods=[20, 200], prior_lower=[0, None, 1, -1]
        )
        assert config.phiu == "empirical"
        assert config.executor == "thread"
        assert config.return_periods == (20.0, 200.0)
        assert config.prior_lower == (0.0, None, 1.0, -1.0)

    def test_from_dict_unknown_key(self) -> None:
        with pytest.raises(ConfigurationError, match="chain_len"):
            AnalysisConfig.from_dict({"chain_len": 100})

    def test_dict_round_trip(self) -> None:
        config = AnalysisConfig(mcmc_n_chains=2, phiu=0.2, mcmc_tune=(0.1, 0.1, 0.1, 0.01))
        assert AnalysisConfig.from_dict(config.to_dict()) == config

    def test_from_json(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"mcmc_n_chains": 2, "data_offset": 1.5}))
        config = AnalysisConfig.from_json(path)
        assert config.mcmc_n_chains == 2
        assert config.data_offset == 1.5

    def test_from_json_requires_object(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text("[1, 2]")
        with pytest.raises(ConfigurationError):
            AnalysisConfig.from_json(path)

    def test_resolved_workers(self) -> None:
        assert AnalysisConfig(mcmc_n_chains=4, worker_count=2).resolved_workers() == 2
        assert AnalysisConfig(mcmc_n_chains=1, worker_count=8).resolved_workers() == 1

    def test_bounds_for_overrides(self, values: np.ndarray) -> None:
        config = AnalysisConfig(prior_lower=[None, None, 1.0, -0.5], prior_upper=[10, None, None, 0.5])
        bounds = config.bounds_for(values)
        np.testing.assert_array_equal(bounds.lower, [0.0, 0.0, 1.0, -0.5])
        assert bounds.upper[0] == 10.0
        assert bounds.upper[1] == np.inf
        assert bounds.upper[2] == np.sort(values)[-50]
        assert bounds.upper[3] == 0.5


class TestValidate:
    def test_valid(self, values: np.ndarray) -> None:
        AnalysisConfig().validate(values)

    @pytest.mark.parametrize(
        "kwargs, match",
        [
            ({"mcmc_burnin": 10_000}, "retains no samples"),
            ({"mcmc_thin": 0}, "mcmc_thin"),
            ({"executor": "cluster"}, "executor"),
            ({"phiu": 1.5}, "phiu"),
            ({"bulk_family": "lognormal"}, "lognormal"),
            ({"hpd_mass": 1.0}, "hpd_mass"),
            ({"credible_probs": (0.0, 0.5)}, "credible_probs"),
            ({"mcmc_tune": (0.1, 0.1)}, "mcmc_tune"),
            ({"mcmc_start_perturbation": (0.1, 0.1, -0.1, 0.1)}, "positive"),
            ({"prior_upper": (1.0,)}, "prior_upper"),
            ({"worker_count": 0}, "worker_count"),
            ({"return_periods": (-10.0,)}, "return_periods"),
            ({"convergence_tol": 0.0}, "convergence_tol"),
        ],
    )
    def test_invalid(self, values: np.ndarray, kwargs: dict, match: str) -> None:
        with pytest.raises(ConfigurationError, match=match):
            AnalysisConfig(**kwargs).validate(values)

    def test_too_few_observations(self) -> None:
        with pytest.raises(ConfigurationError, match="at least 50 observations"):
            AnalysisConfig().validate(np.linspace(0.1, 1.0, 30))

    def test_missing_values_ignored_for_counts(self, values: np.ndarray) -> None:
        with_gaps = np.append(values, [np.nan, np.nan])
        AnalysisConfig().validate(with_gaps)

    def test_return_periods_checked_against_rate(self, values: np.ndarray) -> None:
        """Each return period must span more than one event at the annual rate."""
        config = AnalysisConfig(return_periods=(1.0, 100.0))
        config.validate(values)
        config.validate(values, annual_rate=10.0)
        with pytest.raises(ConfigurationError, match=r"Return periods \[1.0\]"):
            config.validate(values, annual_rate=0.5)

    @pytest.mark.parametrize("rate", [0.0, -1.0, float("nan")])
    def test_invalid_annual_rate(self, rate: float) -> None:
        with pytest.raises(ConfigurationError, match="annual_rate"):
            AnalysisConfig().validate_return_periods(rate)
