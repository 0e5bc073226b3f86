"""Tests for the single-chain Metropolis sampler."""

import logging

import numpy as np
import pytest

from stormtail import (
    Chain,
    ConfigurationError,
    InitializationError,
    MetropolisSampler,
    MixtureLikelihood,
    ParameterBounds,
    SamplerState,
)

TRUE_PARAMS = np.array([2.0, 1.0, 3.0, 0.1])
PERTURBATION = np.array([0.01, 0.01, 0.01, 0.005])
TUNE = np.array([0.03, 0.02, 0.03, 0.02])


def make_sampler(likelihood, seed=0, **kwargs):
    options = dict(
        centre=TRUE_PARAMS,
        start_perturbation=PERTURBATION,
        tune=TUNE,
        chain_length=1000,
        rng=np.random.default_rng(seed),
    )
    options.update(kwargs)
    return MetropolisSampler(likelihood, **options)


class _CountingLikelihood:
    """Wraps a likelihood and counts evaluations."""

    def __init__(self, inner):
        self.inner = inner
        self.calls = 0

    def in_bounds(self, params):
        return self.inner.in_bounds(params)

    def model(self, params):
        return self.inner.model(params)

    def __call__(self, params):
        self.calls += 1
        return self.inner(params)


class _FirstCallInvalid(_CountingLikelihood):
    """Reports an infinite likelihood on the first evaluation only."""

    def __call__(self, params):
        self.calls += 1
        return np.inf if self.calls == 1 else self.inner(params)


@pytest.fixture(scope="module")
def long_chain(likelihood):
    sampler = make_sampler(
        likelihood,
        seed=1,
        chain_length=6000,
        burnin=1000,
        thin=5,
        return_periods=(10.0, 100.0),
        annual_rate=10.0,
        data_offset=2.0,
    )
    chain = sampler.run()
    return sampler, chain


class TestRun:
    def test_retained_count(self, long_chain):
        """6000 iterations, 1000 burn-in and thin 5 keep 1000 draws."""
        sampler, chain = long_chain
        assert sampler.n_retained == 1000
        assert chain.n_samples == 1000
        assert chain.samples.shape == (1000, 4)
        assert chain.return_levels.shape == (1000, 2)

    def test_state_done(self, long_chain):
        sampler, _ = long_chain
        assert sampler.state == SamplerState.DONE

    def test_draws_inside_box(self, long_chain, likelihood):
        _, chain = long_chain
        assert all(likelihood.in_bounds(s) for s in chain.samples)
        assert all(np.isfinite(likelihood(s)) for s in chain.samples[::50])

    def test_acceptance_rate(self, long_chain):
        _, chain = long_chain
        assert 0.0 < chain.acceptance_rate < 1.0

    def test_return_levels(self, long_chain, likelihood):
        """Return levels are on the raw scale and grow with the period."""
        _, chain = long_chain
        assert np.all(chain.return_levels[:, 1] >= chain.return_levels[:, 0])
        expected = likelihood.model(chain.samples[0]).ppf(0.999) + 2.0
        assert chain.return_levels[0, 1] == pytest.approx(expected)

    def test_statistics(self, long_chain):
        _, chain = long_chain
        assert chain.statistic_names == ("gshape", "gscale", "u", "xi", "rl_10", "rl_100")
        frame = chain.to_frame()
        assert list(frame.columns) == ["chain", "gshape", "gscale", "u", "xi", "rl_10", "rl_100"]
        assert len(frame) == 1000

    def test_arrays_read_only(self, long_chain):
        _, chain = long_chain
        with pytest.raises(ValueError):
            chain.samples[0, 0] = 0.0

    def test_caller_arrays_stay_writable(self):
        samples = np.ones((3, 4))
        start = TRUE_PARAMS.copy()
        chain = Chain(
            index=0,
            samples=samples,
            return_levels=np.empty((3, 0)),
            return_periods=(),
            start=start,
            tune=TUNE.copy(),
            acceptance_rate=0.5,
            bad_starts=0,
        )
        samples[0, 0] = 5.0
        start[0] = 5.0
        assert chain.samples[0, 0] == 1.0
        assert chain.start[0] == TRUE_PARAMS[0]
        assert not chain.samples.flags.writeable

    def test_posterior_near_truth(self, long_chain):
        _, chain = long_chain
        medians = np.median(chain.samples, axis=0)
        assert abs(medians[0] - 2.0) < 0.5
        assert abs(medians[3] - 0.1) < 0.2

    def test_reproducible(self, likelihood):
        a = make_sampler(likelihood, seed=3, chain_length=200).run()
        b = make_sampler(likelihood, seed=3, chain_length=200).run()
        np.testing.assert_array_equal(a.samples, b.samples)

    def test_no_burnin_no_thin(self, likelihood):
        chain = make_sampler(likelihood, chain_length=50).run()
        assert chain.n_samples == 50
        assert chain.return_levels.shape == (50, 0)


class TestAccept:
    def test_out_of_box_rejected_without_evaluation(self, likelihood):
        counting = _CountingLikelihood(likelihood)
        sampler = make_sampler(counting)
        current_nll = likelihood(TRUE_PARAMS)
        ok, nll = sampler.accept(current_nll, np.array([-1.0, 1.0, 3.0, 0.1]))
        assert not ok
        assert nll == current_nll
        assert counting.calls == 0

    def test_better_candidate_always_accepted(self, likelihood):
        sampler = make_sampler(likelihood)
        ok, nll = sampler.accept(np.inf, TRUE_PARAMS)
        assert ok
        assert nll == pytest.approx(likelihood(TRUE_PARAMS))

    def test_invalid_candidate_rejected(self, likelihood):
        """A candidate inside the box with zero likelihood is rejected."""
        sampler = make_sampler(likelihood)
        ok, _ = sampler.accept(0.0, np.array([2.0, 1.0, 3.0, -0.9]))
        assert not ok


class TestStart:
    def test_initialization_error(self, wave_sample):
        """No start is possible when the box excludes every valid threshold."""
        top = float(wave_sample.max())
        bounds = ParameterBounds(
            lower=np.array([0.0, 0.0, top + 1.0, -1000.0]),
            upper=np.array([np.inf, np.inf, top + 2.0, 1000.0]),
        )
        boxed = MixtureLikelihood(wave_sample, bounds=bounds, phiu=0.1)
        sampler = make_sampler(boxed, max_start_attempts=10, index=3)
        with pytest.raises(InitializationError) as excinfo:
            sampler.run()
        assert excinfo.value.attempts == 10
        assert excinfo.value.chain == 3
        assert sampler.bad_starts == 10
        assert sampler.state == SamplerState.REJECTED_START

    def test_single_bad_start_logged(self, likelihood, caplog):
        sampler = make_sampler(_FirstCallInvalid(likelihood), index=2)
        with caplog.at_level(logging.WARNING, logger="stormtail.sampler"):
            _, nll = sampler.draw_start()
        assert np.isfinite(nll)
        assert sampler.bad_starts == 1
        assert "Chain 2: started after 1 bad random starts" in caplog.text

    def test_clean_start_not_logged(self, likelihood, caplog):
        with caplog.at_level(logging.WARNING, logger="stormtail.sampler"):
            make_sampler(likelihood).draw_start()
        assert "bad random starts" not in caplog.text

    def test_start_near_centre(self, likelihood):
        sampler = make_sampler(likelihood)
        start, nll = sampler.draw_start()
        assert np.all(np.abs(start - TRUE_PARAMS) < 10 * PERTURBATION)
        assert np.isfinite(nll)
        assert sampler.state == SamplerState.INITIALIZING


class TestSettings:
    @pytest.mark.parametrize(
        "kwargs",
        [{"chain_length": 0}, {"burnin": -1}, {"thin": 0}, {"return_periods": (10.0,)}],
    )
    def test_invalid(self, likelihood, kwargs):
        with pytest.raises(ConfigurationError):
            make_sampler(likelihood, **kwargs)

    def test_burnin_longer_than_chain(self, likelihood):
        sampler = make_sampler(likelihood, chain_length=100, burnin=200)
        assert sampler.n_retained == 0
        assert sampler.run().n_samples == 0
