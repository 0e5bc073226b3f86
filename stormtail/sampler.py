"""
stormtail.sampler - Random-walk Metropolis chain over the mixture parameters

The prior is uniform over the parameter box, so the acceptance ratio reduces
to the likelihood ratio. Proposals are independent Gaussian steps, which are
symmetric and need no Hastings correction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .core import PARAMETER_NAMES, SamplerState
from .errors import ConfigurationError, InitializationError
from .likelihood import MixtureLikelihood

logger = logging.getLogger(__name__)


def return_level_name(period: float) -> str:
    return f"rl_{period:g}"


@dataclass(frozen=True)
class Chain:
    """
    Retained draws of one chain, after burn-in and thinning.

    Parameters
    ----------
    index : int
        Position of the chain within its run.
    samples : np.ndarray
        Array of shape (n, 4) of ``[gshape, gscale, u, xi]`` draws.
    return_levels : np.ndarray
        Array of shape (n, k); column j is the ``return_periods[j]``-year level.
    return_periods : tuple of float
        Return periods of the derived columns.
    start : np.ndarray
        Accepted starting point.
    tune : np.ndarray
        Proposal step per parameter.
    acceptance_rate : float
        Accepted proposals over all iterations, burn-in included.
    bad_starts : int
        Starting points discarded before the chain could begin.
    """

    index: int
    samples: np.ndarray
    return_levels: np.ndarray
    return_periods: Tuple[float, ...]
    start: np.ndarray
    tune: np.ndarray
    acceptance_rate: float
    bad_starts: int
    names: Tuple[str, ...] = field(default=PARAMETER_NAMES)

    def __post_init__(self) -> None:
        # Frozen copies; the caller's arrays stay writable
        for name in ("samples", "return_levels", "start", "tune"):
            arr = np.array(getattr(self, name), dtype=float)
            arr.setflags(write=False)
            object.__setattr__(self, name, arr)

    @property
    def n_samples(self) -> int:
        return len(self.samples)

    @property
    def statistic_names(self) -> Tuple[str, ...]:
        return self.names + tuple(return_level_name(t) for t in self.return_periods)

    def statistics(self) -> Dict[str, np.ndarray]:
        """Parameter and return-level draws keyed by name."""
        columns = np.column_stack([self.samples, self.return_levels])
        return {name: columns[:, j] for j, name in enumerate(self.statistic_names)}

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame(self.statistics())
        frame.insert(0, "chain", self.index)
        return frame


class MetropolisSampler:
    """
    One random-walk Metropolis chain.

    The sampler moves through ``INITIALIZING -> WARMING_UP -> SAMPLING ->
    DONE``; a start with non-finite likelihood passes through
    ``REJECTED_START`` and back to ``INITIALIZING`` with a fresh draw.

    Parameters
    ----------
    likelihood : MixtureLikelihood
        Target; its box is the support of the uniform prior.
    centre : sequence of float
        Point the start is drawn around (usually the MLE).
    start_perturbation : sequence of float
        Standard deviation of the start noise per parameter.
    tune : sequence of float
        Standard deviation of the proposal step per parameter.
    chain_length : int
        Total iterations including burn-in.
    burnin : int
        Leading iterations discarded.
    thin : int
        Keep every ``thin``-th iterate after burn-in.
    rng : np.random.Generator
        Generator owned by this chain.
    return_periods : sequence of float
        Return periods to derive for each retained draw.
    annual_rate : float, optional
        Events per year; required when ``return_periods`` is not empty.
    data_offset : float
        Added back to return levels.
    max_start_attempts : int
        Start draws before :class:`InitializationError`.
    index : int
        Chain number used in logs and errors.
    """

    def __init__(
        self,
        likelihood: MixtureLikelihood,
        centre: Sequence[float],
        start_perturbation: Sequence[float],
        tune: Sequence[float],
        chain_length: int,
        burnin: int = 0,
        thin: int = 1,
        rng: Optional[np.random.Generator] = None,
        return_periods: Sequence[float] = (),
        annual_rate: Optional[float] = None,
        data_offset: float = 0.0,
        max_start_attempts: int = 100,
        index: int = 0,
    ):
        if chain_length < 1 or burnin < 0 or thin < 1:
            raise ConfigurationError(
                f"Invalid chain settings: length={chain_length}, burnin={burnin}, thin={thin}"
            )
        if return_periods and annual_rate is None:
            raise ConfigurationError("annual_rate is required to derive return levels")

        self.likelihood = likelihood
        self.centre = np.asarray(centre, dtype=float)
        self.start_perturbation = np.asarray(start_perturbation, dtype=float)
        self.tune = np.asarray(tune, dtype=float)
        self.chain_length = int(chain_length)
        self.burnin = int(burnin)
        self.thin = int(thin)
        self.rng = rng if rng is not None else np.random.default_rng()
        self.return_periods = tuple(float(t) for t in return_periods)
        self.annual_rate = annual_rate
        self.data_offset = float(data_offset)
        self.max_start_attempts = int(max_start_attempts)
        self.index = index

        self.state = SamplerState.INITIALIZING
        self.bad_starts = 0

    @property
    def n_retained(self) -> int:
        return max(self.chain_length - self.burnin, 0) // self.thin

    def propose(self, current: np.ndarray) -> np.ndarray:
        return current + self.tune * self.rng.standard_normal(current.shape)

    def accept(self, current_nll: float, candidate: np.ndarray) -> Tuple[bool, float]:
        """
        Metropolis decision for ``candidate``.

        Returns
        -------
        tuple
            (accepted, negative log-likelihood of the resulting state)
        """
        if not self.likelihood.in_bounds(candidate):
            return False, current_nll

        candidate_nll = self.likelihood(candidate)
        if not np.isfinite(candidate_nll):
            return False, current_nll

        log_ratio = min(0.0, current_nll - candidate_nll)
        if self.rng.random() < np.exp(log_ratio):
            return True, candidate_nll
        return False, current_nll

    def draw_start(self) -> Tuple[np.ndarray, float]:
        """Draw a start around ``centre``, retrying on out-of-box or invalid draws."""
        for attempt in range(1, self.max_start_attempts + 1):
            self.state = SamplerState.INITIALIZING
            candidate = self.centre + self.start_perturbation * self.rng.standard_normal(
                self.centre.shape
            )
            if self.likelihood.in_bounds(candidate):
                nll = self.likelihood(candidate)
                if np.isfinite(nll):
                    if self.bad_starts > 0:
                        logger.warning(
                            "Chain %d: started after %d bad random starts",
                            self.index,
                            self.bad_starts,
                        )
                    return candidate, nll

            self.bad_starts += 1
            self.state = SamplerState.REJECTED_START
            logger.debug("Chain %d: bad random start (attempt %d)", self.index, attempt)

        raise InitializationError(self.max_start_attempts, chain=self.index)

    def derived(self, params: np.ndarray) -> np.ndarray:
        """Return levels implied by ``params``."""
        if not self.return_periods:
            return np.empty(0)
        model = self.likelihood.model(params)
        return np.array(
            [
                model.return_level(t, self.annual_rate, offset=self.data_offset)
                for t in self.return_periods
            ]
        )

    def run(self) -> Chain:
        current, current_nll = self.draw_start()
        start = current.copy()

        n_keep = self.n_retained
        samples = np.empty((n_keep, len(current)))
        levels = np.empty((n_keep, len(self.return_periods)))
        kept = 0
        accepted = 0

        self.state = SamplerState.WARMING_UP if self.burnin > 0 else SamplerState.SAMPLING
        for i in range(self.chain_length):
            if i == self.burnin:
                self.state = SamplerState.SAMPLING

            candidate = self.propose(current)
            ok, current_nll = self.accept(current_nll, candidate)
            if ok:
                current = candidate
                accepted += 1

            if i >= self.burnin and (i - self.burnin + 1) % self.thin == 0:
                samples[kept] = current
                levels[kept] = self.derived(current)
                kept += 1

        self.state = SamplerState.DONE
        rate = accepted / self.chain_length
        logger.info(
            "Chain %d done: %d samples kept, acceptance rate %.3f", self.index, kept, rate
        )

        return Chain(
            index=self.index,
            samples=samples,
            return_levels=levels,
            return_periods=self.return_periods,
            start=start,
            tune=self.tune.copy(),
            acceptance_rate=rate,
            bad_starts=self.bad_starts,
        )
