"""
stormtail.chains - Parallel multi-chain MCMC runs

Each chain is an independent task on a worker pool with its own random
generator spawned from one seed sequence. The observation data and the
parameter box are shared read-only; chains never communicate, so the only
synchronisation is the final join.
"""

from __future__ import annotations

import logging
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .config import AnalysisConfig
from .core import PARAMETER_NAMES
from .errors import ConvergenceError, InitializationError
from .fitting import FittedModel
from .likelihood import MixtureLikelihood
from .sampler import Chain, MetropolisSampler, return_level_name

logger = logging.getLogger(__name__)

# Fraction of |MLE| used when no start perturbation / proposal step is configured
DEFAULT_PERTURBATION_FRACTION = 0.05
DEFAULT_TUNE_FRACTION = 0.02
_SCALE_FLOOR = 1e-3


def default_scale(params: np.ndarray, fraction: float) -> np.ndarray:
    """Per-parameter scale proportional to ``|params|`` with a small floor."""
    return np.maximum(fraction * np.abs(np.asarray(params, dtype=float)), _SCALE_FLOOR)


@dataclass(frozen=True)
class ChainTask:
    """Everything a worker needs to run one chain."""

    index: int
    likelihood: MixtureLikelihood
    centre: np.ndarray
    start_perturbation: np.ndarray
    tune: np.ndarray
    chain_length: int
    burnin: int
    thin: int
    seed: np.random.SeedSequence
    return_periods: Tuple[float, ...]
    annual_rate: Optional[float]
    data_offset: float
    max_start_attempts: int


def _run_chain(task: ChainTask) -> Chain:
    sampler = MetropolisSampler(
        task.likelihood,
        centre=task.centre,
        start_perturbation=task.start_perturbation,
        tune=task.tune,
        chain_length=task.chain_length,
        burnin=task.burnin,
        thin=task.thin,
        rng=np.random.default_rng(task.seed),
        return_periods=task.return_periods,
        annual_rate=task.annual_rate,
        data_offset=task.data_offset,
        max_start_attempts=task.max_start_attempts,
        index=task.index,
    )
    return sampler.run()


@dataclass(frozen=True)
class ChainResult:
    """Completed chains of one run with the settings that produced them."""

    chains: Tuple[Chain, ...]
    chain_length: int
    burnin: int
    thin: int
    annual_rate: Optional[float]
    return_periods: Tuple[float, ...]

    @property
    def n_chains(self) -> int:
        return len(self.chains)

    @property
    def acceptance_rates(self) -> List[float]:
        return [c.acceptance_rate for c in self.chains]

    def to_frame(self) -> pd.DataFrame:
        """All retained draws in long format with a 'chain' column."""
        return pd.concat([c.to_frame() for c in self.chains], ignore_index=True)


@dataclass(frozen=True)
class CombinedPosterior:
    """Pooled draws of all chains."""

    samples: np.ndarray
    return_levels: np.ndarray
    return_periods: Tuple[float, ...]
    n_chains: int
    names: Tuple[str, ...] = field(default=PARAMETER_NAMES)

    def __post_init__(self) -> None:
        for name in ("samples", "return_levels"):
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
        columns = np.column_stack([self.samples, self.return_levels])
        return {name: columns[:, j] for j, name in enumerate(self.statistic_names)}

    def median(self) -> Dict[str, float]:
        return {name: float(np.median(x)) for name, x in self.statistics().items()}

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.statistics())


def run_chains(
    fitted: FittedModel,
    likelihood: MixtureLikelihood,
    config: Optional[AnalysisConfig] = None,
    annual_rate: Optional[float] = None,
    seed: Optional[Union[int, np.random.SeedSequence]] = None,
) -> ChainResult:
    """
    Run ``config.mcmc_n_chains`` independent Metropolis chains in parallel.

    Parameters
    ----------
    fitted : FittedModel
        Maximum-likelihood estimate the chain starts are drawn around.
    likelihood : MixtureLikelihood
        Target distribution and prior box.
    config : AnalysisConfig, optional
        Chain settings (defaults if omitted).
    annual_rate : float, optional
        Events per year. Without it no return levels are derived.
    seed : int or SeedSequence, optional
        Root of the per-chain generators.

    Returns
    -------
    ChainResult

    Raises
    ------
    ConfigurationError
        If a return period spans no more than one event at ``annual_rate``.
    InitializationError
        If any chain fails to start; the remaining chains are cancelled.
    """
    config = config or AnalysisConfig()
    n_chains = config.mcmc_n_chains
    if annual_rate is not None:
        config.validate_return_periods(annual_rate)

    perturbation = (
        np.array(config.mcmc_start_perturbation)
        if config.mcmc_start_perturbation is not None
        else default_scale(fitted.params, DEFAULT_PERTURBATION_FRACTION)
    )
    tune = (
        np.array(config.mcmc_tune)
        if config.mcmc_tune is not None
        else default_scale(fitted.params, DEFAULT_TUNE_FRACTION)
    )

    return_periods: Tuple[float, ...] = tuple(config.return_periods)
    if annual_rate is None and return_periods:
        logger.info("No annual event rate given; return levels are not derived")
        return_periods = ()

    seed_seq = seed if isinstance(seed, np.random.SeedSequence) else np.random.SeedSequence(seed)
    tasks = [
        ChainTask(
            index=i,
            likelihood=likelihood,
            centre=np.array(fitted.params),
            start_perturbation=perturbation,
            tune=tune,
            chain_length=config.mcmc_chain_length,
            burnin=config.mcmc_burnin,
            thin=config.mcmc_thin,
            seed=child,
            return_periods=return_periods,
            annual_rate=annual_rate,
            data_offset=fitted.data_offset,
            max_start_attempts=config.max_start_attempts,
        )
        for i, child in enumerate(seed_seq.spawn(n_chains))
    ]

    pool = ProcessPoolExecutor if config.executor == "process" else ThreadPoolExecutor
    workers = config.resolved_workers()
    logger.info(
        "Running %d chains of length %d on %d %s workers",
        n_chains,
        config.mcmc_chain_length,
        workers,
        config.executor,
    )

    chains: List[Optional[Chain]] = [None] * n_chains
    with pool(max_workers=workers) as executor:
        future_to_index = {executor.submit(_run_chain, task): task.index for task in tasks}
        try:
            for future in as_completed(future_to_index):
                chains[future_to_index[future]] = future.result()
        except InitializationError as e:
            for pending in future_to_index:
                pending.cancel()
            logger.error("Aborting multi-chain run: %s", e)
            raise

    return ChainResult(
        chains=tuple(chains),
        chain_length=config.mcmc_chain_length,
        burnin=config.mcmc_burnin,
        thin=config.mcmc_thin,
        annual_rate=annual_rate,
        return_periods=return_periods,
    )


def combine_chains(
    chains: Union[ChainResult, Sequence[Chain]],
    report=None,
    accept_warning: bool = False,
) -> CombinedPosterior:
    """
    Pool the draws of all chains.

    Parameters
    ----------
    chains : ChainResult or sequence of Chain
        Chains to combine.
    report : ConvergenceReport, optional
        Cross-chain comparison. If it flags non-convergence the chains are
        only combined when ``accept_warning`` is True.
    accept_warning : bool
        Combine despite a flagged report.

    Raises
    ------
    ConvergenceError
        If the report flags non-convergence and the warning is not accepted.
    """
    chain_list = list(chains.chains if isinstance(chains, ChainResult) else chains)
    if not chain_list:
        raise ValueError("No chains to combine")

    if report is not None and not report.converged:
        if not accept_warning:
            raise ConvergenceError(
                f"Chains disagree ({len(report.flagged)} quantiles outside tolerance); "
                "pass accept_warning=True to combine anyway"
            )
        logger.warning("Combining %d chains despite convergence warning", len(chain_list))

    periods = chain_list[0].return_periods
    if any(c.return_periods != periods for c in chain_list):
        raise ValueError("Chains derive different return periods and cannot be combined")

    return CombinedPosterior(
        samples=np.concatenate([c.samples for c in chain_list]),
        return_levels=np.concatenate([c.return_levels for c in chain_list]),
        return_periods=periods,
        n_chains=len(chain_list),
    )
