"""
Analysis configuration.

Collects every tunable of the fit and the sampler in one dataclass with
defaults, and validates it against the observations before any work starts.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Optional, Sequence, Tuple, Union

import numpy as np

from .core import PARAMETER_NAMES, ObservationSet, ParameterBounds, parse_phiu, tail_threshold_cap
from .distributions import get_bulk_family
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

_EXECUTORS = ("process", "thread")


def _optional_vector(value: Optional[Sequence[Optional[float]]]) -> Optional[Tuple]:
    if value is None:
        return None
    return tuple(None if v is None else float(v) for v in value)


@dataclass
class AnalysisConfig:
    """Configuration for fitting and sampling.

    Parameters
    ----------
    data_offset : float
        Baseline subtracted from the raw measurements before fitting.
        Return levels are reported with the offset added back.
    bulk_family : str
        Bulk distribution below the threshold. Only 'gamma' is registered.
    phiu : str or float
        Tail fraction: 'empirical' (share of observations above u), 'bulk'
        (1 - F_bulk(u)) or a fixed value in (0, 1).
    min_tail_count : int
        The threshold must leave at least this many observations above it.
    prior_lower, prior_upper : sequence of float or None, optional
        Box constraints on [gshape, gscale, u, xi]. ``None`` entries (or a
        ``None`` sequence) fall back to the data-derived defaults.
    n_starts : int
        Starting points per optimizer in the maximum-likelihood fit.
    agreement_tol : float
        Relative tolerance on the negative log-likelihood when comparing
        optimizers.
    parameter_agreement_tol : float
        Relative tolerance on the parameter vector when comparing optimizers.
    verify_tolerance : float
        Largest accepted ``|cdf(ppf(p)) - p|``.
    verify_draws : int
        Number of uniform probabilities checked by the quantile verifier.
    require_verification : bool
        Abort the pipeline if quantile verification fails.
    mcmc_chain_length : int
        Iterations per chain, burn-in included.
    mcmc_burnin : int
        Leading iterations discarded.
    mcmc_thin : int
        Keep every ``mcmc_thin``-th iterate after burn-in.
    mcmc_n_chains : int
        Independent chains.
    mcmc_start_perturbation : sequence of float, optional
        Standard deviation of the noise added to the MLE to start each chain.
        Defaults to 5% of each estimate.
    mcmc_tune : sequence of float, optional
        Standard deviation of the Gaussian proposal step per parameter.
        Defaults to 2% of each estimate.
    max_start_attempts : int
        Start draws per chain before giving up.
    worker_count : int, optional
        Pool size cap; defaults to the number of CPUs.
    executor : str
        'process' or 'thread'.
    return_periods : sequence of float
        Return periods (years) computed for every retained sample.
    convergence_tol : float
        Relative spread of chain quartiles tolerated before flagging
        non-convergence.
    credible_probs : sequence of float
        Probabilities for the equal-tailed interval.
    hpd_mass : float
        Probability mass of the HPD interval.
    """

    data_offset: float = 0.0
    bulk_family: str = "gamma"
    phiu: Union[str, float] = "empirical"
    min_tail_count: int = 50
    prior_lower: Optional[Sequence[Optional[float]]] = None
    prior_upper: Optional[Sequence[Optional[float]]] = None
    n_starts: int = 5
    agreement_tol: float = 1e-3
    parameter_agreement_tol: float = 1e-2
    verify_tolerance: float = 1e-4
    verify_draws: int = 100_000
    require_verification: bool = True
    mcmc_chain_length: int = 10_000
    mcmc_burnin: int = 1_000
    mcmc_thin: int = 5
    mcmc_n_chains: int = 4
    mcmc_start_perturbation: Optional[Sequence[float]] = None
    mcmc_tune: Optional[Sequence[float]] = None
    max_start_attempts: int = 100
    worker_count: Optional[int] = None
    executor: str = "process"
    return_periods: Sequence[float] = (10.0, 50.0, 100.0)
    convergence_tol: float = 0.05
    credible_probs: Sequence[float] = (0.025, 0.5, 0.975)
    hpd_mass: float = 0.95

    def __post_init__(self) -> None:
        if isinstance(self.phiu, str):
            self.phiu = self.phiu.lower()
        else:
            self.phiu = float(self.phiu)
        self.bulk_family = self.bulk_family.lower()
        self.executor = self.executor.lower()
        self.prior_lower = _optional_vector(self.prior_lower)
        self.prior_upper = _optional_vector(self.prior_upper)
        if self.mcmc_start_perturbation is not None:
            self.mcmc_start_perturbation = tuple(float(v) for v in self.mcmc_start_perturbation)
        if self.mcmc_tune is not None:
            self.mcmc_tune = tuple(float(v) for v in self.mcmc_tune)
        self.return_periods = tuple(float(v) for v in self.return_periods)
        self.credible_probs = tuple(float(v) for v in self.credible_probs)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnalysisConfig:
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**data)

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> AnalysisConfig:
        """Load a configuration from a JSON object file."""
        path = Path(path)
        with path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path} must contain a JSON object")
        logger.info("Loaded analysis configuration from %s", path)
        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def retained_per_chain(self) -> int:
        """Samples kept by each chain after burn-in and thinning."""
        return max(self.mcmc_chain_length - self.mcmc_burnin, 0) // self.mcmc_thin

    def resolved_workers(self) -> int:
        cap = self.worker_count or os.cpu_count() or 1
        return max(1, min(self.mcmc_n_chains, cap))

    def bounds_for(self, values: np.ndarray) -> ParameterBounds:
        """Box constraints with unspecified entries filled from the data."""
        default = ParameterBounds.default_for(values, self.min_tail_count)
        lower = np.array(default.lower)
        upper = np.array(default.upper)
        for target, given in ((lower, self.prior_lower), (upper, self.prior_upper)):
            if given is None:
                continue
            for i, v in enumerate(given):
                if v is not None:
                    target[i] = v
        return ParameterBounds(lower=lower, upper=upper)

    def validate_return_periods(self, annual_rate: float) -> None:
        """Every return period must span more than one event at ``annual_rate``."""
        if not (np.isfinite(annual_rate) and annual_rate > 0):
            raise ConfigurationError(f"annual_rate must be positive, got {annual_rate}")
        short = [t for t in self.return_periods if t * annual_rate <= 1.0]
        if short:
            raise ConfigurationError(
                f"Return periods {short} cover at most one event at annual rate "
                f"{annual_rate}; each must exceed 1 / annual_rate = {1.0 / annual_rate:.4g} years"
            )

    def validate(
        self, observations: Union[ObservationSet, np.ndarray], annual_rate: Optional[float] = None
    ) -> None:
        """Check the configuration for internal consistency and against the data.

        When ``annual_rate`` is given the return periods are checked against it
        too (see :meth:`validate_return_periods`).

        Raises
        ------
        ConfigurationError
            Describing the first problem found.
        """
        if isinstance(observations, ObservationSet):
            values = observations.complete()
        else:
            values = np.asarray(observations, dtype=float)
            values = values[~np.isnan(values)]

        get_bulk_family(self.bulk_family)
        parse_phiu(self.phiu)

        for name in (
            "min_tail_count",
            "n_starts",
            "verify_draws",
            "mcmc_chain_length",
            "mcmc_thin",
            "mcmc_n_chains",
            "max_start_attempts",
        ):
            if int(getattr(self, name)) < 1:
                raise ConfigurationError(f"{name} must be at least 1, got {getattr(self, name)}")
        if self.mcmc_burnin < 0:
            raise ConfigurationError(f"mcmc_burnin must be non-negative, got {self.mcmc_burnin}")
        if self.retained_per_chain < 1:
            raise ConfigurationError(
                f"Chain length {self.mcmc_chain_length} with burn-in {self.mcmc_burnin} and "
                f"thinning {self.mcmc_thin} retains no samples"
            )
        if self.worker_count is not None and self.worker_count < 1:
            raise ConfigurationError(f"worker_count must be at least 1, got {self.worker_count}")
        if self.executor not in _EXECUTORS:
            raise ConfigurationError(f"executor must be one of {_EXECUTORS}, got {self.executor!r}")

        for name in ("agreement_tol", "parameter_agreement_tol", "verify_tolerance", "convergence_tol"):
            if not getattr(self, name) > 0:
                raise ConfigurationError(f"{name} must be positive, got {getattr(self, name)}")
        if not 0.0 < self.hpd_mass < 1.0:
            raise ConfigurationError(f"hpd_mass must lie in (0, 1), got {self.hpd_mass}")
        if not self.credible_probs or any(not 0.0 < p < 1.0 for p in self.credible_probs):
            raise ConfigurationError("credible_probs must be non-empty and lie in (0, 1)")
        if any(t <= 0 for t in self.return_periods):
            raise ConfigurationError("return_periods must be positive")
        if annual_rate is not None:
            self.validate_return_periods(annual_rate)

        for name in ("mcmc_start_perturbation", "mcmc_tune"):
            vec = getattr(self, name)
            if vec is None:
                continue
            if len(vec) != len(PARAMETER_NAMES):
                raise ConfigurationError(
                    f"{name} needs {len(PARAMETER_NAMES)} entries ({', '.join(PARAMETER_NAMES)})"
                )
            if any(not v > 0 for v in vec):
                raise ConfigurationError(f"{name} entries must be positive")

        for name in ("prior_lower", "prior_upper"):
            vec = getattr(self, name)
            if vec is not None and len(vec) != len(PARAMETER_NAMES):
                raise ConfigurationError(
                    f"{name} needs {len(PARAMETER_NAMES)} entries ({', '.join(PARAMETER_NAMES)})"
                )

        if len(values) < self.min_tail_count:
            raise ConfigurationError(
                f"Need at least {self.min_tail_count} observations, got {len(values)}"
            )
        cap = tail_threshold_cap(values, self.min_tail_count)
        bounds = self.bounds_for(values)
        if bounds.lower[2] >= cap:
            logger.warning(
                "Threshold lower bound %.4g is not below the tail cap %.4g; "
                "no threshold leaves %d observations in the tail",
                bounds.lower[2],
                cap,
                self.min_tail_count,
            )
