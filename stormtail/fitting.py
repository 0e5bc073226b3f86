"""
stormtail.fitting - Maximum-likelihood fit of the bulk + GPD mixture

Two local optimizers (Nelder-Mead simplex and L-BFGS-B quasi-Newton) are run
from the same set of starting points. The better optimum is kept and the
distance between the two optima is recorded so that a caller can tell a
well-determined fit from one sitting on a ridge or between local optima.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.optimize import minimize

from .config import AnalysisConfig
from .core import PARAMETER_NAMES, ObservationSet
from .distributions import MixtureModel
from .errors import DomainError, OptimizationError
from .likelihood import MixtureLikelihood

if TYPE_CHECKING:
    from .verification import VerificationReport

logger = logging.getLogger(__name__)

# Finite stand-in for an infinite objective inside the optimizers
_PENALTY = 1e10

OPTIMIZER_METHODS: Tuple[str, ...] = ("Nelder-Mead", "L-BFGS-B")

_OPTIONS = {
    "Nelder-Mead": {"xatol": 1e-7, "fatol": 1e-9, "maxiter": 20000, "adaptive": True},
    "L-BFGS-B": {"maxiter": 5000, "ftol": 1e-12, "gtol": 1e-8},
}


@dataclass(frozen=True)
class OptimizerRun:
    """Best result of one optimization strategy over all starts."""

    method: str
    params: Optional[np.ndarray]
    nll: float
    n_starts: int
    n_finite: int
    message: str = ""

    @property
    def found(self) -> bool:
        return self.params is not None and np.isfinite(self.nll)


@dataclass(frozen=True)
class FittedModel:
    """
    Maximum-likelihood estimate of the mixture.

    Parameters
    ----------
    params : np.ndarray
        ``[gshape, gscale, u, xi]`` at the optimum.
    phiu : float
        Tail fraction at the optimum.
    sigmau : float
        Continuity-derived GPD scale at the optimum.
    nll : float
        Negative log-likelihood at the optimum.
    model : MixtureModel
        Distribution closed over the estimate (``cdf``/``ppf``).
    runs : tuple of OptimizerRun
        Per-strategy results.
    agreement_failed : bool
        True if the strategies disagree beyond tolerance. Not an error: the
        caller decides whether to trust the fit.
    param_difference : float
        Relative distance between the strategies' parameter vectors.
    nll_difference : float
        Relative difference between the strategies' negative log-likelihoods.
    n_obs : int
        Sample size.
    data_offset : float
        Offset subtracted from the raw data.
    verification : VerificationReport, optional
        Attached by :meth:`with_verification`.
    """

    params: np.ndarray
    phiu: float
    sigmau: float
    nll: float
    model: MixtureModel
    runs: Tuple[OptimizerRun, ...]
    agreement_failed: bool
    param_difference: float
    nll_difference: float
    n_obs: int
    data_offset: float = 0.0
    verification: Optional["VerificationReport"] = None
    names: Tuple[str, ...] = field(default=PARAMETER_NAMES)

    def cdf(self, x):
        return self.model.cdf(x)

    def ppf(self, p):
        return self.model.ppf(p)

    def inverse_check(self, p):
        return self.model.inverse_check(p)

    def return_level(self, period: float, annual_rate: float) -> float:
        return self.model.return_level(period, annual_rate, offset=self.data_offset)

    def as_dict(self) -> dict:
        out = {name: float(v) for name, v in zip(self.names, self.params)}
        out.update(phiu=self.phiu, sigmau=self.sigmau, nll=self.nll)
        return out

    def with_verification(self, report: "VerificationReport") -> FittedModel:
        """Return a copy carrying ``report``."""
        return replace(self, verification=report)


class _PenalisedObjective:
    """Likelihood with infinities replaced by a large finite penalty."""

    def __init__(self, likelihood: MixtureLikelihood):
        self.likelihood = likelihood

    def __call__(self, params: np.ndarray) -> float:
        value = self.likelihood(params)
        return value if np.isfinite(value) else _PENALTY


def _initial_threshold(values: np.ndarray, cap: float) -> float:
    u0 = float(np.quantile(values, 0.9))
    if u0 >= cap:
        below = values[values < cap]
        u0 = float(np.quantile(below, 0.9)) if below.size else 0.5 * cap
    return u0


def default_start(likelihood: MixtureLikelihood) -> np.ndarray:
    """
    Data-driven starting point.

    Threshold at the 90th percentile (kept below the tail cap), bulk
    parameters from the moments of the observations below it, xi = 0.1.
    """
    values = likelihood.values
    u0 = _initial_threshold(values, likelihood.tail_cap)
    bulk0 = likelihood.bulk.initial_guess(values[values < u0])
    start = np.array([bulk0[0], bulk0[1], u0, 0.1])
    return np.clip(start, likelihood.bounds.lower, likelihood.bounds.upper)


def random_start(likelihood: MixtureLikelihood, rng: np.random.Generator) -> np.ndarray:
    """Random starting point in a data-driven region inside the box."""
    values = likelihood.values
    below_cap = values[values < likelihood.tail_cap]
    if below_cap.size == 0:
        below_cap = values
    u0 = float(np.quantile(below_cap, rng.uniform(0.5, 0.95)))
    bulk0 = likelihood.bulk.initial_guess(values[values < u0]) * np.exp(rng.uniform(-0.5, 0.5, 2))
    start = np.array([bulk0[0], bulk0[1], u0, rng.uniform(-0.3, 0.5)])
    return np.clip(start, likelihood.bounds.lower, likelihood.bounds.upper)


def _starting_points(
    likelihood: MixtureLikelihood,
    initial_guess: Union[str, Sequence[float]],
    n_starts: int,
    rng: np.random.Generator,
) -> List[np.ndarray]:
    if isinstance(initial_guess, str):
        strategy = initial_guess.lower()
        if strategy == "default":
            first = [default_start(likelihood)]
        elif strategy == "random":
            first = []
        else:
            raise ValueError(f"initial_guess must be 'default', 'random' or a vector, got {initial_guess!r}")
    else:
        guess = np.asarray(initial_guess, dtype=float)
        if guess.shape != (len(PARAMETER_NAMES),):
            raise DomainError(f"initial_guess needs {len(PARAMETER_NAMES)} values, got {guess.shape}")
        first = [guess]

    starts = first + [random_start(likelihood, rng) for _ in range(n_starts - len(first))]
    return starts[: max(n_starts, 1)]


def _run_strategy(
    method: str,
    likelihood: MixtureLikelihood,
    starts: List[np.ndarray],
) -> OptimizerRun:
    objective = _PenalisedObjective(likelihood)
    bounds = likelihood.bounds.as_scipy()

    best_params: Optional[np.ndarray] = None
    best_nll = np.inf
    message = ""
    n_finite = 0

    for i, start in enumerate(starts):
        if not np.isfinite(likelihood(start)):
            logger.debug("%s start %d has non-finite likelihood, skipped", method, i)
            continue

        with np.errstate(all="ignore"):
            result = minimize(objective, start, method=method, bounds=bounds, options=_OPTIONS[method])
        nll = likelihood(result.x)
        logger.debug("%s start %d: nll=%.6f success=%s", method, i, nll, result.success)
        if not np.isfinite(nll):
            continue

        n_finite += 1
        if nll < best_nll:
            best_nll = nll
            best_params = np.array(result.x, dtype=float)
            message = str(result.message)

    return OptimizerRun(
        method=method,
        params=best_params,
        nll=float(best_nll),
        n_starts=len(starts),
        n_finite=n_finite,
        message=message,
    )


def _relative(a: float, b: float) -> float:
    return abs(a - b) / max(abs(b), 1.0)


def fit_mixture(
    observations: Union[ObservationSet, Sequence[float]],
    config: Optional[AnalysisConfig] = None,
    initial_guess: Union[str, Sequence[float]] = "default",
    rng: Optional[np.random.Generator] = None,
    likelihood: Optional[MixtureLikelihood] = None,
) -> FittedModel:
    """
    Maximum-likelihood fit of the bulk + GPD mixture.

    Parameters
    ----------
    observations : ObservationSet or sequence of float
        Data. A plain sequence is treated as raw measurements and shifted by
        ``config.data_offset``.
    config : AnalysisConfig, optional
        Fit settings (defaults if omitted).
    initial_guess : str or sequence of float
        'default' (data-driven first start, random others), 'random' (all
        random) or an explicit first start.
    rng : np.random.Generator, optional
        Source of the random starts.
    likelihood : MixtureLikelihood, optional
        Prebuilt likelihood; built from ``config`` if omitted.

    Returns
    -------
    FittedModel

    Raises
    ------
    OptimizationError
        If no start reaches a finite likelihood.
    """
    config = config or AnalysisConfig()
    if not isinstance(observations, ObservationSet):
        observations = ObservationSet.from_raw(observations, offset=config.data_offset)
    rng = rng if rng is not None else np.random.default_rng()
    likelihood = likelihood or MixtureLikelihood.from_config(observations, config)

    starts = _starting_points(likelihood, initial_guess, config.n_starts, rng)
    runs = tuple(_run_strategy(method, likelihood, starts) for method in OPTIMIZER_METHODS)
    found = [run for run in runs if run.found]
    if not found:
        raise OptimizationError(len(starts))

    best = min(found, key=lambda run: run.nll)
    if len(found) < len(runs):
        agreement_failed = True
        param_diff = nll_diff = np.inf
    else:
        other = max(found, key=lambda run: run.nll)
        param_diff = float(
            np.linalg.norm(other.params - best.params) / max(np.linalg.norm(best.params), 1e-12)
        )
        nll_diff = _relative(other.nll, best.nll)
        agreement_failed = bool(
            nll_diff > config.agreement_tol or param_diff > config.parameter_agreement_tol
        )

    model = likelihood.model(best.params)
    logger.info(
        "MLE by %s: gshape=%.4g gscale=%.4g u=%.4g xi=%.4g (phiu=%.4g, nll=%.4f)",
        best.method,
        *best.params,
        model.phiu,
        best.nll,
    )
    if agreement_failed:
        logger.warning(
            "Optimizers disagree: relative parameter difference %.3g, relative nll difference %.3g",
            param_diff,
            nll_diff,
        )

    params = best.params.copy()
    params.setflags(write=False)
    return FittedModel(
        params=params,
        phiu=model.phiu,
        sigmau=model.sigmau,
        nll=best.nll,
        model=model,
        runs=runs,
        agreement_failed=agreement_failed,
        param_difference=param_diff,
        nll_difference=nll_diff,
        n_obs=likelihood.n,
        data_offset=observations.offset,
    )
