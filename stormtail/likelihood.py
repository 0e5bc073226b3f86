"""
stormtail.likelihood - Negative log-likelihood of the bulk + GPD mixture

The likelihood object is immutable after construction, so the optimizer and
every sampler chain can evaluate it repeatedly, in threads or in separate
processes, without coordination.
"""

from __future__ import annotations

from typing import Optional, Sequence, Union

import numpy as np

from .config import AnalysisConfig
from .core import (
    PARAMETER_NAMES,
    ObservationSet,
    ParameterBounds,
    PhiuMethod,
    parse_phiu,
    tail_threshold_cap,
)
from .distributions import BulkFamily, MixtureModel, get_bulk_family
from .errors import DomainError


class MixtureLikelihood:
    """
    Negative log-likelihood ``-sum(log f(x_i; params))`` over all observations.

    Parameters
    ----------
    values : sequence of float
        Non-negative observations (already shifted by any data offset). Missing
        values are rejected rather than dropped.
    bounds : ParameterBounds, optional
        Box constraints; defaults to :meth:`ParameterBounds.default_for`.
    phiu : str or float
        'empirical', 'bulk', or a fixed tail fraction.
    bulk : str or BulkFamily
        Bulk distribution.
    min_tail_count : int
        The threshold must leave at least this many observations above it.
    barrier : bool
        If True, parameters outside ``bounds`` evaluate to +inf.

    Examples
    --------
    >>> nll = MixtureLikelihood(waves, phiu="empirical")
    >>> nll([2.0, 1.0, 3.0, 0.1])
    """

    def __init__(
        self,
        values: Sequence[float],
        bounds: Optional[ParameterBounds] = None,
        phiu: Union[str, float] = "empirical",
        bulk: Union[str, BulkFamily] = "gamma",
        min_tail_count: int = 50,
        barrier: bool = True,
    ):
        values = np.array(values, dtype=float)
        if values.ndim != 1 or values.size == 0:
            raise DomainError("Likelihood needs a non-empty one-dimensional sample")
        if np.any(np.isnan(values)):
            raise DomainError(
                f"Likelihood received {int(np.isnan(values).sum())} missing values; "
                "remove or impute them explicitly before fitting"
            )
        if np.any(values < 0):
            raise DomainError(f"Observations must be non-negative, got {float(values.min())}")
        values.setflags(write=False)

        self.values = values
        self.bulk = get_bulk_family(bulk) if isinstance(bulk, str) else bulk
        self.phiu_method, self.phiu_fixed = parse_phiu(phiu)
        self.min_tail_count = int(min_tail_count)
        self.tail_cap = tail_threshold_cap(values, self.min_tail_count)
        self.bounds = bounds or ParameterBounds.default_for(values, self.min_tail_count)
        self.barrier = barrier

    @classmethod
    def from_config(cls, observations: ObservationSet, config: AnalysisConfig) -> MixtureLikelihood:
        """Likelihood over ``observations`` with phiu, bulk and box taken from ``config``."""
        return cls(
            observations.values,
            bounds=config.bounds_for(observations.complete()),
            phiu=config.phiu,
            bulk=config.bulk_family,
            min_tail_count=config.min_tail_count,
        )

    @property
    def n(self) -> int:
        return len(self.values)

    @property
    def param_names(self) -> tuple:
        return PARAMETER_NAMES

    def resolve_phiu(self, params: np.ndarray) -> float:
        """Tail fraction implied by ``params`` under the configured method."""
        if self.phiu_method == PhiuMethod.FIXED:
            return self.phiu_fixed
        u = params[2]
        if self.phiu_method == PhiuMethod.EMPIRICAL:
            return float(np.count_nonzero(self.values > u)) / self.n
        return 1.0 - float(self.bulk.cdf(np.array(u), params[:2]))

    def in_bounds(self, params: np.ndarray) -> bool:
        return self.bounds.contains(params)

    def model(self, params: Sequence[float]) -> MixtureModel:
        """Mixture for ``params`` with phiu resolved; raises DomainError if invalid."""
        params = np.asarray(params, dtype=float)
        return MixtureModel(params, self.resolve_phiu(params), self.bulk)

    def __call__(self, params: Sequence[float]) -> float:
        params = np.asarray(params, dtype=float)
        if params.shape != (len(PARAMETER_NAMES),) or not np.all(np.isfinite(params)):
            return np.inf
        if self.barrier and not self.in_bounds(params):
            return np.inf
        if params[2] >= self.tail_cap:
            return np.inf

        try:
            model = self.model(params)
        except DomainError:
            return np.inf

        with np.errstate(all="ignore"):
            nll = -float(np.sum(model.logpdf(self.values)))
        return nll if np.isfinite(nll) else np.inf
