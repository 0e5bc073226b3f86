"""
stormtail.core - Core data structures and utility functions
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Optional, Sequence, Tuple, Union

import numpy as np

from .errors import ConfigurationError, DomainError

# Order of the free parameters in every parameter vector
PARAMETER_NAMES: Tuple[str, ...] = ("gshape", "gscale", "u", "xi")

# Default bounds on the GPD shape
XI_LOWER = -1000.0
XI_UPPER = 1000.0

# Below this magnitude the GPD shape is treated as zero (exponential tail)
XI_EPS = 1e-6


class PhiuMethod(Enum):
    """How the tail fraction phiu is obtained for a parameter vector."""

    FIXED = auto()  # user-supplied constant
    EMPIRICAL = auto()  # proportion of observations above the threshold
    BULK = auto()  # 1 - F_bulk(u)


class SamplerState(Enum):
    """Lifecycle of a single Metropolis chain."""

    INITIALIZING = auto()
    REJECTED_START = auto()
    WARMING_UP = auto()
    SAMPLING = auto()
    DONE = auto()


def parse_phiu(phiu: Union[str, float]) -> Tuple[PhiuMethod, Optional[float]]:
    """
    Interpret a phiu setting.

    Parameters
    ----------
    phiu : str or float
        'empirical', 'bulk', or a fixed tail fraction in (0, 1).

    Returns
    -------
    tuple
        (PhiuMethod, fixed value or None)
    """
    if isinstance(phiu, str):
        try:
            method = PhiuMethod[phiu.upper()]
        except KeyError:
            raise ConfigurationError(
                f"phiu must be 'empirical', 'bulk' or a float in (0, 1), got {phiu!r}"
            )
        if method == PhiuMethod.FIXED:
            raise ConfigurationError("A fixed phiu must be given as a number")
        return method, None

    value = float(phiu)
    if not 0.0 < value < 1.0:
        raise ConfigurationError(f"Fixed phiu must lie in (0, 1), got {value}")
    return PhiuMethod.FIXED, value


@dataclass(frozen=True)
class ObservationSet:
    """
    Observations the mixture is fitted to.

    ``values`` are stored after subtracting ``offset`` and are write-protected.
    Missing values (NaN) are kept; the likelihood refuses them, so callers
    must decide explicitly how to handle gaps.

    Parameters
    ----------
    values : np.ndarray
        Shifted observations.
    offset : float
        Baseline subtracted from the raw measurements.
    times : np.ndarray, optional
        Time covariate aligned with ``values``. Not used by the engine.
    """

    values: np.ndarray
    offset: float = 0.0
    times: Optional[np.ndarray] = None

    @classmethod
    def from_raw(
        cls,
        raw: Sequence[float],
        offset: float = 0.0,
        times: Optional[Sequence] = None,
    ) -> ObservationSet:
        """Build an observation set from raw measurements."""
        values = np.array(raw, dtype=float) - float(offset)
        if values.ndim != 1:
            raise DomainError(f"Observations must be one-dimensional, got shape {values.shape}")

        present = values[~np.isnan(values)]
        if np.any(present < 0):
            worst = float(present.min())
            raise DomainError(
                f"Observation {worst + offset:g} lies below the data offset {offset:g}"
            )
        values.setflags(write=False)

        times_arr = None
        if times is not None:
            times_arr = np.array(times)
            if len(times_arr) != len(values):
                raise DomainError("times must have the same length as the observations")
            times_arr.setflags(write=False)

        return cls(values=values, offset=float(offset), times=times_arr)

    @property
    def n(self) -> int:
        return len(self.values)

    @property
    def has_missing(self) -> bool:
        return bool(np.isnan(self.values).any())

    def complete(self) -> np.ndarray:
        """Return a copy of the values with missing entries removed."""
        return self.values[~np.isnan(self.values)].copy()


def tail_threshold_cap(values: np.ndarray, min_tail_count: int) -> float:
    """
    Return the ``min_tail_count``-th largest observation.

    A threshold must stay strictly below this value so that at least
    ``min_tail_count`` observations inform the tail fit.
    """
    values = np.asarray(values, dtype=float)
    if min_tail_count < 1:
        raise ConfigurationError(f"min_tail_count must be positive, got {min_tail_count}")
    if len(values) < min_tail_count:
        raise ConfigurationError(
            f"Need at least {min_tail_count} observations to fit the tail, got {len(values)}"
        )
    return float(np.sort(values)[-min_tail_count])


@dataclass(frozen=True)
class ParameterBounds:
    """
    Box constraints on ``[gshape, gscale, u, xi]``.

    The box doubles as the support of the uniform prior used by the sampler.
    """

    lower: np.ndarray
    upper: np.ndarray
    names: Tuple[str, ...] = field(default=PARAMETER_NAMES)

    def __post_init__(self) -> None:
        lower = np.array(self.lower, dtype=float)
        upper = np.array(self.upper, dtype=float)
        if lower.shape != (len(self.names),) or upper.shape != (len(self.names),):
            raise ConfigurationError(
                f"Bounds must have {len(self.names)} entries, got {lower.shape} and {upper.shape}"
            )
        if np.any(np.isnan(lower)) or np.any(np.isnan(upper)):
            raise ConfigurationError("Bounds must not contain NaN")
        bad = np.flatnonzero(lower >= upper)
        if bad.size:
            name = self.names[bad[0]]
            raise ConfigurationError(
                f"Lower bound of {name} ({lower[bad[0]]}) must be below its upper bound "
                f"({upper[bad[0]]})"
            )
        lower.setflags(write=False)
        upper.setflags(write=False)
        object.__setattr__(self, "lower", lower)
        object.__setattr__(self, "upper", upper)

    @classmethod
    def default_for(cls, values: np.ndarray, min_tail_count: int = 50) -> ParameterBounds:
        """Default box: positive bulk parameters, threshold in [0, tail cap], xi in [-1000, 1000]."""
        cap = tail_threshold_cap(values, min_tail_count)
        return cls(
            lower=np.array([0.0, 0.0, 0.0, XI_LOWER]),
            upper=np.array([np.inf, np.inf, cap, XI_UPPER]),
        )

    def contains(self, params: np.ndarray) -> bool:
        params = np.asarray(params, dtype=float)
        return bool(np.all(params >= self.lower) and np.all(params <= self.upper))

    def as_scipy(self) -> list:
        """Bounds as a list of (low, high) pairs with None for infinite limits."""
        return [
            (None if np.isinf(lo) else float(lo), None if np.isinf(hi) else float(hi))
            for lo, hi in zip(self.lower, self.upper)
        ]


def return_period_probability(period: float, annual_rate: float) -> float:
    """
    Non-exceedance probability of the ``period``-year return level.

    With ``annual_rate`` events per year, the level exceeded on average once
    in ``period`` years is the quantile at ``1 - 1 / (period * annual_rate)``.
    """
    events = float(period) * float(annual_rate)
    if events <= 1.0:
        raise DomainError(
            f"A {period}-year return level needs more than one event per period "
            f"(annual rate {annual_rate})"
        )
    return 1.0 - 1.0 / events
