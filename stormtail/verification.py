"""
Numerical check that a fitted quantile function inverts its CDF.

A fit is only trusted for sampling once ``cdf(ppf(p))`` reproduces ``p`` over
a dense set of probabilities.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from .errors import DomainError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationReport:
    """Result of a quantile/CDF inversion check.

    Parameters
    ----------
    passed : bool
        True if every deviation is below ``tolerance``.
    max_deviation : float
        Largest ``|cdf(ppf(p)) - p|`` found.
    worst_probability : float
        Probability at which ``max_deviation`` occurs.
    n_checked : int
        Number of probabilities evaluated.
    tolerance : float
        Threshold used for pass/fail.
    """

    passed: bool
    max_deviation: float
    worst_probability: float
    n_checked: int
    tolerance: float

    @property
    def status(self) -> str:
        return "PASS" if self.passed else "FAIL"

    @property
    def summary(self) -> str:
        return (
            f"{self.status}: max |cdf(ppf(p)) - p| = {self.max_deviation:.3e} "
            f"at p = {self.worst_probability:.6f} ({self.n_checked} probabilities, "
            f"tolerance {self.tolerance:.1e})"
        )


def verify_quantiles(
    model,
    probabilities: Optional[Sequence[float]] = None,
    tolerance: float = 1e-4,
    n_draws: int = 100_000,
    rng: Optional[np.random.Generator] = None,
) -> VerificationReport:
    """
    Confirm that ``model.cdf`` and ``model.ppf`` are mutual inverses.

    Parameters
    ----------
    model : MixtureModel or FittedModel
        Anything exposing ``inverse_check(p)``.
    probabilities : sequence of float, optional
        Probabilities in (0, 1) to check. Defaults to ``n_draws`` uniform draws.
    tolerance : float
        Largest accepted absolute deviation.
    n_draws : int
        Size of the default probability sample.
    rng : np.random.Generator, optional
        Source of the default draws.

    Returns
    -------
    VerificationReport

    Raises
    ------
    DomainError
        If the probability grid is empty.
    """
    if probabilities is None:
        rng = rng if rng is not None else np.random.default_rng()
        probabilities = rng.random(n_draws)
        # rng.random() can return exactly 0; keep the grid inside (0, 1)
        probabilities = probabilities[probabilities > 0]
    probabilities = np.atleast_1d(np.asarray(probabilities, dtype=float))
    if probabilities.size == 0:
        raise DomainError("Quantile verification needs at least one probability")

    deviation = np.abs(np.atleast_1d(model.inverse_check(probabilities)))
    missing = np.isnan(deviation)
    if missing.any():
        worst = int(np.flatnonzero(missing)[0])
        max_dev = np.inf
    else:
        worst = int(np.argmax(deviation))
        max_dev = float(deviation[worst])

    report = VerificationReport(
        passed=bool(max_dev < tolerance),
        max_deviation=max_dev,
        worst_probability=float(np.atleast_1d(probabilities)[worst]),
        n_checked=int(probabilities.size),
        tolerance=float(tolerance),
    )
    if report.passed:
        logger.info("Quantile verification %s", report.summary)
    else:
        logger.warning("Quantile verification %s", report.summary)
    return report
