"""
stormtail.diagnostics - Chain summaries, cross-chain agreement and credible intervals
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Dict, Sequence, Tuple

import numpy as np
import pandas as pd

from .errors import ConvergenceWarning

logger = logging.getLogger(__name__)

SUMMARY_COLUMNS: Tuple[str, ...] = ("min", "q1", "median", "mean", "q3", "max")

# Quantiles compared across chains; min and max are expected to differ
CENTRAL_QUANTILES: Dict[str, float] = {"q1": 0.25, "median": 0.5, "q3": 0.75}

# Spreads are relative to |pooled median| above this magnitude, absolute below it
UNIT_SCALE = 1.0


def summarize_chain(draws) -> pd.DataFrame:
    """
    Five-number summary plus mean of every parameter and return level.

    Parameters
    ----------
    draws : Chain or CombinedPosterior
        Anything with a ``statistics()`` mapping of name to draws.

    Returns
    -------
    pd.DataFrame
        One row per statistic, columns min, q1, median, mean, q3, max.
    """
    rows = {}
    for name, x in draws.statistics().items():
        q1, median, q3 = np.quantile(x, [0.25, 0.5, 0.75])
        rows[name] = {
            "min": float(np.min(x)),
            "q1": float(q1),
            "median": float(median),
            "mean": float(np.mean(x)),
            "q3": float(q3),
            "max": float(np.max(x)),
        }
    return pd.DataFrame.from_dict(rows, orient="index", columns=list(SUMMARY_COLUMNS))


def gelman_rubin(x: np.ndarray) -> float:
    """
    Potential scale reduction factor of equally long chains.

    Parameters
    ----------
    x : np.ndarray
        Array of shape (m, n): m chains of n draws of one statistic.

    Returns
    -------
    float
        sqrt(V / W); close to 1 when the chains sample the same distribution.

    References
    ----------
    Gelman and Rubin (1992), Brooks and Gelman (1998)
    """
    x = np.asarray(x, dtype=float)
    if x.ndim != 2 or x.shape[0] < 2 or x.shape[1] < 2:
        raise ValueError("Gelman-Rubin diagnostic requires at least two chains of two draws")

    m, n = x.shape
    chain_means = x.mean(axis=1)
    b_over_n = np.sum((chain_means - chain_means.mean()) ** 2) / (m - 1)
    w = np.sum((x - chain_means[:, None]) ** 2) / (m * (n - 1))
    if w == 0:
        return 1.0 if b_over_n == 0 else np.inf

    s2 = w * (n - 1) / n + b_over_n
    v = s2 + b_over_n / m
    return float(np.sqrt(v / w))


@dataclass(frozen=True)
class ConvergenceReport:
    """Cross-chain comparison of central quantiles.

    Parameters
    ----------
    converged : bool
        False if any central quantile spread exceeds ``rel_tol``.
    rel_tol : float
        Tolerance used.
    spreads : pd.DataFrame
        Rows per statistic, columns q1, median, q3: spread of that quantile
        across chains relative to max(|pooled median|, 1).
    flagged : tuple of (statistic, quantile, spread)
        Entries above tolerance.
    summaries : tuple of pd.DataFrame
        Per-chain :func:`summarize_chain` tables.
    rhat : dict
        Gelman-Rubin factor per statistic (empty for a single chain).
    """

    converged: bool
    rel_tol: float
    spreads: pd.DataFrame
    flagged: Tuple[Tuple[str, str, float], ...] = ()
    summaries: Tuple[pd.DataFrame, ...] = ()
    rhat: Dict[str, float] = field(default_factory=dict)

    @property
    def summary(self) -> str:
        status = "CONVERGED" if self.converged else "NOT CONVERGED"
        worst = float(np.nanmax(self.spreads.to_numpy())) if self.spreads.size else 0.0
        return (
            f"{status}: {len(self.summaries)} chains, max relative quartile spread "
            f"{worst:.3g} (tolerance {self.rel_tol:g}), {len(self.flagged)} flagged"
        )


def compare_chains(chains: Sequence, rel_tol: float = 0.05) -> ConvergenceReport:
    """
    Compare chains through their quartiles.

    For every statistic and each of q1, median and q3, the range of that
    quantile across chains is divided by ``max(|pooled median|, 1)``: relative
    for statistics of magnitude above one, absolute for those near zero such
    as a small tail shape. Entries above ``rel_tol`` are flagged and the
    report is marked not converged; the condition is also emitted as a
    :class:`ConvergenceWarning`.

    Parameters
    ----------
    chains : sequence of Chain, or ChainResult
        Chains to compare.
    rel_tol : float
        Relative tolerance.
    """
    chain_list = list(getattr(chains, "chains", chains))
    if not chain_list:
        raise ValueError("No chains to compare")

    summaries = tuple(summarize_chain(c) for c in chain_list)
    per_chain = [c.statistics() for c in chain_list]
    names = list(per_chain[0])

    spreads = {}
    flagged = []
    rhat: Dict[str, float] = {}
    for name in names:
        pooled = np.concatenate([stats[name] for stats in per_chain])
        scale = max(abs(float(np.median(pooled))), UNIT_SCALE)
        row = {}
        for label in CENTRAL_QUANTILES:
            values = np.array([s.loc[name, label] for s in summaries])
            spread = float(values.max() - values.min()) / scale
            row[label] = spread
            if spread > rel_tol:
                flagged.append((name, label, spread))
        spreads[name] = row

        lengths = {len(stats[name]) for stats in per_chain}
        if len(chain_list) > 1 and len(lengths) == 1 and min(lengths) > 1:
            rhat[name] = gelman_rubin(np.vstack([stats[name] for stats in per_chain]))

    report = ConvergenceReport(
        converged=not flagged,
        rel_tol=rel_tol,
        spreads=pd.DataFrame.from_dict(spreads, orient="index", columns=list(CENTRAL_QUANTILES)),
        flagged=tuple(flagged),
        summaries=summaries,
        rhat=rhat,
    )
    if report.converged:
        logger.info("Chain comparison %s", report.summary)
    else:
        logger.warning("Chain comparison %s", report.summary)
        warnings.warn(report.summary, ConvergenceWarning, stacklevel=2)
    return report


def equal_tailed_interval(x: Sequence[float], probs: Sequence[float] = (0.025, 0.5, 0.975)) -> np.ndarray:
    """
    Order statistics ``x_(ceil(p * n))`` at each probability.

    Returns
    -------
    np.ndarray
        One value per probability, in the order given.
    """
    sx = np.sort(np.asarray(x, dtype=float))
    n = len(sx)
    if n == 0:
        raise ValueError("Too few elements for interval calculation")
    idx = np.ceil(np.asarray(probs, dtype=float) * n).astype(int) - 1
    return sx[np.clip(idx, 0, n - 1)]


def hpd_interval(x: Sequence[float], mass: float = 0.95) -> Tuple[float, float]:
    """Calculate the highest posterior density (HPD) interval of a sample.

    The HPD is the narrowest interval spanning ``floor(mass * n)`` order
    statistic steps, found by sliding that window over the sorted sample.

    Parameters
    ----------
    x : sequence of float
        Posterior draws.
    mass : float
        Probability mass the interval must contain.
    """
    sx = np.sort(np.asarray(x, dtype=float))
    n = len(sx)

    interval_idx_inc = int(np.floor(mass * n))
    n_intervals = n - interval_idx_inc
    interval_width = sx[interval_idx_inc:] - sx[:n_intervals]

    if len(interval_width) == 0:
        raise ValueError("Too few elements for interval calculation")

    min_idx = int(np.argmin(interval_width))
    return float(sx[min_idx]), float(sx[min_idx + interval_idx_inc])


def posterior_intervals(
    posterior,
    probs: Sequence[float] = (0.025, 0.5, 0.975),
    mass: float = 0.95,
) -> pd.DataFrame:
    """
    Equal-tailed and HPD intervals for every parameter and return level.

    Parameters
    ----------
    posterior : CombinedPosterior or Chain
        Draws to summarise.
    probs : sequence of float
        Probabilities of the equal-tailed interval.
    mass : float
        HPD probability mass.

    Returns
    -------
    pd.DataFrame
        One row per statistic with columns ``p<prob>`` for each probability
        and ``hpd_lower``, ``hpd_upper``.
    """
    rows = {}
    for name, x in posterior.statistics().items():
        row = {f"p{p:g}": float(v) for p, v in zip(probs, equal_tailed_interval(x, probs))}
        row["hpd_lower"], row["hpd_upper"] = hpd_interval(x, mass)
        rows[name] = row
    return pd.DataFrame.from_dict(rows, orient="index")
