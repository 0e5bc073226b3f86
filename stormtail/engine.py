"""
stormtail.engine - End-to-end extreme-value analysis

Chains the stages into one call: fit, verify, sample, compare, combine and
summarise. Every stage returns a new value; nothing is updated in place.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd

from .chains import ChainResult, CombinedPosterior, combine_chains, run_chains
from .config import AnalysisConfig
from .core import ObservationSet
from .diagnostics import ConvergenceReport, compare_chains, posterior_intervals
from .errors import VerificationError
from .fitting import FittedModel, fit_mixture
from .likelihood import MixtureLikelihood
from .sampler import return_level_name
from .verification import verify_quantiles

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisResult:
    """
    Artifacts of one analysis, handed to reporting.

    ``chains``, ``convergence``, ``posterior`` and ``intervals`` are None when
    sampling was skipped; ``posterior`` and ``intervals`` are also None when
    the chains disagreed and the warning was not accepted.
    """

    observations: ObservationSet
    config: AnalysisConfig
    fitted: FittedModel
    annual_rate: Optional[float] = None
    chains: Optional[ChainResult] = None
    convergence: Optional[ConvergenceReport] = None
    posterior: Optional[CombinedPosterior] = None
    intervals: Optional[pd.DataFrame] = None

    def return_level_table(self) -> pd.DataFrame:
        """
        Return levels by period: maximum-likelihood estimate plus posterior
        median and credible bounds where available.

        Returns
        -------
        pd.DataFrame
            Columns: Return Period (yr), MLE, and when sampled Median,
            Lower, Upper (equal-tailed) and HPD Lower, HPD Upper.
        """
        if self.annual_rate is None:
            raise ValueError("Return levels need the annual event rate")

        probs = self.config.credible_probs
        data = []
        for period in self.config.return_periods:
            row = {
                "Return Period (yr)": period,
                "MLE": self.fitted.return_level(period, self.annual_rate),
            }
            name = return_level_name(period)
            if self.intervals is not None and name in self.intervals.index:
                rl = self.intervals.loc[name]
                row["Median"] = float(np.median(self.posterior.statistics()[name]))
                row["Lower"] = rl[f"p{min(probs):g}"]
                row["Upper"] = rl[f"p{max(probs):g}"]
                row["HPD Lower"] = rl["hpd_lower"]
                row["HPD Upper"] = rl["hpd_upper"]
            data.append(row)
        return pd.DataFrame(data)

    def summary(self) -> str:
        """Return a plain-text summary of the analysis."""
        f = self.fitted
        lines = [
            "Gamma-GPD Mixture - Analysis Summary",
            "=" * 40,
            f"Sample size (n):     {f.n_obs}",
            f"Data offset:         {f.data_offset:g}",
            "",
            "Maximum likelihood estimate:",
        ]
        for name, value in zip(f.names, f.params):
            lines.append(f"  {name:<8} {value:12.5g}")
        lines.append(f"  {'phiu':<8} {f.phiu:12.5g}")
        lines.append(f"  {'sigmau':<8} {f.sigmau:12.5g}")
        lines.append(f"  NLL      {f.nll:12.5f}")
        lines.append(f"  Optimizers agree: {'no' if f.agreement_failed else 'yes'}")
        if f.verification is not None:
            lines.append(f"  Quantile check: {f.verification.summary}")

        if self.chains is not None:
            rates = ", ".join(f"{r:.2f}" for r in self.chains.acceptance_rates)
            lines += [
                "",
                f"MCMC: {self.chains.n_chains} chains x {self.config.retained_per_chain} draws "
                f"(acceptance {rates})",
            ]
        if self.convergence is not None:
            lines.append(f"  {self.convergence.summary}")
        if self.intervals is not None:
            lines += ["", "Posterior intervals:", self.intervals.to_string(float_format="%.5g")]
        if self.annual_rate is not None:
            lines += ["", "Return levels:", self.return_level_table().to_string(index=False)]
        return "\n".join(lines)


def analyze(
    raw: Union[Sequence[float], ObservationSet],
    annual_rate: Optional[float] = None,
    config: Optional[AnalysisConfig] = None,
    seed: Optional[int] = None,
    sample: bool = True,
    accept_warning: bool = False,
) -> AnalysisResult:
    """
    Fit, verify and (optionally) sample the gamma-GPD mixture.

    Parameters
    ----------
    raw : sequence of float or ObservationSet
        Raw measurements; shifted by ``config.data_offset``.
    annual_rate : float, optional
        Events per year, needed for return levels.
    config : AnalysisConfig, optional
        Settings (defaults if omitted).
    seed : int, optional
        Root seed for the fit's random starts, the verification grid and the
        chains.
    sample : bool
        Run the MCMC stage.
    accept_warning : bool
        Combine chains even if the cross-chain comparison flags them.

    Returns
    -------
    AnalysisResult

    Raises
    ------
    ConfigurationError
        If the settings do not fit the data or a return period spans no more
        than one event at ``annual_rate``; raised before any fitting.
    VerificationError
        If the fitted quantile function fails its check and
        ``config.require_verification`` is True.
    """
    config = config or AnalysisConfig()
    observations = (
        raw if isinstance(raw, ObservationSet) else ObservationSet.from_raw(raw, config.data_offset)
    )
    config.validate(observations, annual_rate)

    fit_seed, verify_seed, chain_seed = np.random.SeedSequence(seed).spawn(3)
    likelihood = MixtureLikelihood.from_config(observations, config)

    logger.info("Fitting gamma-GPD mixture to %d observations", observations.n)
    fitted = fit_mixture(
        observations, config, rng=np.random.default_rng(fit_seed), likelihood=likelihood
    )

    report = verify_quantiles(
        fitted,
        tolerance=config.verify_tolerance,
        n_draws=config.verify_draws,
        rng=np.random.default_rng(verify_seed),
    )
    fitted = fitted.with_verification(report)
    if not report.passed and config.require_verification:
        raise VerificationError(report.summary)

    if not sample:
        return AnalysisResult(observations, config, fitted, annual_rate=annual_rate)

    chains = run_chains(fitted, likelihood, config, annual_rate=annual_rate, seed=chain_seed)
    convergence = compare_chains(chains, rel_tol=config.convergence_tol)

    posterior = None
    intervals = None
    if convergence.converged or accept_warning:
        posterior = combine_chains(chains, convergence, accept_warning=accept_warning)
        intervals = posterior_intervals(posterior, config.credible_probs, config.hpd_mass)
    else:
        logger.warning("Chains were not combined; rerun with longer chains or accept the warning")

    return AnalysisResult(
        observations,
        config,
        fitted,
        annual_rate=annual_rate,
        chains=chains,
        convergence=convergence,
        posterior=posterior,
        intervals=intervals,
    )
