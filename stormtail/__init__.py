"""
stormtail - Extreme-value analysis with a gamma bulk + GPD tail mixture

Includes:
- Gamma bulk / generalized Pareto tail mixture with a continuity-constrained
  tail scale
- Maximum-likelihood fitting with multi-start, cross-checked optimizers
- Quantile/CDF inversion verification
- Random-walk Metropolis sampling on parallel chains with return levels
- Cross-chain convergence checks, equal-tailed and HPD credible intervals
"""

from .chains import ChainResult, CombinedPosterior, combine_chains, run_chains
from .config import AnalysisConfig
from .core import (
    PARAMETER_NAMES,
    ObservationSet,
    ParameterBounds,
    PhiuMethod,
    SamplerState,
    return_period_probability,
    tail_threshold_cap,
)
from .diagnostics import (
    ConvergenceReport,
    compare_chains,
    equal_tailed_interval,
    gelman_rubin,
    hpd_interval,
    posterior_intervals,
    summarize_chain,
)
from .distributions import GammaBulk, MixtureModel, get_bulk_family
from .engine import AnalysisResult, analyze
from .errors import (
    ConfigurationError,
    ConvergenceError,
    ConvergenceWarning,
    DomainError,
    InitializationError,
    OptimizationError,
    StormTailError,
    VerificationError,
)
from .fitting import FittedModel, OptimizerRun, fit_mixture
from .likelihood import MixtureLikelihood
from .sampler import Chain, MetropolisSampler
from .verification import VerificationReport, verify_quantiles

__version__ = "1.0.0"

__all__ = [
    # Data and configuration
    "PARAMETER_NAMES",
    "ObservationSet",
    "ParameterBounds",
    "PhiuMethod",
    "SamplerState",
    "AnalysisConfig",
    "return_period_probability",
    "tail_threshold_cap",
    # Model
    "GammaBulk",
    "MixtureModel",
    "get_bulk_family",
    "MixtureLikelihood",
    # Fitting and verification
    "FittedModel",
    "OptimizerRun",
    "fit_mixture",
    "VerificationReport",
    "verify_quantiles",
    # Sampling
    "Chain",
    "MetropolisSampler",
    "ChainResult",
    "CombinedPosterior",
    "run_chains",
    "combine_chains",
    # Diagnostics
    "ConvergenceReport",
    "compare_chains",
    "summarize_chain",
    "gelman_rubin",
    "equal_tailed_interval",
    "hpd_interval",
    "posterior_intervals",
    # Pipeline
    "AnalysisResult",
    "analyze",
    # Errors
    "StormTailError",
    "DomainError",
    "ConfigurationError",
    "OptimizationError",
    "InitializationError",
    "ConvergenceError",
    "ConvergenceWarning",
    "VerificationError",
]
