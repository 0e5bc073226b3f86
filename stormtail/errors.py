"""
stormtail.errors - Exception types raised by the mixture engine.

Every error subclasses both :class:`StormTailError` and the builtin it most
resembles, so callers can catch either.
"""

from __future__ import annotations

from typing import Optional


class StormTailError(Exception):
    """Base class for all stormtail errors."""

    pass


class DomainError(StormTailError, ValueError):
    """Raised when a value lies outside a function's valid domain.

    Examples are a negative observation, a missing value reaching the
    likelihood, or a probability outside ``[0, 1)``.
    """

    pass


class ConfigurationError(StormTailError, ValueError):
    """Raised when an :class:`~stormtail.config.AnalysisConfig` is inconsistent
    with itself or with the observations it is validated against."""

    pass


class OptimizationError(StormTailError, RuntimeError):
    """Raised when no start of the maximum-likelihood fit reaches a finite
    negative log-likelihood.

    Parameters
    ----------
    n_starts : int
        Number of starting points that were attempted.
    """

    def __init__(self, n_starts: int) -> None:
        msg = (
            f"No finite likelihood optimum found from {n_starts} starting points.\n"
            "To fix this, do one of the following:\n"
            "  1. Relax prior_lower / prior_upper\n"
            "  2. Lower min_tail_count or fix the threshold range so the tail is not empty"
        )
        super().__init__(msg)
        self.n_starts = n_starts

    def __reduce__(self):
        return (self.__class__, (self.n_starts,))


class InitializationError(StormTailError, RuntimeError):
    """Raised when an MCMC chain cannot draw a valid starting point.

    Parameters
    ----------
    attempts : int
        Number of starting points drawn before giving up.
    chain : int, optional
        Index of the chain that failed.
    """

    def __init__(self, attempts: int, chain: Optional[int] = None) -> None:
        where = f"chain {chain}" if chain is not None else "chain"
        msg = (
            f"{where} could not find a start with finite likelihood inside the "
            f"prior box after {attempts} attempts"
        )
        super().__init__(msg)
        self.attempts = attempts
        self.chain = chain

    def __reduce__(self):
        return (self.__class__, (self.attempts, self.chain))


class ConvergenceError(StormTailError, RuntimeError):
    """Raised when chains are combined although the cross-chain comparison
    flagged non-convergence and the caller did not accept the warning."""

    pass


class ConvergenceWarning(UserWarning):
    """Warning category for cross-chain quantile mismatch."""

    pass


class VerificationError(StormTailError, RuntimeError):
    """Raised by the pipeline when a fitted quantile function fails its
    inversion check and verification is required before sampling."""

    pass
