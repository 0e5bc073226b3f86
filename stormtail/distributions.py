"""
stormtail.distributions - Bulk + generalized Pareto tail mixture

The mixture places mass ``1 - phiu`` on the bulk distribution truncated at
the threshold ``u`` and mass ``phiu`` on a generalized Pareto (GPD) tail for
exceedances of ``u``. The GPD scale is not free: it is set so that the
density is continuous at the threshold,

    sigmau = phiu * F_b(u) / ((1 - phiu) * f_b(u))

which leaves the parameter vector ``[gshape, gscale, u, xi]``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import ClassVar, Dict, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.special import gammainc, gammaincinv, gammaln, xlogy

from .core import PARAMETER_NAMES, XI_EPS, return_period_probability
from .errors import ConfigurationError, DomainError

ArrayLike = Union[float, Sequence[float], np.ndarray]


# =============================================================================
# BULK FAMILIES
# =============================================================================


class BulkFamily(ABC):
    """Distribution fitted below the threshold."""

    name: ClassVar[str] = ""
    param_names: ClassVar[Tuple[str, ...]] = ()

    @abstractmethod
    def logpdf(self, x: np.ndarray, params: np.ndarray) -> np.ndarray:
        pass

    @abstractmethod
    def cdf(self, x: np.ndarray, params: np.ndarray) -> np.ndarray:
        pass

    @abstractmethod
    def ppf(self, q: np.ndarray, params: np.ndarray) -> np.ndarray:
        pass

    @abstractmethod
    def is_valid(self, params: np.ndarray) -> bool:
        pass

    @abstractmethod
    def initial_guess(self, x: np.ndarray) -> np.ndarray:
        """Moment-based starting values from (bulk) observations."""
        pass

    def pdf(self, x: np.ndarray, params: np.ndarray) -> np.ndarray:
        return np.exp(self.logpdf(x, params))


class GammaBulk(BulkFamily):
    """Gamma bulk with shape and scale parameters."""

    name = "gamma"
    param_names = ("gshape", "gscale")

    def logpdf(self, x: np.ndarray, params: np.ndarray) -> np.ndarray:
        shape, scale = params
        return xlogy(shape - 1.0, x) - x / scale - gammaln(shape) - shape * np.log(scale)

    def cdf(self, x: np.ndarray, params: np.ndarray) -> np.ndarray:
        shape, scale = params
        return gammainc(shape, np.asarray(x) / scale)

    def ppf(self, q: np.ndarray, params: np.ndarray) -> np.ndarray:
        shape, scale = params
        return gammaincinv(shape, q) * scale

    def is_valid(self, params: np.ndarray) -> bool:
        shape, scale = params
        return bool(np.isfinite(shape) and np.isfinite(scale) and shape > 0 and scale > 0)

    def initial_guess(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        mean = float(np.mean(x))
        var = float(np.var(x, ddof=1)) if len(x) > 1 else 0.0
        if mean <= 0 or var <= 0:
            return np.array([1.0, max(mean, 1.0)])
        return np.array([mean**2 / var, var / mean])


BULK_FAMILIES: Dict[str, BulkFamily] = {
    GammaBulk.name: GammaBulk(),
}


def get_bulk_family(name: str) -> BulkFamily:
    """Look up a registered bulk family by name."""
    try:
        return BULK_FAMILIES[name.lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unknown bulk family {name!r}; available: {sorted(BULK_FAMILIES)}"
        )


# =============================================================================
# GENERALIZED PARETO TAIL
# =============================================================================


def gpd_upper_endpoint(sigma: float, xi: float) -> float:
    """Largest attainable excess; infinite unless xi < 0."""
    if xi < -XI_EPS:
        return -sigma / xi
    return np.inf


def gpd_logpdf(y: np.ndarray, sigma: float, xi: float) -> np.ndarray:
    """Log density of excesses ``y >= 0``; -inf beyond the upper endpoint."""
    y = np.asarray(y, dtype=float)
    if abs(xi) < XI_EPS:
        return -np.log(sigma) - y / sigma

    z = 1.0 + xi * y / sigma
    out = np.full(y.shape, -np.inf)
    ok = z > 0
    out[ok] = -np.log(sigma) - (1.0 + 1.0 / xi) * np.log(z[ok])
    return out


def gpd_cdf(y: np.ndarray, sigma: float, xi: float) -> np.ndarray:
    y = np.asarray(y, dtype=float)
    if abs(xi) < XI_EPS:
        return -np.expm1(-y / sigma)

    z = np.maximum(1.0 + xi * y / sigma, 0.0)
    with np.errstate(divide="ignore"):
        return -np.expm1(-np.log(z) / xi)


def gpd_ppf(q: np.ndarray, sigma: float, xi: float) -> np.ndarray:
    """Excess quantile for ``q`` in [0, 1); saturates at the endpoint when xi < 0."""
    q = np.asarray(q, dtype=float)
    log_tail = np.log1p(-q)
    if abs(xi) < XI_EPS:
        return -sigma * log_tail

    y = sigma / xi * np.expm1(-xi * log_tail)
    return np.minimum(y, gpd_upper_endpoint(sigma, xi))


def continuity_scale(bulk: BulkFamily, bulk_params: np.ndarray, u: float, phiu: float) -> float:
    """
    GPD scale that makes the mixture density continuous at ``u``.

    Returns inf when the bulk density at ``u`` is zero or not finite (for
    example when it underflows for a tiny bulk scale); no finite tail scale
    joins such a bulk.
    """
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        cdf_u = float(bulk.cdf(np.array(u), bulk_params))
        pdf_u = float(bulk.pdf(np.array(u), bulk_params))
    if not (np.isfinite(pdf_u) and pdf_u > 0):
        return np.inf
    return phiu * cdf_u / ((1.0 - phiu) * pdf_u)


# =============================================================================
# MIXTURE
# =============================================================================


def _as_array(x: ArrayLike) -> Tuple[np.ndarray, bool]:
    arr = np.asarray(x, dtype=float)
    return np.atleast_1d(arr), arr.ndim == 0


def _restore(out: np.ndarray, scalar: bool) -> Union[float, np.ndarray]:
    return float(out[0]) if scalar else out


class MixtureModel:
    """
    Bulk + GPD mixture with a continuity-constrained tail scale.

    Parameters
    ----------
    params : sequence of float
        ``[gshape, gscale, u, xi]``.
    phiu : float
        Tail fraction P(X > u), already resolved for these parameters.
    bulk : BulkFamily, optional
        Bulk distribution (gamma by default).

    Raises
    ------
    DomainError
        If the parameters do not define a proper distribution.

    Examples
    --------
    >>> model = MixtureModel([2.0, 1.0, 3.0, 0.1], phiu=0.1)
    >>> p = model.cdf(4.0)
    >>> x = model.ppf(p)  # 4.0 up to rounding
    """

    def __init__(
        self,
        params: Sequence[float],
        phiu: float,
        bulk: Optional[BulkFamily] = None,
    ):
        self.bulk = bulk or BULK_FAMILIES["gamma"]
        params = np.array(params, dtype=float)
        if params.shape != (len(PARAMETER_NAMES),):
            raise DomainError(f"Expected {len(PARAMETER_NAMES)} parameters, got {params.shape}")
        params.setflags(write=False)
        self._params = params

        self.bulk_params = params[:2]
        self.u = float(params[2])
        self.xi = float(params[3])
        self.phiu = float(phiu)

        if not self.bulk.is_valid(self.bulk_params):
            raise DomainError(f"Invalid {self.bulk.name} parameters {tuple(self.bulk_params)}")
        if not (np.isfinite(self.u) and self.u > 0):
            raise DomainError(f"Threshold must be positive, got {self.u}")
        if not np.isfinite(self.xi):
            raise DomainError(f"Tail shape must be finite, got {self.xi}")
        if not 0.0 < self.phiu < 1.0:
            raise DomainError(f"Tail fraction phiu must lie in (0, 1), got {self.phiu}")

        self._bulk_cdf_u = float(self.bulk.cdf(np.array(self.u), self.bulk_params))
        self.sigmau = continuity_scale(self.bulk, self.bulk_params, self.u, self.phiu)
        if not (self._bulk_cdf_u > 0 and np.isfinite(self.sigmau) and self.sigmau > 0):
            raise DomainError(
                f"Bulk has no usable mass or density at threshold {self.u}; "
                "cannot join the tail continuously"
            )

    def __repr__(self) -> str:
        return (
            f"MixtureModel(gshape={self.bulk_params[0]:.6g}, gscale={self.bulk_params[1]:.6g}, "
            f"u={self.u:.6g}, xi={self.xi:.6g}, phiu={self.phiu:.6g}, sigmau={self.sigmau:.6g})"
        )

    @property
    def params(self) -> np.ndarray:
        return self._params

    @property
    def upper_endpoint(self) -> float:
        """Upper end of the support (finite only for xi < 0)."""
        return self.u + gpd_upper_endpoint(self.sigmau, self.xi)

    def _check_support(self, x: np.ndarray) -> None:
        if np.any(np.isnan(x)):
            raise DomainError("Mixture density/CDF received a missing value")
        if np.any(x < 0):
            raise DomainError(f"Mixture is defined for x >= 0, got {float(x.min())}")

    def logpdf(self, x: ArrayLike) -> Union[float, np.ndarray]:
        x, scalar = _as_array(x)
        self._check_support(x)

        out = np.empty_like(x)
        below = x < self.u
        out[below] = (
            np.log1p(-self.phiu)
            - np.log(self._bulk_cdf_u)
            + self.bulk.logpdf(x[below], self.bulk_params)
        )
        out[~below] = np.log(self.phiu) + gpd_logpdf(x[~below] - self.u, self.sigmau, self.xi)
        return _restore(out, scalar)

    def pdf(self, x: ArrayLike) -> Union[float, np.ndarray]:
        return np.exp(self.logpdf(x))

    def cdf(self, x: ArrayLike) -> Union[float, np.ndarray]:
        x, scalar = _as_array(x)
        self._check_support(x)

        out = np.empty_like(x)
        below = x < self.u
        out[below] = (
            (1.0 - self.phiu) * self.bulk.cdf(x[below], self.bulk_params) / self._bulk_cdf_u
        )
        out[~below] = (1.0 - self.phiu) + self.phiu * gpd_cdf(
            x[~below] - self.u, self.sigmau, self.xi
        )
        return _restore(out, scalar)

    def ppf(self, p: ArrayLike) -> Union[float, np.ndarray]:
        """
        Quantile function for ``p`` in [0, 1).

        With xi < 0 the tail has a finite endpoint and quantiles saturate at it
        rather than overshooting.
        """
        p, scalar = _as_array(p)
        if np.any(np.isnan(p)) or np.any(p < 0) or np.any(p >= 1):
            raise DomainError("Quantile probabilities must lie in [0, 1)")

        out = np.empty_like(p)
        bulk_mass = 1.0 - self.phiu
        below = p < bulk_mass
        out[below] = self.bulk.ppf(p[below] * self._bulk_cdf_u / bulk_mass, self.bulk_params)
        out[~below] = self.u + gpd_ppf(
            (p[~below] - bulk_mass) / self.phiu, self.sigmau, self.xi
        )
        return _restore(out, scalar)

    def inverse_check(self, p: ArrayLike) -> Union[float, np.ndarray]:
        """``cdf(ppf(p)) - p``; zero up to rounding for a correct model."""
        return self.cdf(self.ppf(p)) - p

    def rvs(self, size: int, rng: Optional[np.random.Generator] = None) -> np.ndarray:
        """Draw ``size`` values by inverse-transform sampling."""
        rng = rng if rng is not None else np.random.default_rng()
        return self.ppf(rng.random(size))

    def return_level(self, period: float, annual_rate: float, offset: float = 0.0) -> float:
        """Level exceeded on average once every ``period`` years, on the raw scale."""
        return float(self.ppf(return_period_probability(period, annual_rate))) + offset
