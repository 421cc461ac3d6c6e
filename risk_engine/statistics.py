"""
Statistics Kernel
=================

Low-level numerical building blocks shared by every VaR methodology:

- Sample covariance / correlation matrices (unbiased, symmetrised)
- Cholesky factor with an eigen-decomposition fallback for singular matrices
- Z-score and trading-day lookup tables (exact, no interpolation)
- Percentile index into the ascending-sorted loss tail
- Chi-square CDF and critical values for the backtests
"""

from __future__ import annotations

import logging
import math
from enum import Enum
from typing import Sequence

import numpy as np
from scipy import stats

from risk_engine.exceptions import (
    IncompleteMarketData,
    NumericalInstabilityError,
    UnsupportedConfidenceLevel,
    UnsupportedHorizon,
)

logger = logging.getLogger(__name__)


class TimeHorizon(str, Enum):
    """Supported VaR time horizons."""
    ONE_DAY = "1D"
    ONE_WEEK = "1W"
    TWO_WEEKS = "2W"
    ONE_MONTH = "1M"
    THREE_MONTHS = "3M"
    SIX_MONTHS = "6M"
    ONE_YEAR = "1Y"


# One-sided standard normal quantiles, as quoted in risk reports
Z_SCORES: dict[float, float] = {
    95.0: 1.645,
    99.0: 2.326,
    99.9: 3.09,
}

# Trading days per horizon (square-root-of-time rule)
TRADING_DAYS: dict[str, int] = {
    TimeHorizon.ONE_DAY.value: 1,
    TimeHorizon.ONE_WEEK.value: 5,
    TimeHorizon.TWO_WEEKS.value: 10,
    TimeHorizon.ONE_MONTH.value: 21,
    TimeHorizon.THREE_MONTHS.value: 63,
    TimeHorizon.SIX_MONTHS.value: 126,
    TimeHorizon.ONE_YEAR.value: 252,
}

SUPPORTED_CONFIDENCE_LEVELS: tuple[float, ...] = tuple(Z_SCORES)
SUPPORTED_HORIZONS: tuple[str, ...] = tuple(TRADING_DAYS)


def normalize_confidence_level(confidence_level: float) -> float:
    """Return the table key for a confidence level or raise."""
    if isinstance(confidence_level, bool):
        raise UnsupportedConfidenceLevel(confidence_level, SUPPORTED_CONFIDENCE_LEVELS)
    try:
        value = float(confidence_level)
    except (TypeError, ValueError) as e:
        raise UnsupportedConfidenceLevel(confidence_level, SUPPORTED_CONFIDENCE_LEVELS) from e

    for supported in SUPPORTED_CONFIDENCE_LEVELS:
        if math.isclose(value, supported, rel_tol=0.0, abs_tol=1e-9):
            return supported
    raise UnsupportedConfidenceLevel(confidence_level, SUPPORTED_CONFIDENCE_LEVELS)


def normalize_horizon(horizon: str | TimeHorizon) -> str:
    """Return the table key for a time horizon or raise."""
    key = horizon.value if isinstance(horizon, TimeHorizon) else horizon
    if not isinstance(key, str) or key not in TRADING_DAYS:
        raise UnsupportedHorizon(horizon, SUPPORTED_HORIZONS)
    return key


def z_score(confidence_level: float) -> float:
    """
    Look up the z-score for a confidence level.

    Args:
        confidence_level: Confidence in percent (95, 99 or 99.9)

    Returns:
        One-sided standard normal quantile

    Raises:
        UnsupportedConfidenceLevel: For any other value
    """
    return Z_SCORES[normalize_confidence_level(confidence_level)]


def time_scaling_factor(horizon: str | TimeHorizon) -> int:
    """
    Trading-day count for a horizon.

    VaR scales by ``sqrt(time_scaling_factor(horizon))``.

    Raises:
        UnsupportedHorizon: For any horizon outside the table
    """
    return TRADING_DAYS[normalize_horizon(horizon)]


def percentile_index(confidence_level: float, sample_size: int) -> int:
    """
    Index into ascending-sorted returns for the loss tail.

    ``floor((1 - confidence/100) * sample_size)``, clamped to a valid index.
    The product is rounded before flooring so that e.g. 99.9% of 10,000
    samples lands on index 10 rather than 9.
    """
    if sample_size <= 0:
        raise IncompleteMarketData("Percentile requires at least one sample")
    level = normalize_confidence_level(confidence_level)
    raw = (1.0 - level / 100.0) * sample_size
    index = math.floor(round(raw, 9))
    return min(max(index, 0), sample_size - 1)


def covariance_matrix(
    returns: np.ndarray,
    instruments: Sequence[str] | None = None,
    psd_tolerance: float = 1e-10,
) -> np.ndarray:
    """
    Unbiased sample covariance matrix.

    Args:
        returns: N x M matrix (N days, M instruments)
        instruments: Instrument names for diagnostics
        psd_tolerance: Relative tolerance for negative eigenvalues

    Returns:
        Symmetric, positive semi-definite M x M matrix

    Raises:
        IncompleteMarketData: Fewer than two observations
        NumericalInstabilityError: Non-finite or indefinite matrix
    """
    matrix = np.asarray(returns, dtype=float)
    if matrix.ndim == 1:
        matrix = matrix.reshape(-1, 1)
    n_obs, n_assets = matrix.shape
    names = tuple(instruments) if instruments is not None else tuple(str(i) for i in range(n_assets))

    if n_obs < 2:
        raise IncompleteMarketData(
            f"Covariance requires at least 2 observations, got {n_obs}",
            instruments=names,
        )

    cov = np.atleast_2d(np.cov(matrix, rowvar=False, ddof=1))
    # Floating-point accumulation can leave tiny asymmetries
    cov = (cov + cov.T) / 2.0

    if not np.all(np.isfinite(cov)):
        bad = [names[i] for i in range(n_assets) if not np.all(np.isfinite(cov[i]))]
        raise NumericalInstabilityError(
            "covariance_matrix",
            "non-finite covariance entries",
            {"instruments": bad},
        )

    eigenvalues = np.linalg.eigvalsh(cov)
    scale = max(float(np.max(np.abs(eigenvalues))), 1e-300)
    if eigenvalues[0] < -psd_tolerance * scale:
        raise NumericalInstabilityError(
            "covariance_matrix",
            "matrix is not positive semi-definite",
            {"min_eigenvalue": float(eigenvalues[0]), "instruments": list(names)},
        )

    return cov


def correlation_matrix(cov: np.ndarray) -> np.ndarray:
    """Correlation matrix from a covariance matrix.

    Zero-variance instruments get a unit diagonal and zero correlations.
    """
    vols = np.sqrt(np.clip(np.diag(cov), 0.0, None))
    outer = np.outer(vols, vols)
    with np.errstate(divide="ignore", invalid="ignore"):
        corr = np.where(outer > 0, cov / outer, 0.0)
    np.fill_diagonal(corr, 1.0)
    return np.clip(corr, -1.0, 1.0)


def cholesky_factor(cov: np.ndarray, instruments: Sequence[str] | None = None) -> np.ndarray:
    """
    Lower-triangular-like factor L with ``L @ L.T == cov``.

    Uses Cholesky when the matrix is positive definite. Singular but PSD
    matrices (zero-variance or perfectly correlated instruments) fall back to
    ``V @ diag(sqrt(lambda))`` from the eigen-decomposition.
    """
    try:
        return np.linalg.cholesky(cov)
    except np.linalg.LinAlgError:
        eigenvalues, eigenvectors = np.linalg.eigh(cov)
        scale = max(float(np.max(np.abs(eigenvalues))), 1e-300)
        if eigenvalues[0] < -1e-8 * scale:
            raise NumericalInstabilityError(
                "cholesky_factor",
                "covariance matrix is indefinite",
                {
                    "min_eigenvalue": float(eigenvalues[0]),
                    "instruments": list(instruments) if instruments is not None else [],
                },
            )
        logger.debug("Covariance matrix singular, using eigen-decomposition factor")
        return eigenvectors * np.sqrt(np.clip(eigenvalues, 0.0, None))


def chi_square_cdf(x: float, degrees_of_freedom: int) -> float:
    """Chi-square cumulative distribution function."""
    if degrees_of_freedom <= 0:
        raise ValueError(f"degrees_of_freedom must be positive, got {degrees_of_freedom}")
    if not np.isfinite(x):
        return 1.0 if x > 0 else 0.0
    if x <= 0:
        return 0.0
    return float(stats.chi2.cdf(x, degrees_of_freedom))


def chi_square_critical_value(significance_level: float, degrees_of_freedom: int) -> float:
    """Critical value such that ``P(X > value) = significance_level``.

    3.841 for 1 df and 5.991 for 2 df at 5% significance.
    """
    if not 0 < significance_level < 1:
        raise ValueError(f"significance_level must be in (0, 1), got {significance_level}")
    return float(stats.chi2.ppf(1.0 - significance_level, degrees_of_freedom))
