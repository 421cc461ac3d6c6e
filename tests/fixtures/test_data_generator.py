"""
Test Data Generator
===================

Synthetic market data for testing the risk engine.

This module provides:
- Correlated daily return matrices on a business-day calendar
- Price tables with gaps for alignment tests
- Exception indicator sequences (scattered or clustered) for backtests

Everything is seeded so tests are repeatable.
"""

from __future__ import annotations

from datetime import date

import numpy as np
import pandas as pd

from risk_engine.models import ReturnSeries


DEFAULT_START = date(2022, 1, 3)


def business_days(n_days: int, start: date = DEFAULT_START) -> tuple[date, ...]:
    """``n_days`` consecutive business days from ``start``."""
    return tuple(ts.date() for ts in pd.bdate_range(start=start, periods=n_days))


def generate_correlated_returns(
    n_days: int = 252,
    volatilities: np.ndarray | list[float] | None = None,
    correlation_matrix: np.ndarray | None = None,
    instruments: tuple[str, ...] | None = None,
    seed: int | None = 42,
    start: date = DEFAULT_START,
) -> ReturnSeries:
    """
    Generate correlated daily returns.

    Uses Cholesky decomposition to give the draws the requested
    correlation structure.

    Args:
        n_days: Number of trading days
        volatilities: Daily volatility per instrument (default 1% each)
        correlation_matrix: M x M correlation matrix (default identity)
        instruments: Column names (default SEC0, SEC1, ...)
        seed: Random seed for reproducibility
        start: First date of the calendar

    Returns:
        ReturnSeries of shape n_days x M
    """
    if volatilities is None:
        n = len(instruments) if instruments else 2
        volatilities = np.full(n, 0.01)
    vols = np.asarray(volatilities, dtype=float)
    m = vols.size

    if correlation_matrix is None:
        correlation_matrix = np.eye(m)
    if correlation_matrix.shape != (m, m):
        raise ValueError(f"Correlation matrix must be {m}x{m}")
    if not np.allclose(correlation_matrix, correlation_matrix.T):
        raise ValueError("Correlation matrix must be symmetric")

    try:
        cholesky = np.linalg.cholesky(correlation_matrix)
    except np.linalg.LinAlgError:
        # Nearest positive definite matrix
        eigvals, eigvecs = np.linalg.eigh(correlation_matrix)
        eigvals = np.maximum(eigvals, 1e-8)
        cholesky = np.linalg.cholesky(eigvecs @ np.diag(eigvals) @ eigvecs.T)

    rng = np.random.default_rng(seed)
    shocks = rng.standard_normal((n_days, m)) @ cholesky.T
    values = shocks * vols

    if instruments is None:
        instruments = tuple(f"SEC{i}" for i in range(m))

    return ReturnSeries(
        instruments=tuple(instruments),
        dates=business_days(n_days, start),
        values=values,
    )


def exact_moment_returns(
    n_days: int,
    volatilities: np.ndarray | list[float],
    correlation_matrix: np.ndarray,
    seed: int | None = 7,
    instruments: tuple[str, ...] | None = None,
) -> ReturnSeries:
    """
    Returns whose sample covariance (ddof=1) matches the target exactly.

    The raw draws are demeaned and whitened before the target Cholesky
    factor is applied, so ``np.cov`` of the result reproduces
    ``diag(vol) @ corr @ diag(vol)`` to machine precision.
    """
    vols = np.asarray(volatilities, dtype=float)
    m = vols.size
    rng = np.random.default_rng(seed)

    raw = rng.standard_normal((n_days, m))
    raw -= raw.mean(axis=0)
    sample_cov = raw.T @ raw / (n_days - 1)
    whitened = raw @ np.linalg.inv(np.linalg.cholesky(sample_cov)).T

    target = np.diag(vols) @ correlation_matrix @ np.diag(vols)
    values = whitened @ np.linalg.cholesky(target).T

    if instruments is None:
        instruments = tuple(f"SEC{i}" for i in range(m))
    return ReturnSeries(instruments=instruments, dates=business_days(n_days), values=values)


def generate_price_frame(
    n_days: int = 60,
    instruments: tuple[str, ...] = ("AAA", "BBB"),
    initial_price: float = 100.0,
    daily_volatility: float = 0.01,
    seed: int | None = 11,
) -> pd.DataFrame:
    """Geometric random-walk prices indexed by business day."""
    rng = np.random.default_rng(seed)
    log_returns = rng.normal(0.0, daily_volatility, (n_days, len(instruments)))
    prices = initial_price * np.exp(np.cumsum(log_returns, axis=0))
    index = pd.bdate_range(start=DEFAULT_START, periods=n_days)
    return pd.DataFrame(prices, index=index, columns=list(instruments))


def scattered_exceptions(n: int, exceptions: int) -> np.ndarray:
    """0/1 sequence with ``exceptions`` hits spread evenly (no two adjacent)."""
    indicators = np.zeros(n, dtype=int)
    if exceptions:
        positions = np.linspace(0, n - 1, exceptions).round().astype(int)
        indicators[positions] = 1
    return indicators


def clustered_exceptions(n: int, exceptions: int, start: int | None = None) -> np.ndarray:
    """0/1 sequence with all hits on consecutive days."""
    indicators = np.zeros(n, dtype=int)
    first = (n - exceptions) // 2 if start is None else start
    indicators[first:first + exceptions] = 1
    return indicators
