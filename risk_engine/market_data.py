"""
Market Data Boundary
====================

The engine never fetches market data. Callers resolve it through a
``MarketDataAdapter`` and hand the engine a complete ``ReturnSeries``.

This module provides:
- The adapter protocol (instruments, as-of date, lookback) -> ReturnSeries
- Gap resolution for raw, unaligned return series (forward fill or drop)
- Price to simple-return conversion
- An in-memory adapter backed by a DataFrame
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Mapping, Protocol, Sequence

import pandas as pd

from risk_engine.exceptions import IncompleteMarketData
from risk_engine.models import ReturnSeries

logger = logging.getLogger(__name__)


FILL_METHODS = ("ffill", "drop")


class MarketDataAdapter(Protocol):
    """Supplies aligned historical returns for a set of instruments."""

    def get_returns(
        self,
        instruments: Sequence[str],
        as_of_date: date,
        lookback_days: int,
    ) -> ReturnSeries:
        ...


def align_returns(
    series: Mapping[str, pd.Series] | pd.DataFrame,
    fill_method: str = "ffill",
    max_fill_days: int | None = 5,
) -> ReturnSeries:
    """
    Align per-instrument return series onto one calendar.

    Args:
        series: Mapping of instrument to date-indexed returns, or a DataFrame
        fill_method: "ffill" forward-fills gaps, "drop" removes incomplete dates
        max_fill_days: Longest run of consecutive gaps that may be filled

    Returns:
        Complete ReturnSeries with the number of filled cells per instrument

    Raises:
        IncompleteMarketData: Gaps remain after resolution
    """
    if fill_method not in FILL_METHODS:
        raise ValueError(f"fill_method must be one of {FILL_METHODS}, got {fill_method!r}")

    if isinstance(series, pd.DataFrame):
        frame = series.copy()
    else:
        frame = pd.DataFrame({symbol: pd.Series(values) for symbol, values in series.items()})

    frame.index = pd.DatetimeIndex(frame.index)
    frame = frame.sort_index()
    frame = frame[~frame.index.duplicated(keep="last")]

    if frame.empty:
        raise IncompleteMarketData("No return data supplied")

    empty = tuple(str(c) for c in frame.columns if frame[c].isna().all())
    if empty:
        raise IncompleteMarketData("Instruments without any return history", empty)

    if fill_method == "ffill":
        # Leading gaps have nothing to fill from; trim to the common start
        first_valid = max(frame[c].first_valid_index() for c in frame.columns)
        frame = frame.loc[first_valid:]
        missing_before = frame.isna()
        filled = frame.ffill(limit=max_fill_days)
    else:
        missing_before = None
        filled = frame.dropna(how="any")

    remaining = filled.isna().sum()
    if remaining.any():
        bad = tuple(str(c) for c in remaining[remaining > 0].index)
        raise IncompleteMarketData(
            f"Unresolved gaps longer than {max_fill_days} days", bad
        )

    filled_dates = {}
    if missing_before is not None:
        filled_dates = {
            str(c): tuple(ts.date() for ts in filled.index[missing_before[c].to_numpy()])
            for c in filled.columns
        }
        n_filled = sum(len(d) for d in filled_dates.values())
        if n_filled:
            logger.debug(f"Forward-filled {n_filled} return cells")

    return ReturnSeries.from_frame(filled, filled_dates=filled_dates)


def returns_from_prices(prices: pd.DataFrame) -> pd.DataFrame:
    """Simple daily returns from a date-indexed price table."""
    prices = prices.sort_index()
    if (prices <= 0).any().any():
        bad = [str(c) for c in prices.columns if (prices[c] <= 0).any()]
        raise IncompleteMarketData("Non-positive prices", tuple(bad))
    return prices.pct_change(fill_method=None).iloc[1:]


class InMemoryMarketDataAdapter:
    """Adapter serving returns from a pre-loaded DataFrame."""

    def __init__(self, returns: pd.DataFrame):
        frame = returns.copy()
        frame.index = pd.DatetimeIndex(frame.index)
        self._returns = frame.sort_index()

    def get_returns(
        self,
        instruments: Sequence[str],
        as_of_date: date,
        lookback_days: int,
    ) -> ReturnSeries:
        missing = tuple(i for i in instruments if i not in self._returns.columns)
        if missing:
            raise IncompleteMarketData(
                f"No return history for instruments: {', '.join(missing)}", missing
            )

        window = self._returns.loc[: pd.Timestamp(as_of_date), list(instruments)]
        if len(window) < lookback_days:
            raise IncompleteMarketData(
                f"Only {len(window)} days of history before {as_of_date}, "
                f"{lookback_days} required",
                tuple(instruments),
            )
        return ReturnSeries.from_frame(window.tail(lookback_days))
