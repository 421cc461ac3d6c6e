"""
Risk Engine Data Model
======================

Immutable records exchanged with the engine:

- Inputs: Position, ReturnSeries, VaRRequest
- Outputs: VaRResult with ComponentVaR / MarginalVaR / IncrementalVaR
  breakdowns and an optional BacktestResult

Every record is frozen. A new calculation produces a new VaRResult with a
new id; nothing is updated in place.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Mapping, Sequence

import numpy as np
import pandas as pd

from risk_engine.exceptions import IncompleteMarketData, VaRValidationError
from risk_engine.statistics import normalize_confidence_level, normalize_horizon


class VaRMethod(str, Enum):
    """VaR calculation methodology."""
    PARAMETRIC = "PARAMETRIC"
    HISTORICAL_SIMULATION = "HISTORICAL_SIMULATION"
    MONTE_CARLO = "MONTE_CARLO"

    @classmethod
    def parse(cls, value: "VaRMethod | str") -> "VaRMethod":
        """Parse a method name, rejecting unknown values."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError as e:
            raise VaRValidationError(
                f"Unsupported VaR method: {value!r} "
                f"(supported: {', '.join(m.value for m in cls)})"
            ) from e


class BacktestStatus(str, Enum):
    """Backtest lifecycle: NOT_RUN -> RUNNING -> PASSED | FAILED."""
    NOT_RUN = "NOT_RUN"
    RUNNING = "RUNNING"
    PASSED = "PASSED"
    FAILED = "FAILED"


# =============================================================================
# INPUTS
# =============================================================================


@dataclass(frozen=True)
class Position:
    """Snapshot of a single holding as of the calculation date."""
    position_id: str
    security_id: str  # Column key in the return matrix
    symbol: str
    market_value: float
    asset_class: str = "OTHER"
    sector: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "position_id": self.position_id,
            "security_id": self.security_id,
            "symbol": self.symbol,
            "market_value": self.market_value,
            "asset_class": self.asset_class,
            "sector": self.sector,
        }


@dataclass(frozen=True, eq=False)
class ReturnSeries:
    """
    Aligned daily returns, N days x M instruments.

    The matrix must be complete: gaps are resolved (forward filled or
    excluded) before data enters the engine, see
    ``risk_engine.market_data.align_returns``.
    """
    instruments: tuple[str, ...]
    dates: tuple[date, ...]
    values: np.ndarray
    filled_dates: Mapping[str, tuple[date, ...]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        instruments = tuple(self.instruments)
        dates = tuple(self.dates)
        values = np.array(self.values, dtype=float, copy=True)
        if values.ndim == 1:
            values = values.reshape(-1, 1)

        if values.ndim != 2:
            raise IncompleteMarketData(f"Return matrix must be 2-D, got {values.ndim}-D")
        if len(set(instruments)) != len(instruments):
            raise IncompleteMarketData("Duplicate instruments in return matrix", instruments)
        if values.shape[1] != len(instruments):
            raise IncompleteMarketData(
                f"Return matrix has {values.shape[1]} columns for {len(instruments)} instruments",
                instruments,
            )
        if values.shape[0] != len(dates):
            raise IncompleteMarketData(
                f"Return matrix has {values.shape[0]} rows for {len(dates)} dates",
                instruments,
            )
        if any(later <= earlier for earlier, later in zip(dates, dates[1:])):
            raise IncompleteMarketData("Return dates must be strictly increasing", instruments)

        missing = ~np.isfinite(values)
        if missing.any():
            bad = tuple(instruments[j] for j in np.where(missing.any(axis=0))[0])
            raise IncompleteMarketData(
                f"Return matrix has {int(missing.sum())} missing cells", bad
            )

        values.setflags(write=False)
        object.__setattr__(self, "instruments", instruments)
        object.__setattr__(self, "dates", dates)
        object.__setattr__(self, "values", values)
        kept = set(dates)
        object.__setattr__(self, "filled_dates", {
            i: tuple(d for d in self.filled_dates.get(i, ()) if d in kept) for i in instruments
        })

    @property
    def n_days(self) -> int:
        return self.values.shape[0]

    @property
    def n_instruments(self) -> int:
        return self.values.shape[1]

    @property
    def filled_points(self) -> dict[str, int]:
        """Forward-filled cells per instrument within these rows."""
        return {i: len(d) for i, d in self.filled_dates.items()}

    def column(self, instrument: str) -> np.ndarray:
        """Return series for one instrument."""
        try:
            return self.values[:, self.instruments.index(instrument)]
        except ValueError as e:
            raise IncompleteMarketData(
                f"No return history for instrument {instrument!r}", (instrument,)
            ) from e

    def tail(self, n_days: int) -> "ReturnSeries":
        """Most recent ``n_days`` rows."""
        if n_days > self.n_days:
            raise IncompleteMarketData(
                f"Requested {n_days} days of history, only {self.n_days} available",
                self.instruments,
            )
        return ReturnSeries(
            instruments=self.instruments,
            dates=self.dates[-n_days:],
            values=self.values[-n_days:],
            filled_dates=self.filled_dates,
        )

    def up_to(self, as_of_date: date) -> "ReturnSeries":
        """Rows dated on or before ``as_of_date``."""
        n = sum(1 for d in self.dates if d <= as_of_date)
        if n == self.n_days:
            return self
        return ReturnSeries(
            instruments=self.instruments,
            dates=self.dates[:n],
            values=self.values[:n],
            filled_dates=self.filled_dates,
        )

    def select(self, instruments: Sequence[str]) -> "ReturnSeries":
        """Subset of columns, in the requested order."""
        missing = tuple(i for i in instruments if i not in self.instruments)
        if missing:
            raise IncompleteMarketData(
                f"No return history for instruments: {', '.join(missing)}", missing
            )
        idx = [self.instruments.index(i) for i in instruments]
        return ReturnSeries(
            instruments=tuple(instruments),
            dates=self.dates,
            values=self.values[:, idx],
            filled_dates=self.filled_dates,
        )

    @classmethod
    def from_frame(
        cls,
        frame: pd.DataFrame,
        filled_dates: Mapping[str, tuple[date, ...]] | None = None,
    ) -> "ReturnSeries":
        """Build from a date-indexed DataFrame with one column per instrument."""
        index = pd.DatetimeIndex(frame.index)
        return cls(
            instruments=tuple(str(c) for c in frame.columns),
            dates=tuple(ts.date() for ts in index),
            values=frame.to_numpy(dtype=float),
            filled_dates=filled_dates or {},
        )

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            self.values,
            index=pd.DatetimeIndex(self.dates, name="date"),
            columns=list(self.instruments),
        )


@dataclass(frozen=True)
class VaRRequest:
    """
    A single VaR calculation request.

    Confidence level and horizon are validated on construction; unknown
    values raise instead of falling back to a default.
    """
    portfolio_id: str
    tenant_id: str
    as_of_date: date
    method: VaRMethod
    confidence_level: float  # Percent: 95, 99 or 99.9
    time_horizon: str  # 1D, 1W, 2W, 1M, 3M, 6M, 1Y
    include_backtest: bool = False
    exclude_positions: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", VaRMethod.parse(self.method))
        object.__setattr__(self, "confidence_level", normalize_confidence_level(self.confidence_level))
        object.__setattr__(self, "time_horizon", normalize_horizon(self.time_horizon))
        object.__setattr__(self, "exclude_positions", tuple(self.exclude_positions))

    def to_dict(self) -> dict[str, Any]:
        return {
            "portfolio_id": self.portfolio_id,
            "tenant_id": self.tenant_id,
            "as_of_date": self.as_of_date.isoformat(),
            "method": self.method.value,
            "confidence_level": self.confidence_level,
            "time_horizon": self.time_horizon,
            "include_backtest": self.include_backtest,
            "exclude_positions": list(self.exclude_positions),
        }


# =============================================================================
# DECOMPOSITION RECORDS
# =============================================================================


@dataclass(frozen=True)
class ComponentVaR:
    """VaR of one group of positions, evaluated as a stand-alone sub-portfolio."""
    group_key: str
    var_amount: float
    percent_of_total: float
    market_value: float
    position_count: int
    correlation: float  # Correlation of group P&L with total portfolio P&L

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_key": self.group_key,
            "var_amount": self.var_amount,
            "percent_of_total": self.percent_of_total,
            "market_value": self.market_value,
            "position_count": self.position_count,
            "correlation": self.correlation,
        }


@dataclass(frozen=True)
class MarginalVaR:
    """
    Marginal VaR of one position and its Euler contribution.

    ``marginal_var`` is the derivative of total VaR with respect to the
    position's portfolio weight, in currency per unit of weight (a full
    weight of 1.0). It is not a with/without difference; see
    ``IncrementalVaR`` for that.

    ``contribution = weight x marginal_var``, in currency. Contributions of
    all positions add up to total VaR.
    """
    position_id: str
    security_id: str
    symbol: str
    marginal_var: float  # currency per unit of portfolio weight
    contribution: float  # currency
    percent_contribution: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "position_id": self.position_id,
            "security_id": self.security_id,
            "symbol": self.symbol,
            "marginal_var": self.marginal_var,
            "contribution": self.contribution,
            "percent_contribution": self.percent_contribution,
        }


@dataclass(frozen=True)
class IncrementalVaR:
    """Change in portfolio VaR from holding vs. not holding a position."""
    position_id: str
    security_id: str
    symbol: str
    incremental_var: float
    var_without: float
    var_with: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "position_id": self.position_id,
            "security_id": self.security_id,
            "symbol": self.symbol,
            "incremental_var": self.incremental_var,
            "var_without": self.var_without,
            "var_with": self.var_with,
        }


# =============================================================================
# BACKTESTING RECORDS
# =============================================================================


@dataclass(frozen=True)
class KupiecTestResult:
    """Kupiec unconditional coverage (proportion of failures) test."""
    test_statistic: float
    critical_value: float
    p_value: float
    reject_null: bool
    observations: int
    exceptions: int
    expected_rate: float
    degrees_of_freedom: int = 1
    status: BacktestStatus = BacktestStatus.NOT_RUN

    def to_dict(self) -> dict[str, Any]:
        return {
            "test_statistic": self.test_statistic,
            "critical_value": self.critical_value,
            "p_value": self.p_value,
            "reject_null": self.reject_null,
            "observations": self.observations,
            "exceptions": self.exceptions,
            "expected_rate": self.expected_rate,
            "degrees_of_freedom": self.degrees_of_freedom,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class ChristoffersenTestResult:
    """Christoffersen test on the exception sequence.

    ``test_statistic`` is the conditional coverage statistic (unconditional
    coverage + independence); ``independence_statistic`` isolates clustering.
    """
    test_statistic: float
    critical_value: float
    p_value: float
    reject_null: bool
    independence_statistic: float
    independence_p_value: float
    transitions: Mapping[str, int]
    degrees_of_freedom: int = 2
    status: BacktestStatus = BacktestStatus.NOT_RUN

    def to_dict(self) -> dict[str, Any]:
        return {
            "test_statistic": self.test_statistic,
            "critical_value": self.critical_value,
            "p_value": self.p_value,
            "reject_null": self.reject_null,
            "independence_statistic": self.independence_statistic,
            "independence_p_value": self.independence_p_value,
            "transitions": dict(self.transitions),
            "degrees_of_freedom": self.degrees_of_freedom,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class BacktestResult:
    """Outcome of comparing realised P&L with VaR estimates."""
    test_period: tuple[date, date]
    observations: int
    number_of_exceptions: int
    exception_rate: float
    expected_exception_rate: float
    kupiec_test: KupiecTestResult
    christoffersen_test: ChristoffersenTestResult
    is_model_accurate: bool
    exception_dates: tuple[date, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "test_period": {
                "start_date": self.test_period[0].isoformat(),
                "end_date": self.test_period[1].isoformat(),
            },
            "observations": self.observations,
            "number_of_exceptions": self.number_of_exceptions,
            "exception_rate": self.exception_rate,
            "expected_exception_rate": self.expected_exception_rate,
            "kupiec_test": self.kupiec_test.to_dict(),
            "christoffersen_test": self.christoffersen_test.to_dict(),
            "is_model_accurate": self.is_model_accurate,
            "exception_dates": [d.isoformat() for d in self.exception_dates],
        }


# =============================================================================
# RESULT METADATA
# =============================================================================


@dataclass(frozen=True)
class DataQuality:
    """Quality of the return window used for the calculation."""
    observations: int
    lookback_days: int
    instruments: int
    filled_points: int
    completeness_pct: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "observations": self.observations,
            "lookback_days": self.lookback_days,
            "instruments": self.instruments,
            "filled_points": self.filled_points,
            "completeness_pct": self.completeness_pct,
        }


@dataclass(frozen=True)
class ModelAssumptions:
    """Modelling choices behind a VaR figure, kept for model-risk review."""
    distribution: str
    correlation_model: str
    volatility_model: str
    lookback_period: int
    data_frequency: str = "DAILY"
    time_scaling: str = "SQUARE_ROOT_OF_TIME"
    simulations: int | None = None
    random_seed: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "distribution": self.distribution,
            "correlation_model": self.correlation_model,
            "volatility_model": self.volatility_model,
            "lookback_period": self.lookback_period,
            "data_frequency": self.data_frequency,
            "time_scaling": self.time_scaling,
            "simulations": self.simulations,
            "random_seed": self.random_seed,
        }


@dataclass(frozen=True)
class VaRResult:
    """Complete, immutable outcome of one VaR calculation."""
    portfolio_id: str
    tenant_id: str
    as_of_date: date
    method: VaRMethod
    confidence_level: float
    time_horizon: str
    total_var: float
    diversified_var: float
    undiversified_var: float
    diversification_benefit: float
    component_var: tuple[ComponentVaR, ...]
    marginal_var: tuple[MarginalVaR, ...]
    incremental_var: tuple[IncrementalVaR, ...]
    data_quality: DataQuality
    assumptions: ModelAssumptions
    calculation_time_ms: float
    backtesting_results: BacktestResult | None = None
    model_accuracy: float | None = None
    id: str = field(default_factory=lambda: f"var_{uuid.uuid4().hex}")
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    calculated_by: str = "system"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "portfolio_id": self.portfolio_id,
            "tenant_id": self.tenant_id,
            "as_of_date": self.as_of_date.isoformat(),
            "method": self.method.value,
            "confidence_level": self.confidence_level,
            "time_horizon": self.time_horizon,
            "total_var": self.total_var,
            "diversified_var": self.diversified_var,
            "undiversified_var": self.undiversified_var,
            "diversification_benefit": self.diversification_benefit,
            "component_var": [c.to_dict() for c in self.component_var],
            "marginal_var": [m.to_dict() for m in self.marginal_var],
            "incremental_var": [i.to_dict() for i in self.incremental_var],
            "backtesting_results": (
                self.backtesting_results.to_dict() if self.backtesting_results else None
            ),
            "model_accuracy": self.model_accuracy,
            "data_quality": self.data_quality.to_dict(),
            "assumptions": self.assumptions.to_dict(),
            "calculation_time_ms": self.calculation_time_ms,
            "created_at": self.created_at.isoformat(),
            "calculated_by": self.calculated_by,
        }

    def to_event(self) -> dict[str, Any]:
        """Payload of the VAR_CALCULATED domain event.

        Publishing is the caller's job; the engine only builds the payload.
        """
        return {
            "event_type": "VAR_CALCULATED",
            "var_id": self.id,
            "portfolio_id": self.portfolio_id,
            "tenant_id": self.tenant_id,
            "timestamp": self.created_at.isoformat(),
            "data": self.to_dict(),
        }
