"""
Risk Engine
===========

Orchestrates one VaR calculation:

    validate -> market snapshot -> calculator -> decomposition
             -> optional backtest -> VaRResult

The engine is stateless between requests. It consumes an already resolved
set of positions and an aligned return matrix and returns an immutable
result; persisting it and publishing ``result.to_event()`` belong to the
caller.
"""

from __future__ import annotations

import logging
import time
from typing import Sequence

import numpy as np

from risk_engine.backtest import backtest_var_model, required_history
from risk_engine.config import EngineConfig
from risk_engine.decomposition import decompose
from risk_engine.exceptions import (
    IncompleteMarketData,
    InvalidPortfolioValue,
    VaRValidationError,
)
from risk_engine.logging_config import get_context_logger, get_performance_logger
from risk_engine.methods import (
    MarketSnapshot,
    build_snapshot,
    exposure_vector,
    get_calculator,
    gross_exposure,
    instruments_for,
    portfolio_value,
)
from risk_engine.models import (
    DataQuality,
    ModelAssumptions,
    Position,
    ReturnSeries,
    VaRMethod,
    VaRRequest,
    VaRResult,
)
from risk_engine.parallel import Deadline

logger = logging.getLogger(__name__)


class RiskEngine:
    """
    VaR calculation service.

    Usage:
        engine = RiskEngine(EngineConfig(random_seed=42))
        result = engine.calculate_var(request, positions, returns)
    """

    def __init__(self, config: EngineConfig | None = None, slow_threshold_ms: float = 5000.0):
        self.config = config or EngineConfig()
        self._perf_logger = get_performance_logger(__name__, slow_threshold_ms=slow_threshold_ms)

    def calculate_var(
        self,
        request: VaRRequest,
        positions: Sequence[Position],
        returns: ReturnSeries,
        *,
        rng: np.random.Generator | None = None,
        timeout_seconds: float | None = None,
    ) -> VaRResult:
        """
        Calculate VaR with full decomposition.

        Args:
            request: Validated calculation request
            positions: Portfolio positions as of the request date
            returns: Aligned daily returns covering every held instrument
            rng: Random generator for Monte Carlo; seeded from config if None
            timeout_seconds: Overrides the configured budget for the method

        Returns:
            VaRResult

        Raises:
            VaRValidationError: Invalid portfolio or market data
            NumericalInstabilityError: A numerical step failed
            CalculationTimeout: The time budget ran out
        """
        started = time.perf_counter()
        method = request.method
        log = get_context_logger(
            __name__,
            portfolio=request.portfolio_id,
            tenant=request.tenant_id,
            method=method.value,
        )

        active, history = self._validate(request, positions, returns)
        instruments = instruments_for(active)

        budget = timeout_seconds if timeout_seconds is not None else self.config.timeout_for(method)
        deadline = Deadline(budget)

        if rng is None:
            rng = np.random.default_rng(self.config.random_seed)
        snapshot_rng, backtest_rng = rng.spawn(2)

        log.debug(
            f"Calculating {request.confidence_level:g}% {request.time_horizon} VaR "
            f"for {len(active)} positions over {len(instruments)} instruments"
        )

        with self._perf_logger.measure("market_snapshot"):
            snapshot = build_snapshot(
                method, history, instruments, self.config, rng=snapshot_rng, deadline=deadline
            )
        deadline.check("market_snapshot")

        calculator = get_calculator(method)
        exposures = exposure_vector(active, snapshot.instruments)
        with self._perf_logger.measure("var_calculation"):
            base = calculator(
                exposures,
                snapshot,
                request.confidence_level,
                request.time_horizon,
                gross=gross_exposure(active, snapshot.instruments),
            )
        deadline.check("var_calculation")

        with self._perf_logger.measure("decomposition"):
            decomposition = decompose(
                active,
                snapshot,
                calculator,
                request.confidence_level,
                request.time_horizon,
                base.total_var,
                self.config,
                deadline=deadline,
            )
        deadline.check("decomposition")

        backtest = None
        if request.include_backtest:
            with self._perf_logger.measure("backtest"):
                backtest = backtest_var_model(
                    method,
                    exposures,
                    history.select(instruments),
                    request.confidence_level,
                    self.config,
                    rng=backtest_rng,
                    deadline=deadline,
                )
            deadline.check("backtest")
            if not backtest.is_model_accurate:
                log.warning(
                    f"Backtest flags model for recalibration: "
                    f"{backtest.number_of_exceptions}/{backtest.observations} exceptions"
                )

        elapsed_ms = (time.perf_counter() - started) * 1000
        result = VaRResult(
            portfolio_id=request.portfolio_id,
            tenant_id=request.tenant_id,
            as_of_date=request.as_of_date,
            method=method,
            confidence_level=request.confidence_level,
            time_horizon=request.time_horizon,
            total_var=base.total_var,
            diversified_var=base.total_var,
            undiversified_var=base.undiversified_var,
            diversification_benefit=base.diversification_benefit,
            component_var=decomposition.component_var,
            marginal_var=decomposition.marginal_var,
            incremental_var=decomposition.incremental_var,
            data_quality=self._data_quality(snapshot, history),
            assumptions=self._assumptions(method, snapshot),
            calculation_time_ms=elapsed_ms,
            backtesting_results=backtest,
            model_accuracy=(1.0 - backtest.exception_rate) if backtest else None,
        )

        log.info(
            f"VaR {result.total_var:,.2f} "
            f"(undiversified {result.undiversified_var:,.2f}) in {elapsed_ms:.1f}ms"
        )
        return result

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def _validate(
        self,
        request: VaRRequest,
        positions: Sequence[Position],
        returns: ReturnSeries,
    ) -> tuple[list[Position], ReturnSeries]:
        """Checks that must pass before any computation starts."""
        ids = [p.position_id for p in positions]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise VaRValidationError(f"Duplicate position ids: {', '.join(duplicates)}")

        excluded = set(request.exclude_positions)
        unknown = excluded - set(ids)
        if unknown:
            logger.debug(f"Ignoring unknown excluded positions: {sorted(unknown)}")
        active = [p for p in positions if p.position_id not in excluded]

        if not active:
            raise InvalidPortfolioValue(0.0, "portfolio has no positions")

        history = returns.up_to(request.as_of_date)
        instruments = instruments_for(active)
        missing = tuple(i for i in instruments if i not in history.instruments)
        if missing:
            raise IncompleteMarketData(
                f"No return history for instruments: {', '.join(missing)}", missing
            )

        needed = self.config.lookback_for(request.method)
        if history.n_days < needed:
            raise IncompleteMarketData(
                f"{request.method.value} needs {needed} days of history up to "
                f"{request.as_of_date}, only {history.n_days} available",
                instruments,
            )
        if request.include_backtest and history.n_days < required_history(self.config):
            raise IncompleteMarketData(
                f"Backtest needs {required_history(self.config)} days of history, "
                f"only {history.n_days} available",
                instruments,
            )

        portfolio_value(exposure_vector(active, instruments))
        return active, history

    # =========================================================================
    # RESULT METADATA
    # =========================================================================

    def _data_quality(self, snapshot: MarketSnapshot, history: ReturnSeries) -> DataQuality:
        n, m = snapshot.returns.shape
        window = set(snapshot.dates)
        filled = sum(
            1
            for i in snapshot.instruments
            for d in history.filled_dates.get(i, ())
            if d in window
        )
        return DataQuality(
            observations=n,
            lookback_days=self.config.lookback_for(snapshot.method),
            instruments=m,
            filled_points=filled,
            completeness_pct=100.0 * (1.0 - filled / (n * m)),
        )

    def _assumptions(self, method: VaRMethod, snapshot: MarketSnapshot) -> ModelAssumptions:
        lookback = snapshot.n_observations
        if method == VaRMethod.PARAMETRIC:
            return ModelAssumptions(
                distribution="NORMAL",
                correlation_model="HISTORICAL_COVARIANCE",
                volatility_model="EQUAL_WEIGHTED_HISTORICAL",
                lookback_period=lookback,
            )
        if method == VaRMethod.HISTORICAL_SIMULATION:
            return ModelAssumptions(
                distribution="EMPIRICAL",
                correlation_model="IMPLICIT_HISTORICAL",
                volatility_model="HISTORICAL",
                lookback_period=lookback,
            )
        return ModelAssumptions(
            distribution="MULTIVARIATE_NORMAL",
            correlation_model="CHOLESKY_HISTORICAL_COVARIANCE",
            volatility_model="EQUAL_WEIGHTED_HISTORICAL",
            lookback_period=lookback,
            simulations=self.config.monte_carlo_simulations,
            random_seed=self.config.random_seed,
        )


def calculate_var(
    request: VaRRequest,
    positions: Sequence[Position],
    returns: ReturnSeries,
    config: EngineConfig | None = None,
    rng: np.random.Generator | None = None,
) -> VaRResult:
    """Run one calculation with a throwaway engine."""
    return RiskEngine(config).calculate_var(request, positions, returns, rng=rng)
