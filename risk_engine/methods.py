"""
VaR Methodology Calculators
===========================

Three interchangeable methodologies behind one pure function signature:

- Parametric (variance-covariance)
- Historical simulation (empirical percentile, no distribution assumption)
- Monte Carlo (correlated normal draws via a Cholesky factor)

Every calculator maps ``(exposures, snapshot, confidence, horizon)`` to a
``MethodResult``. ``exposures`` is the dollar value held per instrument
(weights x portfolio value). The ``MarketSnapshot`` carries everything that
is computed once per request (aligned window, covariance, Monte Carlo
scenarios) so that the many sub-portfolio evaluations of the decomposition
reuse it instead of recomputing.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Protocol, Sequence

import numpy as np

from risk_engine.config import EngineConfig
from risk_engine.exceptions import (
    IncompleteMarketData,
    InvalidPortfolioValue,
    NumericalInstabilityError,
)
from risk_engine.logging_config import timed
from risk_engine.models import Position, ReturnSeries, VaRMethod
from risk_engine.parallel import Deadline, parallel_map
from risk_engine.statistics import (
    cholesky_factor,
    covariance_matrix,
    percentile_index,
    time_scaling_factor,
    z_score,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MethodResult:
    """Output shared by all methodologies."""
    total_var: float
    undiversified_var: float
    diversification_benefit: float


@dataclass(frozen=True, eq=False)
class MarketSnapshot:
    """Per-request market inputs, computed once and passed down."""
    method: VaRMethod
    instruments: tuple[str, ...]
    dates: tuple[date, ...]
    returns: np.ndarray  # N x M lookback window
    covariance: np.ndarray  # M x M
    scenarios: np.ndarray | None = None  # S x M simulated returns (Monte Carlo)

    @property
    def volatilities(self) -> np.ndarray:
        return np.sqrt(np.clip(np.diag(self.covariance), 0.0, None))

    @property
    def n_observations(self) -> int:
        return self.returns.shape[0]


class VaRCalculator(Protocol):
    """Signature every methodology implements."""

    def __call__(
        self,
        exposures: np.ndarray,
        snapshot: MarketSnapshot,
        confidence_level: float,
        time_horizon: str,
        *,
        check_value: bool = True,
        gross: GrossExposure | None = None,
    ) -> MethodResult:
        ...


# =============================================================================
# EXPOSURES
# =============================================================================


def instruments_for(positions: Iterable[Position]) -> tuple[str, ...]:
    """Distinct instruments held, in first-seen order."""
    seen: dict[str, None] = {}
    for position in positions:
        seen.setdefault(position.security_id, None)
    return tuple(seen)


def exposure_vector(
    positions: Iterable[Position],
    instruments: Sequence[str],
) -> np.ndarray:
    """Dollar exposure per instrument; positions on the same instrument add up."""
    index = {instrument: i for i, instrument in enumerate(instruments)}
    exposures = np.zeros(len(instruments))
    for position in positions:
        try:
            exposures[index[position.security_id]] += position.market_value
        except KeyError as e:
            raise IncompleteMarketData(
                f"No return history for {position.security_id!r} "
                f"(position {position.position_id})",
                (position.security_id,),
            ) from e
    return exposures


@dataclass(frozen=True, eq=False)
class GrossExposure:
    """Long and short position value per instrument, before netting."""
    long: np.ndarray
    short: np.ndarray

    @property
    def total(self) -> np.ndarray:
        return self.long + self.short

    @classmethod
    def from_exposures(cls, exposures: np.ndarray) -> "GrossExposure":
        return cls(long=np.clip(exposures, 0.0, None), short=np.clip(-exposures, 0.0, None))


def gross_exposure(
    positions: Iterable[Position],
    instruments: Sequence[str],
) -> GrossExposure:
    """Long and short legs per instrument; offsetting positions do not net."""
    positions = list(positions)
    longs = [p for p in positions if p.market_value > 0]
    shorts = [p for p in positions if p.market_value < 0]
    return GrossExposure(
        long=exposure_vector(longs, instruments),
        short=-exposure_vector(shorts, instruments),
    )


def portfolio_value(exposures: np.ndarray) -> float:
    """Total market value, rejecting zero or non-finite totals."""
    total = float(np.sum(exposures))
    if not math.isfinite(total) or abs(total) < 1e-9:
        raise InvalidPortfolioValue(total, "weights cannot be normalised")
    return total


def portfolio_weights(exposures: np.ndarray) -> np.ndarray:
    """Value-normalised weights."""
    return exposures / portfolio_value(exposures)


# =============================================================================
# SNAPSHOT
# =============================================================================


def build_snapshot(
    method: VaRMethod,
    returns: ReturnSeries,
    instruments: Sequence[str],
    config: EngineConfig,
    rng: np.random.Generator | None = None,
    deadline: Deadline | None = None,
    lookback_days: int | None = None,
) -> MarketSnapshot:
    """
    Prepare the market inputs for one request.

    Args:
        method: Methodology the snapshot is built for
        returns: Full aligned return history
        instruments: Instruments held by the portfolio
        config: Engine configuration (lookbacks, simulations)
        rng: Random generator for Monte Carlo; seeded from config if None
        deadline: Request deadline
        lookback_days: Override of the configured lookback window

    Raises:
        IncompleteMarketData: Missing instruments or insufficient history
    """
    lookback = lookback_days or config.lookback_for(method)
    if returns.n_days < lookback:
        raise IncompleteMarketData(
            f"{method.value} needs {lookback} days of history, "
            f"only {returns.n_days} available",
            tuple(instruments),
        )

    window = returns.select(instruments).tail(lookback)
    cov = covariance_matrix(window.values, window.instruments, config.psd_tolerance)

    scenarios = None
    if method == VaRMethod.MONTE_CARLO:
        if rng is None:
            rng = np.random.default_rng(config.random_seed)
        factor = cholesky_factor(cov, window.instruments)
        scenarios = simulate_scenarios(
            factor,
            config.monte_carlo_simulations,
            rng,
            n_batches=config.monte_carlo_batches,
            max_workers=config.max_workers,
            deadline=deadline,
        )

    return MarketSnapshot(
        method=method,
        instruments=window.instruments,
        dates=window.dates,
        returns=window.values,
        covariance=cov,
        scenarios=scenarios,
    )


@timed(threshold_ms=5000.0)
def simulate_scenarios(
    factor: np.ndarray,
    n_simulations: int,
    rng: np.random.Generator,
    n_batches: int = 8,
    max_workers: int | None = None,
    deadline: Deadline | None = None,
) -> np.ndarray:
    """
    Draw correlated one-day instrument returns.

    Simulations are split into ``n_batches`` fixed batches, each with its own
    child generator spawned from ``rng``. The output therefore depends only
    on the generator state and the batch count, never on thread scheduling.

    Returns:
        n_simulations x M matrix of simulated returns
    """
    n_batches = max(1, min(n_batches, n_simulations))
    base, extra = divmod(n_simulations, n_batches)
    sizes = [base + (1 if i < extra else 0) for i in range(n_batches)]
    generators = rng.spawn(n_batches)
    n_assets = factor.shape[0]

    def draw(batch: tuple[np.random.Generator, int]) -> np.ndarray:
        generator, size = batch
        shocks = generator.standard_normal((size, n_assets))
        return shocks @ factor.T

    batches = parallel_map(
        draw,
        zip(generators, sizes),
        max_workers=max_workers,
        deadline=deadline,
        stage="monte_carlo_simulation",
    )
    return np.vstack(batches)


# =============================================================================
# CALCULATORS
# =============================================================================


def parametric_var(
    exposures: np.ndarray,
    snapshot: MarketSnapshot,
    confidence_level: float,
    time_horizon: str,
    *,
    check_value: bool = True,
    gross: GrossExposure | None = None,
) -> MethodResult:
    """
    Variance-covariance VaR.

    ``VaR = V * sqrt(w' S w) * sqrt(days) * z``. Undiversified VaR assumes
    perfect correlation: ``sum(|position value| * sigma) * sqrt(days) * z``.
    """
    if check_value:
        portfolio_value(exposures)
    if gross is None:
        gross = GrossExposure.from_exposures(exposures)

    z = z_score(confidence_level)
    scale = math.sqrt(time_scaling_factor(time_horizon))

    total_var = math.sqrt(_portfolio_variance(exposures, snapshot)) * scale * z
    undiversified_var = float(gross.total @ snapshot.volatilities) * scale * z

    return _result(total_var, undiversified_var)


def historical_simulation_var(
    exposures: np.ndarray,
    snapshot: MarketSnapshot,
    confidence_level: float,
    time_horizon: str,
    *,
    check_value: bool = True,
    gross: GrossExposure | None = None,
) -> MethodResult:
    """
    Historical simulation VaR.

    Current exposures are applied to every historical day; the loss at the
    percentile index of the sorted P&L is scaled by ``sqrt(days)``.
    """
    if check_value:
        portfolio_value(exposures)
    return _empirical_var(snapshot.returns, exposures, confidence_level, time_horizon, gross)


def monte_carlo_var(
    exposures: np.ndarray,
    snapshot: MarketSnapshot,
    confidence_level: float,
    time_horizon: str,
    *,
    check_value: bool = True,
    gross: GrossExposure | None = None,
) -> MethodResult:
    """
    Monte Carlo VaR over the snapshot's simulated scenarios.

    Same percentile approach as historical simulation. All evaluations of
    one request share the same draws.
    """
    if check_value:
        portfolio_value(exposures)
    return _empirical_var(
        _scenarios(snapshot), exposures, confidence_level, time_horizon, gross
    )


def _scenarios(snapshot: MarketSnapshot) -> np.ndarray:
    if snapshot.scenarios is None:
        raise NumericalInstabilityError(
            "monte_carlo_var",
            "snapshot has no simulated scenarios",
            {"method": snapshot.method.value},
        )
    return snapshot.scenarios


def _portfolio_variance(exposures: np.ndarray, snapshot: MarketSnapshot) -> float:
    variance = float(exposures @ snapshot.covariance @ exposures)
    if variance < 0:
        tolerance = 1e-12 * float(np.abs(exposures) @ np.abs(snapshot.covariance) @ np.abs(exposures))
        if variance < -tolerance:
            raise NumericalInstabilityError(
                "parametric_var",
                "negative portfolio variance",
                {"variance": variance, "instruments": list(snapshot.instruments)},
            )
        variance = 0.0
    return variance


def _tail_scenario(scenario_returns: np.ndarray, exposures: np.ndarray, confidence_level: float) -> int:
    """Row of the scenario sitting at the VaR percentile of portfolio P&L."""
    k = percentile_index(confidence_level, scenario_returns.shape[0])
    pnl = scenario_returns @ exposures
    return int(np.argpartition(pnl, k)[k])


def _empirical_var(
    scenario_returns: np.ndarray,
    exposures: np.ndarray,
    confidence_level: float,
    time_horizon: str,
    gross: GrossExposure | None = None,
) -> MethodResult:
    if gross is None:
        gross = GrossExposure.from_exposures(exposures)
    k = percentile_index(confidence_level, scenario_returns.shape[0])
    scale = math.sqrt(time_scaling_factor(time_horizon))

    tail = _tail_scenario(scenario_returns, exposures, confidence_level)
    total_var = abs(float(scenario_returns[tail] @ exposures)) * scale

    # Stand-alone VaR of the long and short legs of each instrument, summed
    undiversified_var = 0.0
    for leg in (gross.long, -gross.short):
        leg_tail = np.partition(scenario_returns * leg, k, axis=0)[k]
        undiversified_var += float(np.sum(np.abs(leg_tail))) * scale

    return _result(total_var, undiversified_var)


def _result(total_var: float, undiversified_var: float) -> MethodResult:
    return MethodResult(
        total_var=total_var,
        undiversified_var=undiversified_var,
        diversification_benefit=undiversified_var - total_var,
    )


CALCULATORS: dict[VaRMethod, VaRCalculator] = {
    VaRMethod.PARAMETRIC: parametric_var,
    VaRMethod.HISTORICAL_SIMULATION: historical_simulation_var,
    VaRMethod.MONTE_CARLO: monte_carlo_var,
}


def get_calculator(method: VaRMethod | str) -> VaRCalculator:
    """Calculator registered for a methodology."""
    return CALCULATORS[VaRMethod.parse(method)]


# =============================================================================
# GRADIENTS
# =============================================================================


def var_gradient(
    method: VaRMethod | str,
    exposures: np.ndarray,
    snapshot: MarketSnapshot,
    confidence_level: float,
    time_horizon: str,
) -> np.ndarray:
    """
    Sensitivity of total VaR to each instrument's dollar exposure.

    VaR is homogeneous of degree one in the exposures, so
    ``exposures @ gradient`` equals total VaR (Euler). Parametric VaR is
    differentiated analytically: ``S e / sqrt(e' S e) * sqrt(days) * z``.
    For the percentile methods the derivative is the return vector of the
    scenario that sets the VaR, signed so that the P&L at that scenario
    maps to a positive loss.

    Returns:
        Array with one entry per snapshot instrument
    """
    method = VaRMethod.parse(method)
    scale = math.sqrt(time_scaling_factor(time_horizon))

    if method == VaRMethod.PARAMETRIC:
        sigma = math.sqrt(_portfolio_variance(exposures, snapshot))
        if sigma == 0.0:
            return np.zeros(len(snapshot.instruments))
        z = z_score(confidence_level)
        return snapshot.covariance @ exposures / sigma * scale * z

    if method == VaRMethod.HISTORICAL_SIMULATION:
        scenario_returns = snapshot.returns
    else:
        scenario_returns = _scenarios(snapshot)

    tail = _tail_scenario(scenario_returns, exposures, confidence_level)
    row = scenario_returns[tail]
    sign = -1.0 if float(row @ exposures) <= 0 else 1.0
    return sign * row * scale
