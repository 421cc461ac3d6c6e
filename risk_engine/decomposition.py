"""
Risk Decomposition
==================

Breaks total VaR down by group and by position:

- Component VaR: stand-alone VaR of each group (asset class by default).
  Group VaRs are not forced to add up to the total.
- Marginal VaR: derivative of total VaR with respect to the position's
  portfolio weight. ``contribution = w_i x marginal`` is the Euler
  allocation, so contributions add up to total VaR.
- Incremental VaR: ``VaR(with) - VaR(without)``, reported as-is.

All sub-portfolio evaluations are independent and run on a thread pool
against the same market snapshot.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from risk_engine.config import EngineConfig
from risk_engine.methods import (
    MarketSnapshot,
    VaRCalculator,
    exposure_vector,
    portfolio_value,
    var_gradient,
)
from risk_engine.models import ComponentVaR, IncrementalVaR, MarginalVaR, Position
from risk_engine.parallel import Deadline, parallel_map

logger = logging.getLogger(__name__)


UNCLASSIFIED = "UNCLASSIFIED"


@dataclass(frozen=True)
class Decomposition:
    """Component, marginal and incremental breakdowns of one portfolio."""
    component_var: tuple[ComponentVaR, ...]
    marginal_var: tuple[MarginalVaR, ...]
    incremental_var: tuple[IncrementalVaR, ...]

    @property
    def total_contribution(self) -> float:
        """Sum of marginal contributions (approximately total VaR)."""
        return sum(m.contribution for m in self.marginal_var)


def group_positions(
    positions: Sequence[Position],
    grouping: str = "asset_class",
) -> dict[str, list[Position]]:
    """Partition positions by an attribute, in first-seen order."""
    groups: dict[str, list[Position]] = {}
    for position in positions:
        key = getattr(position, grouping) or UNCLASSIFIED
        groups.setdefault(str(key), []).append(position)
    return groups


def decompose(
    positions: Sequence[Position],
    snapshot: MarketSnapshot,
    calculator: VaRCalculator,
    confidence_level: float,
    time_horizon: str,
    total_var: float,
    config: EngineConfig,
    deadline: Deadline | None = None,
) -> Decomposition:
    """
    Compute component, marginal and incremental VaR.

    Args:
        positions: Portfolio positions (already filtered)
        snapshot: Market inputs shared with the base calculation
        calculator: Methodology used for every sub-portfolio
        confidence_level: Confidence in percent
        time_horizon: Horizon key
        total_var: VaR of the full portfolio from the base calculation
        config: Engine configuration (grouping, workers)
        deadline: Request deadline

    Returns:
        Decomposition with one entry per group and per position
    """
    instruments = snapshot.instruments
    exposures = exposure_vector(positions, instruments)
    total_value = portfolio_value(exposures)
    index = {instrument: i for i, instrument in enumerate(instruments)}

    def without(position: Position) -> np.ndarray:
        reduced = exposures.copy()
        reduced[index[position.security_id]] -= position.market_value
        return reduced

    groups = group_positions(positions, config.component_grouping)
    group_exposures = [exposure_vector(members, instruments) for members in groups.values()]

    tasks: list[np.ndarray] = [without(p) for p in positions]
    tasks.extend(group_exposures)

    def evaluate(vector: np.ndarray) -> float:
        if not np.any(vector):
            return 0.0
        return calculator(
            vector, snapshot, confidence_level, time_horizon, check_value=False
        ).total_var

    logger.debug(
        f"Decomposition: {len(positions)} positions, {len(groups)} groups, "
        f"{len(tasks)} sub-portfolio evaluations"
    )
    values = parallel_map(
        evaluate,
        tasks,
        max_workers=config.max_workers,
        deadline=deadline,
        stage="decomposition",
    )

    n = len(positions)
    var_without = values[:n]
    group_vars = values[len(values) - len(group_exposures):]

    incremental = tuple(
        IncrementalVaR(
            position_id=p.position_id,
            security_id=p.security_id,
            symbol=p.symbol,
            incremental_var=total_var - var_without[i],
            var_without=var_without[i],
            var_with=total_var,
        )
        for i, p in enumerate(positions)
    )

    gradient = var_gradient(snapshot.method, exposures, snapshot, confidence_level, time_horizon)
    marginal = []
    for p in positions:
        weight = p.market_value / total_value
        marginal_var = total_value * float(gradient[index[p.security_id]])
        contribution = weight * marginal_var
        marginal.append(MarginalVaR(
            position_id=p.position_id,
            security_id=p.security_id,
            symbol=p.symbol,
            marginal_var=marginal_var,
            contribution=contribution,
            percent_contribution=_percent(contribution, total_var),
        ))

    components = tuple(
        ComponentVaR(
            group_key=key,
            var_amount=group_var,
            percent_of_total=_percent(group_var, total_var),
            market_value=float(sum(p.market_value for p in members)),
            position_count=len(members),
            correlation=group_correlation(group_exp, exposures, snapshot.covariance),
        )
        for (key, members), group_exp, group_var in zip(groups.items(), group_exposures, group_vars)
    )

    return Decomposition(
        component_var=components,
        marginal_var=tuple(marginal),
        incremental_var=incremental,
    )


def group_correlation(
    group_exposures: np.ndarray,
    portfolio_exposures: np.ndarray,
    covariance: np.ndarray,
) -> float:
    """
    Correlation between a group's P&L and the whole portfolio's P&L.

    Derived from the covariance matrix of the request; 0.0 when either side
    has no variance.
    """
    cross = float(group_exposures @ covariance @ portfolio_exposures)
    group_var = float(group_exposures @ covariance @ group_exposures)
    total_var = float(portfolio_exposures @ covariance @ portfolio_exposures)
    if group_var <= 0 or total_var <= 0:
        return 0.0
    return max(-1.0, min(1.0, cross / math.sqrt(group_var * total_var)))


def _percent(part: float, whole: float) -> float:
    return part / whole * 100.0 if whole > 0 else 0.0
