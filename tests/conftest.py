"""
Pytest Configuration
====================

Shared fixtures for testing.
"""

import numpy as np
import pytest

from risk_engine.config import EngineConfig
from risk_engine.models import Position, VaRMethod, VaRRequest
from tests.fixtures import generate_correlated_returns


@pytest.fixture
def test_config():
    """Small, seeded engine configuration."""
    return EngineConfig(
        parametric_lookback_days=252,
        historical_lookback_days=252,
        monte_carlo_lookback_days=252,
        monte_carlo_simulations=10_000,
        random_seed=1234,
        max_workers=2,
        backtest_days=60,
        backtest_estimation_window=120,
    )


@pytest.fixture
def returns():
    """Three correlated instruments, 300 business days."""
    corr = np.array([
        [1.0, 0.5, 0.2],
        [0.5, 1.0, 0.3],
        [0.2, 0.3, 1.0],
    ])
    return generate_correlated_returns(
        n_days=300,
        volatilities=[0.01, 0.015, 0.02],
        correlation_matrix=corr,
        instruments=("AAPL", "MSFT", "TLT"),
        seed=42,
    )


@pytest.fixture
def positions():
    """Two equities and one bond position."""
    return [
        Position("P1", "AAPL", "AAPL", 400_000.0, asset_class="EQUITY", sector="TECH"),
        Position("P2", "MSFT", "MSFT", 350_000.0, asset_class="EQUITY", sector="TECH"),
        Position("P3", "TLT", "TLT", 250_000.0, asset_class="FIXED_INCOME", sector="RATES"),
    ]


@pytest.fixture
def make_request(returns):
    """Factory for requests dated on the last return date."""
    def _make(method=VaRMethod.PARAMETRIC, confidence_level=95.0, time_horizon="1D", **kwargs):
        return VaRRequest(
            portfolio_id=kwargs.pop("portfolio_id", "PF-1"),
            tenant_id=kwargs.pop("tenant_id", "T-1"),
            as_of_date=kwargs.pop("as_of_date", returns.dates[-1]),
            method=method,
            confidence_level=confidence_level,
            time_horizon=time_horizon,
            **kwargs,
        )
    return _make
