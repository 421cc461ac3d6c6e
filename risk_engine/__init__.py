"""
Portfolio Risk Engine
=====================

Value-at-Risk by parametric, historical simulation and Monte Carlo methods,
with component / marginal / incremental decomposition and Kupiec and
Christoffersen backtesting.
"""

from risk_engine.config import EngineConfig, ConfigValidationError, load_engine_config
from risk_engine.engine import RiskEngine, calculate_var
from risk_engine.exceptions import (
    RiskEngineError,
    VaRValidationError,
    UnsupportedConfidenceLevel,
    UnsupportedHorizon,
    InvalidPortfolioValue,
    IncompleteMarketData,
    NumericalInstabilityError,
    CalculationTimeout,
)
from risk_engine.models import (
    VaRMethod,
    BacktestStatus,
    Position,
    ReturnSeries,
    VaRRequest,
    VaRResult,
    ComponentVaR,
    MarginalVaR,
    IncrementalVaR,
    BacktestResult,
    KupiecTestResult,
    ChristoffersenTestResult,
    DataQuality,
    ModelAssumptions,
)
from risk_engine.backtest import VaRBacktester, kupiec_test, christoffersen_test
from risk_engine.market_data import align_returns, returns_from_prices, InMemoryMarketDataAdapter
from risk_engine.statistics import TimeHorizon

__all__ = [
    # Engine
    "RiskEngine",
    "calculate_var",
    "EngineConfig",
    "ConfigValidationError",
    "load_engine_config",
    # Errors
    "RiskEngineError",
    "VaRValidationError",
    "UnsupportedConfidenceLevel",
    "UnsupportedHorizon",
    "InvalidPortfolioValue",
    "IncompleteMarketData",
    "NumericalInstabilityError",
    "CalculationTimeout",
    # Model
    "VaRMethod",
    "BacktestStatus",
    "TimeHorizon",
    "Position",
    "ReturnSeries",
    "VaRRequest",
    "VaRResult",
    "ComponentVaR",
    "MarginalVaR",
    "IncrementalVaR",
    "BacktestResult",
    "KupiecTestResult",
    "ChristoffersenTestResult",
    "DataQuality",
    "ModelAssumptions",
    # Backtesting
    "VaRBacktester",
    "kupiec_test",
    "christoffersen_test",
    # Market data
    "align_returns",
    "returns_from_prices",
    "InMemoryMarketDataAdapter",
]
