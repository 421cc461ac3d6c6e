"""
Risk Engine Exceptions
======================

Error taxonomy for VaR calculations.

- Validation errors are raised before any computation starts.
- Numerical errors carry the failing step and diagnostic context.
- Timeouts never come with a partial result.

A failed backtest is NOT an error: it is reported on the result with
``is_model_accurate = False``.
"""

from __future__ import annotations

from typing import Any


class RiskEngineError(Exception):
    """Base exception for all risk engine errors."""
    pass


class VaRValidationError(RiskEngineError, ValueError):
    """Request, portfolio or market data failed validation.

    Inherits from ValueError so callers that only expect ValueError on bad
    input keep working.
    """
    pass


class UnsupportedConfidenceLevel(VaRValidationError):
    """Confidence level has no entry in the z-score table."""

    def __init__(self, confidence_level: Any, supported: tuple[float, ...] = ()):
        self.confidence_level = confidence_level
        self.supported = supported
        super().__init__(
            f"Unsupported confidence level: {confidence_level!r} "
            f"(supported: {', '.join(f'{c:g}' for c in supported)})"
        )


class UnsupportedHorizon(VaRValidationError):
    """Time horizon has no entry in the trading-day table."""

    def __init__(self, horizon: Any, supported: tuple[str, ...] = ()):
        self.horizon = horizon
        self.supported = supported
        super().__init__(
            f"Unsupported time horizon: {horizon!r} "
            f"(supported: {', '.join(supported)})"
        )


class InvalidPortfolioValue(VaRValidationError):
    """Portfolio total market value is zero or not finite."""

    def __init__(self, portfolio_value: float, detail: str = ""):
        self.portfolio_value = portfolio_value
        message = f"Invalid portfolio value: {portfolio_value!r}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class IncompleteMarketData(VaRValidationError):
    """Return history is missing, misaligned or too short."""

    def __init__(self, message: str, instruments: tuple[str, ...] = ()):
        self.instruments = instruments
        super().__init__(message)


class NumericalInstabilityError(RiskEngineError):
    """A numerical step produced an unusable result.

    Attributes:
        step: Name of the computation step that failed
        context: Diagnostic details (instruments, eigenvalues, ...)
    """

    def __init__(self, step: str, message: str, context: dict[str, Any] | None = None):
        self.step = step
        self.context = context or {}
        detail = f"{step}: {message}"
        if self.context:
            detail += " | " + ", ".join(f"{k}={v}" for k, v in self.context.items())
        super().__init__(detail)


class CalculationTimeout(RiskEngineError):
    """The request exceeded its time budget."""

    def __init__(self, budget_seconds: float, elapsed_seconds: float, stage: str):
        self.budget_seconds = budget_seconds
        self.elapsed_seconds = elapsed_seconds
        self.stage = stage
        super().__init__(
            f"VaR calculation exceeded {budget_seconds:.2f}s budget "
            f"during '{stage}' (elapsed {elapsed_seconds:.2f}s)"
        )
