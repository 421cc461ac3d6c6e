"""
Engine Configuration
====================

Typed configuration for the risk engine, loaded from ``config.yaml``.

Example::

    risk_engine:
      parametric_lookback_days: 252
      historical_lookback_days: 500
      monte_carlo_simulations: 10000
      random_seed: 42
      timeouts:
        MONTE_CARLO: 60.0
    logging:
      level: INFO
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from risk_engine.models import VaRMethod

logger = logging.getLogger(__name__)


MIN_MONTE_CARLO_SIMULATIONS = 10_000
GROUPING_KEYS = ("asset_class", "sector")

DEFAULT_TIMEOUTS: dict[VaRMethod, float] = {
    VaRMethod.PARAMETRIC: 5.0,
    VaRMethod.HISTORICAL_SIMULATION: 10.0,
    VaRMethod.MONTE_CARLO: 60.0,
}


class ConfigValidationError(ValueError):
    """Raised when the engine configuration is invalid.

    Carries every problem found, not just the first one.
    """

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("Invalid risk engine configuration: " + "; ".join(errors))


@dataclass(frozen=True)
class EngineConfig:
    """Risk engine settings. All values have production defaults."""
    # Lookback windows (trading days)
    parametric_lookback_days: int = 252
    historical_lookback_days: int = 500
    monte_carlo_lookback_days: int = 252

    # Monte Carlo
    monte_carlo_simulations: int = 10_000
    monte_carlo_batches: int = 8  # Fixed batch count keeps draws reproducible
    random_seed: int | None = None

    # Parallelism (None = CPU count)
    max_workers: int | None = None

    # Decomposition
    component_grouping: str = "asset_class"

    # Backtesting
    backtest_days: int = 250
    backtest_estimation_window: int = 250
    backtest_significance: float = 0.05
    min_backtest_observations: int = 30

    # Time budget per method, in seconds
    timeouts: dict[VaRMethod, float] = field(default_factory=lambda: dict(DEFAULT_TIMEOUTS))

    # Relative tolerance for negative covariance eigenvalues
    psd_tolerance: float = 1e-10

    def __post_init__(self) -> None:
        errors = self.validate()
        if errors:
            raise ConfigValidationError(errors)

    def validate(self) -> list[str]:
        """Return a list of validation problems (empty when valid)."""
        errors: list[str] = []

        for name in (
            "parametric_lookback_days",
            "historical_lookback_days",
            "monte_carlo_lookback_days",
            "backtest_days",
            "backtest_estimation_window",
        ):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 2:
                errors.append(f"{name} must be an integer >= 2, got {value!r}")

        if not isinstance(self.monte_carlo_simulations, int) or (
            self.monte_carlo_simulations < MIN_MONTE_CARLO_SIMULATIONS
        ):
            errors.append(
                f"monte_carlo_simulations must be >= {MIN_MONTE_CARLO_SIMULATIONS}, "
                f"got {self.monte_carlo_simulations!r}"
            )
        if not isinstance(self.monte_carlo_batches, int) or self.monte_carlo_batches < 1:
            errors.append(f"monte_carlo_batches must be >= 1, got {self.monte_carlo_batches!r}")
        if self.random_seed is not None and (
            not isinstance(self.random_seed, int) or self.random_seed < 0
        ):
            errors.append(f"random_seed must be a non-negative integer, got {self.random_seed!r}")
        if self.max_workers is not None and (
            not isinstance(self.max_workers, int) or self.max_workers < 1
        ):
            errors.append(f"max_workers must be >= 1, got {self.max_workers!r}")

        if self.component_grouping not in GROUPING_KEYS:
            errors.append(
                f"component_grouping must be one of {GROUPING_KEYS}, got {self.component_grouping!r}"
            )

        if not isinstance(self.backtest_significance, (int, float)) or not (
            0 < self.backtest_significance < 1
        ):
            errors.append(
                f"backtest_significance must be in (0, 1), got {self.backtest_significance!r}"
            )
        if not isinstance(self.min_backtest_observations, int) or self.min_backtest_observations < 2:
            errors.append(
                f"min_backtest_observations must be >= 2, got {self.min_backtest_observations!r}"
            )

        for method, seconds in self.timeouts.items():
            if not isinstance(method, VaRMethod):
                errors.append(f"timeouts key must be a VaR method, got {method!r}")
            if not isinstance(seconds, (int, float)) or seconds <= 0:
                errors.append(f"timeout for {method} must be positive, got {seconds!r}")

        if not isinstance(self.psd_tolerance, (int, float)) or self.psd_tolerance < 0:
            errors.append(f"psd_tolerance must be >= 0, got {self.psd_tolerance!r}")

        return errors

    def lookback_for(self, method: VaRMethod) -> int:
        """Lookback window used by a methodology."""
        if method == VaRMethod.PARAMETRIC:
            return self.parametric_lookback_days
        if method == VaRMethod.HISTORICAL_SIMULATION:
            return self.historical_lookback_days
        return self.monte_carlo_lookback_days

    def timeout_for(self, method: VaRMethod) -> float:
        return float(self.timeouts.get(method, DEFAULT_TIMEOUTS[method]))

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "EngineConfig":
        """Build from the ``risk_engine`` section of a config file."""
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigValidationError([f"Unknown setting: {name}" for name in unknown])

        if "timeouts" in data:
            timeouts = dict(DEFAULT_TIMEOUTS)
            errors = []
            for key, seconds in (data["timeouts"] or {}).items():
                try:
                    timeouts[VaRMethod.parse(key)] = seconds
                except ValueError as e:
                    errors.append(str(e))
            if errors:
                raise ConfigValidationError(errors)
            data["timeouts"] = timeouts

        return cls(**data)

    def to_dict(self) -> dict[str, Any]:
        result = {f.name: getattr(self, f.name) for f in fields(self)}
        result["timeouts"] = {m.value: s for m, s in self.timeouts.items()}
        return result


def load_config(config_path: str | Path = "config.yaml") -> dict[str, Any]:
    """Load the raw YAML configuration file."""
    config_file = Path(config_path)

    if not config_file.exists():
        logger.error(f"Config file not found: {config_file}")
        raise FileNotFoundError(f"Config file not found: {config_file}")

    with open(config_file, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ConfigValidationError([f"Top level of {config_file} must be a mapping"])

    logger.info(f"Loaded configuration from {config_file}")
    return config


def load_engine_config(config_path: str | Path = "config.yaml") -> EngineConfig:
    """Load and validate the ``risk_engine`` section of a config file."""
    return EngineConfig.from_dict(load_config(config_path).get("risk_engine"))
