#!/usr/bin/env python3
"""
Portfolio Risk Engine - Command Line Entry Point
================================================

Runs one VaR calculation from files:

1. Loads configuration (``risk_engine`` and ``logging`` sections)
2. Reads positions and daily returns (or prices) from CSV
3. Aligns the return history and runs the engine
4. Prints the result as JSON

Example:
    python main.py --positions positions.csv --returns returns.csv \\
        --method MONTE_CARLO --confidence 99 --horizon 1W --backtest
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import date
from pathlib import Path
from typing import Any

import pandas as pd

from risk_engine.config import EngineConfig, load_config
from risk_engine.engine import RiskEngine
from risk_engine.exceptions import RiskEngineError
from risk_engine.logging_config import LoggingConfig, configure_logging
from risk_engine.market_data import align_returns, returns_from_prices
from risk_engine.models import Position, VaRRequest
from risk_engine.statistics import SUPPORTED_HORIZONS

logger = logging.getLogger(__name__)


POSITION_COLUMNS = ("position_id", "security_id", "symbol", "market_value")


def load_positions(path: str | Path) -> list[Position]:
    """Read positions from CSV (one row per position)."""
    frame = pd.read_csv(path, dtype={"position_id": str, "security_id": str, "symbol": str})
    missing = [c for c in POSITION_COLUMNS if c not in frame.columns]
    if missing:
        raise ValueError(f"Positions file {path} is missing columns: {', '.join(missing)}")

    positions = []
    for row in frame.to_dict(orient="records"):
        sector = row.get("sector")
        asset_class = row.get("asset_class")
        positions.append(Position(
            position_id=row["position_id"],
            security_id=row["security_id"],
            symbol=row["symbol"],
            market_value=float(row["market_value"]),
            asset_class=asset_class if isinstance(asset_class, str) else "OTHER",
            sector=sector if isinstance(sector, str) else None,
        ))
    return positions


def load_history(path: str | Path, prices: bool = False, fill_method: str = "ffill"):
    """Read a date-indexed return (or price) table and align it."""
    frame = pd.read_csv(path, index_col=0, parse_dates=True)
    if prices:
        frame = returns_from_prices(frame)
    return align_returns(frame, fill_method=fill_method)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Calculate portfolio Value-at-Risk")
    parser.add_argument("--config", default="config.yaml",
                        help="YAML configuration file (optional)")
    parser.add_argument("--positions", required=True, help="Positions CSV")
    parser.add_argument("--returns", required=True, help="Daily returns CSV (date index)")
    parser.add_argument("--prices", action="store_true",
                        help="Treat --returns as a price table")
    parser.add_argument("--fill-method", choices=("ffill", "drop"), default="ffill")
    parser.add_argument("--method", default="PARAMETRIC",
                        help="PARAMETRIC, HISTORICAL_SIMULATION or MONTE_CARLO")
    parser.add_argument("--confidence", type=float, default=95.0)
    parser.add_argument("--horizon", default="1D", help=", ".join(SUPPORTED_HORIZONS))
    parser.add_argument("--portfolio-id", default="portfolio")
    parser.add_argument("--tenant-id", default="default")
    parser.add_argument("--as-of", type=date.fromisoformat, default=None,
                        help="As-of date (YYYY-MM-DD), defaults to the last return date")
    parser.add_argument("--exclude", nargs="*", default=(), help="Position ids to exclude")
    parser.add_argument("--backtest", action="store_true", help="Include backtesting")
    parser.add_argument("--seed", type=int, default=None, help="Monte Carlo random seed")
    parser.add_argument("--timeout", type=float, default=None, help="Time budget in seconds")
    parser.add_argument("--debug", action="store_true", help="Debug logging for all engine modules")
    return parser


def _load_settings(path: str) -> dict[str, Any]:
    if not Path(path).exists():
        return {}
    return load_config(path)


def run(argv: list[str] | None = None) -> dict[str, Any]:
    """Parse arguments, run the calculation and return the result dict."""
    args = build_parser().parse_args(argv)

    settings = _load_settings(args.config)
    logging_config = configure_logging(LoggingConfig.from_dict(settings.get("logging")))
    if args.debug:
        logging_config.set_all_debug()

    engine_settings = dict(settings.get("risk_engine") or {})
    if args.seed is not None:
        engine_settings["random_seed"] = args.seed
    config = EngineConfig.from_dict(engine_settings)

    positions = load_positions(args.positions)
    returns = load_history(args.returns, prices=args.prices, fill_method=args.fill_method)

    request = VaRRequest(
        portfolio_id=args.portfolio_id,
        tenant_id=args.tenant_id,
        as_of_date=args.as_of or returns.dates[-1],
        method=args.method,
        confidence_level=args.confidence,
        time_horizon=args.horizon,
        include_backtest=args.backtest,
        exclude_positions=tuple(args.exclude),
    )

    engine = RiskEngine(config, slow_threshold_ms=logging_config.slow_operation_threshold_ms)
    result = engine.calculate_var(
        request, positions, returns, timeout_seconds=args.timeout
    )
    return result.to_dict()


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    try:
        result = run(argv)
    except (RiskEngineError, ValueError, FileNotFoundError) as e:
        logger.error(f"VaR calculation failed: {e}")
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
