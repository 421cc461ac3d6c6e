"""
Logging Configuration Module
============================

Centralised logging for the risk engine.

Features:
- Consistent format and per-module log levels
- Stage timing with slow-operation warnings
- Context injection (portfolio, tenant, method) into messages
"""

from __future__ import annotations

import functools
import logging
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable


# Module-specific log level defaults
MODULE_LOG_LEVELS = {
    "risk_engine.engine": logging.INFO,
    "risk_engine.methods": logging.INFO,
    "risk_engine.decomposition": logging.INFO,
    "risk_engine.backtest": logging.INFO,
    "risk_engine.statistics": logging.WARNING,
    "risk_engine.market_data": logging.WARNING,
    "risk_engine.config": logging.INFO,
}


@dataclass
class LoggingConfig:
    """
    Centralized logging configuration.

    Provides consistent verbosity across the risk engine.
    """
    root_level: int = logging.INFO
    format_string: str = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"
    module_levels: dict[str, int] = field(default_factory=lambda: MODULE_LOG_LEVELS.copy())

    # Performance threshold (log slow operations)
    slow_operation_threshold_ms: float = 1000.0

    def apply(self) -> None:
        """Apply logging configuration to all handlers."""
        root_logger = logging.getLogger()
        root_logger.setLevel(self.root_level)

        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        handler = logging.StreamHandler()
        handler.setLevel(self.root_level)
        formatter = logging.Formatter(self.format_string, self.date_format)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

        for module_name, level in self.module_levels.items():
            logging.getLogger(module_name).setLevel(level)

    def set_module_level(self, module_name: str, level: int) -> None:
        """Set log level for a specific module."""
        self.module_levels[module_name] = level
        logging.getLogger(module_name).setLevel(level)

    def set_all_debug(self) -> None:
        """Set all loggers to DEBUG (for debugging)."""
        for module_name in self.module_levels:
            self.set_module_level(module_name, logging.DEBUG)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        """Build from the ``logging`` section of ``config.yaml``."""
        data = data or {}
        config = cls()
        if "level" in data:
            config.root_level = _parse_level(data["level"])
        if "format" in data:
            config.format_string = data["format"]
        if "date_format" in data:
            config.date_format = data["date_format"]
        if "slow_operation_threshold_ms" in data:
            config.slow_operation_threshold_ms = float(data["slow_operation_threshold_ms"])
        for module_name, level in (data.get("modules") or {}).items():
            config.module_levels[module_name] = _parse_level(level)
        return config


def _parse_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return value


class PerformanceLogger:
    """
    Logs performance metrics for operations.

    Used to time the stages of a VaR calculation.
    """

    def __init__(
        self,
        logger: logging.Logger,
        slow_threshold_ms: float = 1000.0,
    ):
        self.logger = logger
        self.slow_threshold_ms = slow_threshold_ms
        self._stats: dict[str, list[float]] = defaultdict(list)
        self._lock = threading.Lock()

    @contextmanager
    def measure(self, operation_name: str, log_always: bool = False):
        """
        Context manager to measure operation duration.

        Example:
            with perf_logger.measure("decomposition"):
                decomposition = decompose(...)
        """
        start = time.perf_counter()
        try:
            yield
        finally:
            duration_ms = (time.perf_counter() - start) * 1000

            with self._lock:
                self._stats[operation_name].append(duration_ms)

            if duration_ms > self.slow_threshold_ms:
                self.logger.warning(
                    f"Slow operation: {operation_name} took {duration_ms:.2f}ms "
                    f"(threshold: {self.slow_threshold_ms}ms)"
                )
            elif log_always:
                self.logger.debug(f"{operation_name} completed in {duration_ms:.2f}ms")

    def get_stats(self, operation_name: str) -> dict[str, float]:
        """Get performance statistics for an operation."""
        with self._lock:
            times = list(self._stats.get(operation_name, []))

        if not times:
            return {}

        import statistics

        return {
            "count": len(times),
            "mean_ms": statistics.mean(times),
            "median_ms": statistics.median(times),
            "min_ms": min(times),
            "max_ms": max(times),
        }


def timed(
    logger: logging.Logger | None = None,
    threshold_ms: float = 1000.0,
    operation_name: str | None = None,
):
    """
    Decorator to time function execution.

    Example:
        @timed(threshold_ms=500.0)
        def simulate_scenarios():
            ...
    """
    def decorator(func: Callable) -> Callable:
        log = logger or logging.getLogger(func.__module__)
        name = operation_name or func.__name__

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                duration_ms = (time.perf_counter() - start) * 1000

                if duration_ms > threshold_ms:
                    log.warning(f"Slow operation: {name} took {duration_ms:.2f}ms")
                else:
                    log.debug(f"{name} completed in {duration_ms:.2f}ms")

        return wrapper
    return decorator


class ContextLogger:
    """
    Logger with automatic context injection.

    Adds consistent context (portfolio, tenant, method) to all messages.
    """

    def __init__(self, logger: logging.Logger, context: dict[str, Any] | None = None):
        self.logger = logger
        self.context = context or {}

    def _format_message(self, message: str) -> str:
        if not self.context:
            return message

        context_str = " | ".join(f"{k}={v}" for k, v in self.context.items())
        return f"[{context_str}] {message}"

    def debug(self, message: str, *args, **kwargs):
        self.logger.debug(self._format_message(message), *args, **kwargs)

    def info(self, message: str, *args, **kwargs):
        self.logger.info(self._format_message(message), *args, **kwargs)

    def warning(self, message: str, *args, **kwargs):
        self.logger.warning(self._format_message(message), *args, **kwargs)

    def error(self, message: str, *args, **kwargs):
        self.logger.error(self._format_message(message), *args, **kwargs)


def configure_logging(config: LoggingConfig | None = None) -> LoggingConfig:
    """
    Configure logging for the risk engine.

    Args:
        config: Optional custom configuration

    Returns:
        Applied configuration
    """
    if config is None:
        config = LoggingConfig()

    config.apply()
    return config


def get_performance_logger(
    name: str,
    slow_threshold_ms: float = 1000.0,
) -> PerformanceLogger:
    """Get a performance logger for a module."""
    return PerformanceLogger(logging.getLogger(name), slow_threshold_ms=slow_threshold_ms)


def get_context_logger(name: str, **context) -> ContextLogger:
    """Get a context logger for a module."""
    return ContextLogger(logging.getLogger(name), context)
