"""
VaR Backtesting Module
======================

Validates a VaR model against realised outcomes.

Features:
- Exception tracking (days where the realised loss exceeded VaR)
- Kupiec POF (unconditional coverage) test, chi-square with 1 df
- Christoffersen test on the exception sequence: independence plus
  coverage, chi-square with 2 df
- Rolling one-day VaR estimates rebuilt from the return history

A failed test is a valid result that flags the model for recalibration;
it is never raised as an error.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Sequence

import numpy as np
from scipy.special import xlogy

from risk_engine.config import EngineConfig
from risk_engine.exceptions import IncompleteMarketData
from risk_engine.methods import (
    MarketSnapshot,
    get_calculator,
    simulate_scenarios,
)
from risk_engine.models import (
    BacktestResult,
    BacktestStatus,
    ChristoffersenTestResult,
    KupiecTestResult,
    ReturnSeries,
    VaRMethod,
)
from risk_engine.parallel import Deadline, parallel_map
from risk_engine.statistics import (
    TimeHorizon,
    chi_square_cdf,
    chi_square_critical_value,
    cholesky_factor,
    covariance_matrix,
)

logger = logging.getLogger(__name__)


KUPIEC = "kupiec"
CHRISTOFFERSEN = "christoffersen"


def _binomial_log_likelihood(exceptions: float, observations: float, rate: float) -> float:
    return float(xlogy(exceptions, rate) + xlogy(observations - exceptions, 1.0 - rate))


def kupiec_test(
    exceptions: int,
    observations: int,
    expected_rate: float,
    significance_level: float = 0.05,
) -> KupiecTestResult:
    """
    Kupiec Proportion of Failures test.

    ``LR = -2 (ln L0 - ln L1)`` where L0 uses the expected exception rate
    and L1 the observed one. Rejection means the model has too many or too
    few exceptions.
    """
    if observations <= 0:
        raise ValueError(f"observations must be positive, got {observations}")
    if not 0 <= exceptions <= observations:
        raise ValueError(f"exceptions must be in [0, {observations}], got {exceptions}")
    if not 0 < expected_rate < 1:
        raise ValueError(f"expected_rate must be in (0, 1), got {expected_rate}")

    observed_rate = exceptions / observations
    log_l0 = _binomial_log_likelihood(exceptions, observations, expected_rate)
    log_l1 = _binomial_log_likelihood(exceptions, observations, observed_rate)
    lr_stat = max(-2.0 * (log_l0 - log_l1), 0.0)

    critical_value = chi_square_critical_value(significance_level, 1)
    reject = lr_stat > critical_value

    return KupiecTestResult(
        test_statistic=lr_stat,
        critical_value=critical_value,
        p_value=1.0 - chi_square_cdf(lr_stat, 1),
        reject_null=reject,
        observations=observations,
        exceptions=exceptions,
        expected_rate=expected_rate,
        degrees_of_freedom=1,
        status=BacktestStatus.FAILED if reject else BacktestStatus.PASSED,
    )


def transition_counts(indicators: Sequence[int] | np.ndarray) -> dict[str, int]:
    """First-order transition counts of a 0/1 exception sequence."""
    seq = np.asarray(indicators, dtype=int)
    prev, nxt = seq[:-1], seq[1:]
    return {
        "n00": int(np.sum((prev == 0) & (nxt == 0))),
        "n01": int(np.sum((prev == 0) & (nxt == 1))),
        "n10": int(np.sum((prev == 1) & (nxt == 0))),
        "n11": int(np.sum((prev == 1) & (nxt == 1))),
    }


def christoffersen_test(
    indicators: Sequence[int] | np.ndarray,
    expected_rate: float,
    significance_level: float = 0.05,
) -> ChristoffersenTestResult:
    """
    Christoffersen test on the exception sequence.

    The independence statistic compares a first-order Markov chain of
    exceptions with an i.i.d. Bernoulli sequence. Adding the Kupiec
    statistic gives the conditional coverage statistic, compared with
    chi-square at 2 degrees of freedom (5.991 at 5%).
    """
    seq = np.asarray(indicators, dtype=int)
    if seq.size < 2:
        raise ValueError("Christoffersen test needs at least 2 observations")

    counts = transition_counts(seq)
    n00, n01, n10, n11 = counts["n00"], counts["n01"], counts["n10"], counts["n11"]

    pi01 = n01 / (n00 + n01) if (n00 + n01) > 0 else 0.0
    pi11 = n11 / (n10 + n11) if (n10 + n11) > 0 else 0.0
    pi = (n01 + n11) / (seq.size - 1)

    log_null = float(xlogy(n00 + n10, 1.0 - pi) + xlogy(n01 + n11, pi))
    log_markov = float(
        xlogy(n00, 1.0 - pi01) + xlogy(n01, pi01)
        + xlogy(n10, 1.0 - pi11) + xlogy(n11, pi11)
    )
    lr_ind = max(-2.0 * (log_null - log_markov), 0.0)

    coverage = kupiec_test(int(seq.sum()), int(seq.size), expected_rate, significance_level)
    lr_cc = coverage.test_statistic + lr_ind

    critical_value = chi_square_critical_value(significance_level, 2)
    reject = lr_cc > critical_value

    return ChristoffersenTestResult(
        test_statistic=lr_cc,
        critical_value=critical_value,
        p_value=1.0 - chi_square_cdf(lr_cc, 2),
        reject_null=reject,
        independence_statistic=lr_ind,
        independence_p_value=1.0 - chi_square_cdf(lr_ind, 1),
        transitions=counts,
        degrees_of_freedom=2,
        status=BacktestStatus.FAILED if reject else BacktestStatus.PASSED,
    )


class VaRBacktester:
    """
    VaR model backtesting framework.

    Compares realised P&L with the VaR predicted for the same day and runs
    the Kupiec and Christoffersen tests. Each test moves through
    NOT_RUN -> RUNNING -> PASSED | FAILED.
    """

    def __init__(
        self,
        confidence_level: float = 95.0,
        significance_level: float = 0.05,
        min_observations: int = 30,
    ):
        """
        Initialize backtester.

        Args:
            confidence_level: VaR confidence level in percent
            significance_level: Statistical test significance level
            min_observations: Minimum observations for a meaningful test
        """
        self.confidence_level = confidence_level
        self.significance_level = significance_level
        self.min_observations = min_observations
        self.status: dict[str, BacktestStatus] = {
            KUPIEC: BacktestStatus.NOT_RUN,
            CHRISTOFFERSEN: BacktestStatus.NOT_RUN,
        }

    @property
    def expected_rate(self) -> float:
        return 1.0 - self.confidence_level / 100.0

    def run(
        self,
        realized_pnl: Sequence[float] | np.ndarray,
        var_estimates: Sequence[float] | np.ndarray,
        dates: Sequence[date],
    ) -> BacktestResult:
        """
        Run the backtest.

        Args:
            realized_pnl: Realised P&L per day (negative for a loss)
            var_estimates: VaR predicted for each day (positive)
            dates: Observation dates, ascending

        Returns:
            BacktestResult; ``is_model_accurate`` is False when either test
            rejects.
        """
        pnl = np.asarray(realized_pnl, dtype=float)
        var = np.asarray(var_estimates, dtype=float)

        if pnl.shape != var.shape or pnl.ndim != 1 or len(dates) != pnl.size:
            raise ValueError("P&L, VaR estimates and dates must have the same length")
        if pnl.size < self.min_observations:
            raise IncompleteMarketData(
                f"Need at least {self.min_observations} observations for backtest, "
                f"got {pnl.size}"
            )

        # Exception: realised loss exceeds VaR
        indicators = (pnl < -var).astype(int)
        exceptions = int(indicators.sum())
        n = int(pnl.size)

        self.status[KUPIEC] = BacktestStatus.RUNNING
        kupiec = kupiec_test(exceptions, n, self.expected_rate, self.significance_level)
        self.status[KUPIEC] = kupiec.status

        self.status[CHRISTOFFERSEN] = BacktestStatus.RUNNING
        christoffersen = christoffersen_test(indicators, self.expected_rate, self.significance_level)
        self.status[CHRISTOFFERSEN] = christoffersen.status

        is_accurate = not kupiec.reject_null and not christoffersen.reject_null
        if not is_accurate:
            logger.warning(
                f"VaR backtest failed: {exceptions} exceptions in {n} days "
                f"(expected {n * self.expected_rate:.1f}), "
                f"kupiec LR={kupiec.test_statistic:.3f}, "
                f"christoffersen LR={christoffersen.test_statistic:.3f}"
            )

        return BacktestResult(
            test_period=(dates[0], dates[-1]),
            observations=n,
            number_of_exceptions=exceptions,
            exception_rate=exceptions / n,
            expected_exception_rate=self.expected_rate,
            kupiec_test=kupiec,
            christoffersen_test=christoffersen,
            is_model_accurate=is_accurate,
            exception_dates=tuple(d for d, hit in zip(dates, indicators) if hit),
        )


def required_history(config: EngineConfig) -> int:
    """Fewest return rows that still allow a backtest."""
    return config.backtest_estimation_window + config.min_backtest_observations


def rolling_var_estimates(
    method: VaRMethod,
    exposures: np.ndarray,
    returns: ReturnSeries,
    confidence_level: float,
    config: EngineConfig,
    rng: np.random.Generator | None = None,
    deadline: Deadline | None = None,
) -> tuple[tuple[date, ...], np.ndarray, np.ndarray]:
    """
    One-day VaR estimates over the backtest period.

    Each day of the last ``backtest_days`` rows is predicted from the
    ``backtest_estimation_window`` rows before it with the same method.

    Returns:
        (dates, realised P&L, VaR estimates)
    """
    window = config.backtest_estimation_window
    if returns.n_days < required_history(config):
        raise IncompleteMarketData(
            f"Backtest needs {required_history(config)} days of history, "
            f"only {returns.n_days} available",
            returns.instruments,
        )

    n_test = min(config.backtest_days, returns.n_days - window)
    start = returns.n_days - n_test
    values = returns.values
    calculator = get_calculator(method)

    if method == VaRMethod.MONTE_CARLO:
        if rng is None:
            rng = np.random.default_rng(config.random_seed)
        generators = rng.spawn(n_test)
    else:
        generators = [None] * n_test

    def estimate(job: tuple[int, np.random.Generator | None]) -> float:
        t, generator = job
        history = values[t - window:t]
        cov = covariance_matrix(history, returns.instruments, config.psd_tolerance)
        scenarios = None
        if generator is not None:
            scenarios = simulate_scenarios(
                cholesky_factor(cov, returns.instruments),
                config.monte_carlo_simulations,
                generator,
                n_batches=config.monte_carlo_batches,
                max_workers=1,
            )
        snapshot = MarketSnapshot(
            method=method,
            instruments=returns.instruments,
            dates=returns.dates[t - window:t],
            returns=history,
            covariance=cov,
            scenarios=scenarios,
        )
        return calculator(
            exposures, snapshot, confidence_level, TimeHorizon.ONE_DAY.value, check_value=False
        ).total_var

    estimates = parallel_map(
        estimate,
        zip(range(start, returns.n_days), generators),
        max_workers=config.max_workers,
        deadline=deadline,
        stage="backtest",
    )

    realized = values[start:] @ exposures
    return returns.dates[start:], realized, np.asarray(estimates)


def backtest_var_model(
    method: VaRMethod,
    exposures: np.ndarray,
    returns: ReturnSeries,
    confidence_level: float,
    config: EngineConfig,
    rng: np.random.Generator | None = None,
    deadline: Deadline | None = None,
) -> BacktestResult:
    """Rebuild rolling VaR estimates from history and backtest them."""
    dates, realized, estimates = rolling_var_estimates(
        method, exposures, returns, confidence_level, config, rng, deadline
    )
    backtester = VaRBacktester(
        confidence_level=confidence_level,
        significance_level=config.backtest_significance,
        min_observations=config.min_backtest_observations,
    )
    return backtester.run(realized, estimates, dates)
