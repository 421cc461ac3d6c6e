"""
Tests for VaR Backtesting
=========================

Kupiec POF test, Christoffersen test, the backtester state machine and
rolling backtests over a return history.
"""

import logging
import math

import numpy as np
import pytest

from risk_engine.backtest import (
    VaRBacktester,
    backtest_var_model,
    christoffersen_test,
    kupiec_test,
    required_history,
    rolling_var_estimates,
    transition_counts,
)
from risk_engine.config import EngineConfig
from risk_engine.exceptions import IncompleteMarketData
from risk_engine.models import BacktestStatus, VaRMethod
from tests.fixtures import (
    business_days,
    clustered_exceptions,
    generate_correlated_returns,
    scattered_exceptions,
)


class TestKupiec:
    """Tests for the Kupiec proportion of failures test."""

    @pytest.mark.parametrize("exceptions,rate", [(12, 0.05), (13, 0.05), (25, 0.10)])
    def test_exceptions_near_expected_pass(self, exceptions, rate):
        """Exception counts near the expected rate are accepted."""
        result = kupiec_test(exceptions, 250, rate)

        assert result.test_statistic == pytest.approx(0.0, abs=0.05)
        assert result.critical_value == pytest.approx(3.841, abs=1e-3)
        assert not result.reject_null
        assert result.status == BacktestStatus.PASSED

    def test_exact_expected_count_has_zero_statistic(self):
        """Hitting the expected count exactly gives LR of zero."""
        result = kupiec_test(25, 250, 0.10)
        assert result.test_statistic == pytest.approx(0.0, abs=1e-12)
        assert result.p_value == pytest.approx(1.0)

    def test_zero_exceptions_rejected(self):
        """No exceptions at all is too conservative."""
        result = kupiec_test(0, 250, 0.05)

        assert result.test_statistic == pytest.approx(-2 * 250 * math.log(0.95))
        assert result.test_statistic == pytest.approx(25.65, abs=0.01)
        assert result.reject_null
        assert result.status == BacktestStatus.FAILED

    def test_all_exceptions_rejected(self):
        """Exceptions on every day fail the test."""
        result = kupiec_test(250, 250, 0.05)

        assert math.isfinite(result.test_statistic)
        assert result.test_statistic == pytest.approx(-2 * 250 * math.log(0.05))
        assert result.reject_null

    def test_double_expected_rate_rejected(self):
        """Twice the expected exceptions fails the test."""
        # 25 hits where 12.5 are expected
        result = kupiec_test(25, 250, 0.05)
        assert result.test_statistic == pytest.approx(10.33, abs=0.01)
        assert result.reject_null

    def test_p_value_consistent_with_decision(self):
        """Rejection agrees with the p-value."""
        result = kupiec_test(20, 250, 0.05)
        assert (result.p_value < 0.05) == result.reject_null

    @pytest.mark.parametrize("args", [(5, 0, 0.05), (-1, 250, 0.05), (300, 250, 0.05), (5, 250, 0.0)])
    def test_invalid_inputs(self, args):
        """Impossible counts and rates are rejected."""
        with pytest.raises(ValueError):
            kupiec_test(*args)


class TestChristoffersen:
    """Tests for the Christoffersen independence / conditional coverage test."""

    def test_transition_counts(self):
        """Markov transition counts of the exception indicator."""
        counts = transition_counts([0, 1, 1, 0, 0, 1])
        assert counts == {"n00": 1, "n01": 2, "n10": 1, "n11": 1}

    def test_scattered_exceptions_pass(self):
        """Spread-out exceptions pass the independence test."""
        result = christoffersen_test(scattered_exceptions(250, 13), 0.05)

        assert result.transitions["n11"] == 0
        assert result.critical_value == pytest.approx(5.991, abs=1e-3)
        assert result.degrees_of_freedom == 2
        assert not result.reject_null
        assert result.status == BacktestStatus.PASSED

    def test_clustered_exceptions_rejected(self):
        """Clustered exceptions fail the independence test."""
        # Right number of exceptions, all on consecutive days
        indicators = clustered_exceptions(250, 13)
        result = christoffersen_test(indicators, 0.05)

        assert not kupiec_test(13, 250, 0.05).reject_null
        assert result.transitions["n11"] == 12
        assert result.independence_statistic > 20
        assert result.reject_null
        assert result.status == BacktestStatus.FAILED

    def test_statistic_is_coverage_plus_independence(self):
        """The reported statistic is conditional coverage."""
        indicators = scattered_exceptions(250, 20)
        result = christoffersen_test(indicators, 0.05)
        coverage = kupiec_test(20, 250, 0.05)

        assert result.test_statistic == pytest.approx(
            coverage.test_statistic + result.independence_statistic
        )

    def test_no_exceptions_finite(self):
        """A series without exceptions gives finite statistics."""
        result = christoffersen_test(np.zeros(250, dtype=int), 0.05)
        assert result.independence_statistic == 0.0
        assert math.isfinite(result.test_statistic)

    def test_too_short(self):
        """At least two observations are needed."""
        with pytest.raises(ValueError):
            christoffersen_test([1], 0.05)


class TestVaRBacktester:
    """Tests for the backtester and its state machine."""

    @pytest.fixture
    def backtester(self):
        return VaRBacktester(confidence_level=95.0, significance_level=0.05, min_observations=30)

    @staticmethod
    def series_from(indicators):
        var = np.full(indicators.size, 10_000.0)
        pnl = np.where(indicators == 1, -15_000.0, 2_000.0)
        return pnl, var, business_days(indicators.size)

    def test_initial_status_not_run(self, backtester):
        """Both tests start in NOT_RUN."""
        assert backtester.status == {
            "kupiec": BacktestStatus.NOT_RUN,
            "christoffersen": BacktestStatus.NOT_RUN,
        }

    def test_accurate_model(self, backtester):
        """A well calibrated series passes both tests."""
        pnl, var, dates = self.series_from(scattered_exceptions(250, 12))

        result = backtester.run(pnl, var, dates)

        assert result.observations == 250
        assert result.number_of_exceptions == 12
        assert result.exception_rate == pytest.approx(12 / 250)
        assert result.expected_exception_rate == pytest.approx(0.05)
        assert result.is_model_accurate
        assert result.test_period == (dates[0], dates[-1])
        assert len(result.exception_dates) == 12
        assert backtester.status["kupiec"] == BacktestStatus.PASSED
        assert backtester.status["christoffersen"] == BacktestStatus.PASSED

    def test_failed_backtest_is_a_result(self, backtester, caplog):
        """A failing model is returned and logged, not raised."""
        pnl, var, dates = self.series_from(clustered_exceptions(250, 40))

        with caplog.at_level(logging.WARNING, logger="risk_engine.backtest"):
            result = backtester.run(pnl, var, dates)

        assert not result.is_model_accurate
        assert backtester.status["kupiec"] == BacktestStatus.FAILED
        assert backtester.status["christoffersen"] == BacktestStatus.FAILED
        assert "VaR backtest failed" in caplog.text

    def test_loss_equal_to_var_is_not_an_exception(self, backtester):
        """Only losses beyond VaR count as exceptions."""
        var = np.full(40, 10_000.0)
        pnl = -var
        result = backtester.run(pnl, var, business_days(40))
        assert result.number_of_exceptions == 0

    def test_too_few_observations(self, backtester):
        """Short backtests are rejected as incomplete data."""
        pnl, var, dates = self.series_from(scattered_exceptions(20, 1))
        with pytest.raises(IncompleteMarketData):
            backtester.run(pnl, var, dates)

    def test_mismatched_lengths(self, backtester):
        """P&L and VaR series must line up."""
        with pytest.raises(ValueError):
            backtester.run(np.zeros(40), np.ones(39), business_days(40))


class TestRollingBacktest:
    """Tests for backtests rebuilt from the return history."""

    @pytest.fixture
    def config(self):
        return EngineConfig(
            backtest_days=60,
            backtest_estimation_window=100,
            monte_carlo_simulations=10_000,
            random_seed=5,
            max_workers=2,
        )

    @pytest.fixture
    def history(self):
        return generate_correlated_returns(n_days=200, instruments=("A", "B"), seed=17)

    @pytest.mark.parametrize("method", list(VaRMethod))
    def test_uses_last_backtest_days(self, method, history, config):
        """The backtest covers the most recent configured days."""
        exposures = np.array([600_000.0, 400_000.0])

        result = backtest_var_model(method, exposures, history, 99.0, config, rng=np.random.default_rng(2))

        assert result.observations == 60
        assert result.test_period == (history.dates[-60], history.dates[-1])
        assert result.expected_exception_rate == pytest.approx(0.01)
        assert set(result.exception_dates) <= set(history.dates[-60:])

    def test_exceptions_match_rolling_estimates(self, history, config):
        """Exceptions are counted against the rolling estimates."""
        exposures = np.array([600_000.0, 400_000.0])
        dates, realised, estimates = rolling_var_estimates(
            VaRMethod.PARAMETRIC, exposures, history, 95.0, config
        )
        result = backtest_var_model(VaRMethod.PARAMETRIC, exposures, history, 95.0, config)

        np.testing.assert_allclose(realised, history.values[-60:] @ exposures)
        assert np.all(estimates > 0)
        hits = tuple(d for d, pnl, var in zip(dates, realised, estimates) if pnl < -var)
        assert result.exception_dates == hits

    def test_short_history_uses_available_days(self, config):
        """Shorter histories test the days that are available."""
        history = generate_correlated_returns(n_days=140, instruments=("A", "B"))
        result = backtest_var_model(
            VaRMethod.HISTORICAL_SIMULATION, np.array([1.0, 1.0]), history, 95.0, config
        )
        assert result.observations == 40

    def test_insufficient_history(self, config):
        """Histories shorter than the window plus minimum observations are rejected."""
        history = generate_correlated_returns(n_days=required_history(config) - 1, instruments=("A", "B"))
        with pytest.raises(IncompleteMarketData):
            backtest_var_model(VaRMethod.PARAMETRIC, np.array([1.0, 1.0]), history, 95.0, config)
