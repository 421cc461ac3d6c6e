"""
Tests for the Statistics Kernel
===============================

Lookup tables, percentile index, covariance / Cholesky and chi-square helpers.
"""

import numpy as np
import pytest

from risk_engine.exceptions import (
    IncompleteMarketData,
    NumericalInstabilityError,
    UnsupportedConfidenceLevel,
    UnsupportedHorizon,
)
from risk_engine.statistics import (
    TimeHorizon,
    chi_square_cdf,
    chi_square_critical_value,
    cholesky_factor,
    correlation_matrix,
    covariance_matrix,
    normalize_confidence_level,
    percentile_index,
    time_scaling_factor,
    z_score,
)


class TestLookupTables:
    """Tests for z-score and horizon tables."""

    @pytest.mark.parametrize("level,expected", [(95, 1.645), (99, 2.326), (99.9, 3.09)])
    def test_z_scores(self, level, expected):
        """Supported confidence levels map to the table z-scores."""
        assert z_score(level) == expected

    def test_unsupported_confidence_raises(self):
        """Levels outside the table are rejected, not interpolated."""
        with pytest.raises(UnsupportedConfidenceLevel) as exc_info:
            z_score(97)
        assert exc_info.value.confidence_level == 97
        assert 95.0 in exc_info.value.supported

    def test_unsupported_confidence_is_value_error(self):
        """Unsupported levels are also ValueErrors."""
        with pytest.raises(ValueError):
            normalize_confidence_level(90.0)

    def test_bool_is_not_a_confidence_level(self):
        """Booleans are not accepted as confidence levels."""
        with pytest.raises(UnsupportedConfidenceLevel):
            normalize_confidence_level(True)

    def test_float_noise_is_normalised(self):
        """Levels with binary float noise resolve to the table entry."""
        assert normalize_confidence_level(99.90000000001) == 99.9

    @pytest.mark.parametrize("horizon,days", [
        ("1D", 1), ("1W", 5), ("2W", 10), ("1M", 21), ("3M", 63), ("6M", 126), ("1Y", 252),
    ])
    def test_time_scaling_factors(self, horizon, days):
        """Horizons map to trading-day counts."""
        assert time_scaling_factor(horizon) == days

    def test_enum_horizon_accepted(self):
        """TimeHorizon members work in place of strings."""
        assert time_scaling_factor(TimeHorizon.ONE_MONTH) == 21

    def test_unsupported_horizon_raises(self):
        """Unknown horizons are rejected."""
        with pytest.raises(UnsupportedHorizon):
            time_scaling_factor("5D")


class TestPercentileIndex:
    """Tests for the empirical percentile index."""

    @pytest.mark.parametrize("level,n,expected", [
        (95, 250, 12),
        (95, 100, 5),
        (99, 500, 5),
        (99.9, 10_000, 10),
        (95, 10_000, 500),
    ])
    def test_floor_of_tail_fraction(self, level, n, expected):
        """Index is the floor of the tail fraction of the sample."""
        assert percentile_index(level, n) == expected

    def test_small_sample_clamped_to_zero(self):
        """Small samples clamp to the first element."""
        assert percentile_index(99.9, 100) == 0
        assert percentile_index(95, 1) == 0

    def test_empty_sample_raises(self):
        """An empty sample has no percentile."""
        with pytest.raises(IncompleteMarketData):
            percentile_index(95, 0)


class TestCovariance:
    """Tests for covariance, correlation and the Cholesky factor."""

    def test_matches_numpy_unbiased_estimate(self):
        """Covariance matches numpy's unbiased estimate."""
        rng = np.random.default_rng(3)
        data = rng.normal(0, 0.01, (100, 3))

        cov = covariance_matrix(data)

        np.testing.assert_allclose(cov, np.cov(data, rowvar=False, ddof=1))
        np.testing.assert_array_equal(cov, cov.T)

    def test_single_column(self):
        """One instrument gives a 1x1 covariance."""
        data = np.array([0.01, -0.02, 0.005, 0.0])
        cov = covariance_matrix(data)
        assert cov.shape == (1, 1)
        assert cov[0, 0] == pytest.approx(np.var(data, ddof=1))

    def test_too_few_observations(self):
        """Fewer than two observations cannot give a covariance."""
        with pytest.raises(IncompleteMarketData):
            covariance_matrix(np.array([[0.01, 0.02]]), ["A", "B"])

    def test_non_finite_returns_raise(self):
        """NaN or infinite returns are reported as numerical instability."""
        data = np.array([[0.01, np.inf], [0.02, 0.01], [0.0, 0.03]])
        with pytest.raises(NumericalInstabilityError) as exc_info:
            covariance_matrix(data, ["A", "B"])
        assert exc_info.value.step == "covariance_matrix"

    def test_correlation_zero_variance(self):
        """Zero-variance instruments get unit diagonal and zero correlation."""
        cov = np.array([[0.0004, 0.0], [0.0, 0.0]])
        corr = correlation_matrix(cov)
        np.testing.assert_array_equal(corr, np.eye(2))

    def test_cholesky_reconstructs_covariance(self):
        """The Cholesky factor reproduces the covariance."""
        cov = np.array([[0.0004, 0.00024], [0.00024, 0.0004]])
        factor = cholesky_factor(cov)
        np.testing.assert_allclose(factor @ factor.T, cov)

    def test_singular_covariance_uses_eigen_factor(self):
        """Singular matrices fall back to an eigen-decomposition factor."""
        # Perfectly correlated instruments
        cov = np.array([[1.0, 1.0], [1.0, 1.0]]) * 1e-4
        factor = cholesky_factor(cov)
        np.testing.assert_allclose(factor @ factor.T, cov, atol=1e-15)

    def test_indefinite_matrix_raises(self):
        """Materially negative eigenvalues are rejected."""
        cov = np.array([[1.0, 2.0], [2.0, 1.0]])
        with pytest.raises(NumericalInstabilityError) as exc_info:
            cholesky_factor(cov, ["A", "B"])
        assert exc_info.value.context["instruments"] == ["A", "B"]


class TestChiSquare:
    """Tests for chi-square helpers."""

    def test_critical_values(self):
        """Chi-square critical values at 5% for df 1 and 2."""
        assert chi_square_critical_value(0.05, 1) == pytest.approx(3.841, abs=1e-3)
        assert chi_square_critical_value(0.05, 2) == pytest.approx(5.991, abs=1e-3)

    def test_cdf_at_critical_value(self):
        """The CDF at the critical value is one minus the significance."""
        assert chi_square_cdf(3.841458820694124, 1) == pytest.approx(0.95, abs=1e-9)

    def test_cdf_far_tail_is_precise(self):
        """The CDF stays accurate far into the tail."""
        # A 3-digit series expansion cannot resolve this
        assert 1.0 - chi_square_cdf(25.0, 1) == pytest.approx(5.733e-7, rel=1e-3)

    def test_cdf_non_positive(self):
        """The CDF is zero for non-positive statistics."""
        assert chi_square_cdf(0.0, 1) == 0.0
        assert chi_square_cdf(-1.0, 2) == 0.0

    def test_invalid_significance(self):
        """Significance outside (0, 1) is rejected."""
        with pytest.raises(ValueError):
            chi_square_critical_value(1.5, 1)
