"""
Test Fixtures Package
=====================

Contains utilities for generating synthetic market data for risk engine tests.
"""

from tests.fixtures.test_data_generator import (
    business_days,
    generate_correlated_returns,
    exact_moment_returns,
    generate_price_frame,
    scattered_exceptions,
    clustered_exceptions,
)

__all__ = [
    "business_days",
    "generate_correlated_returns",
    "exact_moment_returns",
    "generate_price_frame",
    "scattered_exceptions",
    "clustered_exceptions",
]
