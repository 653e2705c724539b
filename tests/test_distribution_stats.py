"""Tests for Monte Carlo summary statistics."""

from __future__ import annotations

import math

import pytest

from ockham.calc import compute_distribution_stats


class TestComputeDistributionStats:
    """Population variance and nearest-rank percentiles."""

    def test_ten_values(self) -> None:
        stats = compute_distribution_stats([float(v) for v in range(10, 0, -1)])

        assert stats.min == 1.0
        assert stats.max == 10.0
        assert stats.mean == pytest.approx(5.5)
        assert stats.median == 6.0
        assert stats.p10 == 2.0
        assert stats.p50 == 6.0
        assert stats.p90 == 10.0
        assert stats.variance == pytest.approx(8.25)
        assert stats.std_dev == pytest.approx(math.sqrt(8.25))

    def test_sample_is_sorted_and_complete(self) -> None:
        stats = compute_distribution_stats([3.0, 1.0, 2.0])

        assert stats.distribution == [1.0, 2.0, 3.0]

    def test_single_value(self) -> None:
        stats = compute_distribution_stats([4.2])

        assert stats.mean == stats.median == stats.p10 == stats.p90 == 4.2
        assert stats.variance == 0.0

    def test_mean_clamped_to_range(self) -> None:
        values = [0.1] * 1000

        stats = compute_distribution_stats(values)

        assert stats.min <= stats.mean <= stats.max

    def test_empty_sample_rejected(self) -> None:
        with pytest.raises(ValueError):
            compute_distribution_stats([])

    def test_hundred_values_percentiles(self) -> None:
        stats = compute_distribution_stats([float(v) for v in range(100)])

        assert stats.p10 == 10.0
        assert stats.median == 50.0
        assert stats.p90 == 90.0
