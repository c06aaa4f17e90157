"""
Unit tests for time-weighted statistics.

Tests interval construction against slice boundaries, weighted quantiles
and threshold fractions.
"""

import math

import pytest

from snorecard.analysis.weighted_stats import (
    WeightedInterval,
    build_intervals,
    fraction_over,
    interval_quantile,
    summarize,
    summarize_values,
    time_weighted_mean,
    weighted_quantile,
)
from snorecard.models.events import SignalType
from tests.helpers.synthetic_data import NIGHT_START, samples_every

T0 = NIGHT_START.timestamp()


class TestBuildIntervals:
    """Test piecewise-constant interval construction."""

    def test_holds_until_next_sample(self):
        samples = samples_every(NIGHT_START, [10.0, 20.0, 30.0], step_seconds=60)

        intervals = build_intervals(samples, [(T0, T0 + 300)])

        assert [(it.start - T0, it.end - T0, it.value) for it in intervals] == [
            (0, 60, 10.0),
            (60, 120, 20.0),
            (120, 300, 30.0),
        ]

    def test_clamped_to_slices(self):
        """Samples outside every slice are dropped; holds stop at the slice end."""
        samples = samples_every(NIGHT_START, [10.0, 20.0, 30.0, 40.0], step_seconds=60)

        intervals = build_intervals(samples, [(T0 + 60, T0 + 150)])

        assert [(it.start - T0, it.end - T0, it.value) for it in intervals] == [
            (60, 120, 20.0),
            (120, 150, 30.0),
        ]

    def test_short_hold_has_no_weight(self):
        samples = samples_every(NIGHT_START, [10.0, 99.0], step_seconds=0.5)

        intervals = build_intervals(samples, [(T0, T0 + 10)], min_segment_seconds=1)

        assert intervals[0].seconds == 0
        assert intervals[1].seconds == pytest.approx(9.5)

    def test_non_finite_values_are_skipped(self):
        samples = samples_every(NIGHT_START, [10.0, math.nan, 30.0], step_seconds=10)

        intervals = build_intervals(samples, [(T0, T0 + 30)])

        assert [it.value for it in intervals] == [10.0, 30.0]

    def test_empty_or_reversed_slices(self):
        samples = samples_every(NIGHT_START, [10.0])

        assert build_intervals([], [(T0, T0 + 10)]) == []
        assert build_intervals(samples, [(T0 + 10, T0)]) == []


class TestWeightedQuantile:
    """Test weighted quantiles over cumulative weight."""

    def test_equal_weights_median(self):
        assert weighted_quantile([1.0, 2.0, 3.0], [1, 1, 1], 0.5) == 2.0

    def test_extremes(self):
        values = [5.0, 1.0, 3.0]
        weights = [1, 2, 3]

        assert weighted_quantile(values, weights, 0.0) == 1.0
        assert weighted_quantile(values, weights, 1.0) == 5.0

    def test_long_hold_is_the_median(self):
        """A value held for most of the night is the median, not a blend."""
        assert weighted_quantile([8.0, 12.0], [3600, 9 * 3600], 0.5) == 12.0
        assert weighted_quantile([4.0, 10.0], [3600, 60], 0.5) == 4.0

    def test_target_inside_a_span(self):
        values = [1.0, 2.0, 3.0]
        weights = [2, 5, 3]

        assert weighted_quantile(values, weights, 0.1) == 1.0
        assert weighted_quantile(values, weights, 0.5) == 2.0
        assert weighted_quantile(values, weights, 0.95) == 3.0

    def test_boundary_between_spans_interpolates(self):
        assert weighted_quantile([8.0, 10.0], [1, 1], 0.5) == 9.0
        assert weighted_quantile([1.0, 2.0, 3.0], [1, 1, 2], 0.5) == 2.5

    def test_zero_weights_are_ignored(self):
        assert weighted_quantile([100.0, 2.0], [0, 5], 0.5) == 2.0
        assert weighted_quantile([1.0], [0], 0.5) is None
        assert weighted_quantile([], [], 0.5) is None

    def test_monotonic_in_q(self):
        values = [3.0, 7.5, 1.0, 9.0, 4.2, 6.6]
        weights = [10, 1, 4, 2, 8, 3]

        quantiles = [weighted_quantile(values, weights, q / 20) for q in range(21)]

        assert all(a <= b for a, b in zip(quantiles, quantiles[1:]))
        assert quantiles[0] == min(values)
        assert quantiles[-1] == max(values)


class TestThresholdAndSummary:
    """Test over-threshold fractions, means and summaries."""

    def _intervals(self):
        return [
            WeightedInterval(0, 30, 10.0),
            WeightedInterval(30, 60, 40.0),
            WeightedInterval(60, 60, 90.0),
        ]

    def test_fraction_over(self):
        assert fraction_over(self._intervals(), 24.0) == 0.5

    def test_fraction_over_is_zero_when_all_below(self):
        assert fraction_over(self._intervals(), 100.0) == 0.0

    def test_fraction_over_is_strict(self):
        assert fraction_over([WeightedInterval(0, 10, 24.0)], 24.0) == 0.0

    def test_fraction_without_time(self):
        assert fraction_over([WeightedInterval(5, 5, 50.0)], 24.0) is None

    def test_time_weighted_mean(self):
        assert time_weighted_mean(self._intervals()) == 25.0
        assert time_weighted_mean([]) is None

    def test_summary_keeps_unweighted_extremes(self):
        """Zero-length holds still count for min and max."""
        summary = summarize(self._intervals())

        assert summary.min == 10.0
        assert summary.max == 90.0
        assert summary.min <= summary.median <= summary.p95 <= summary.max

    def test_summary_of_nothing(self):
        assert summarize([]) is None
        assert interval_quantile([], 0.5) is None

    def test_summarize_values(self):
        summary = summarize_values([0.4, 0.5, 0.6], [4.0, 4.0, 4.0])

        assert summary.median == pytest.approx(0.5)
        assert summary.min == 0.4
        assert summary.max == 0.6

    def test_samples_signal_is_irrelevant(self):
        samples = samples_every(
            NIGHT_START, [8.0, 9.0], step_seconds=60, signal=SignalType.PRESSURE
        )

        intervals = build_intervals(samples, [(T0, T0 + 120)])

        assert interval_quantile(intervals, 0.5) == pytest.approx(8.5)
