"""
Time-weighted statistics over irregularly spaced samples.

Each sample holds its value until the next sample of the same channel, so a
series becomes a list of piecewise-constant intervals weighted by their
duration in seconds. Quantiles, threshold fractions and means are computed
over those intervals, never over raw sample points.
"""

import math

from bisect import bisect_left
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

import numpy as np

from snorecard.constants import WEIGHTED_MEDIAN, WEIGHTED_P95
from snorecard.models.events import SignalSample


@dataclass(frozen=True)
class WeightedInterval:
    """Value held over [start, end) in Unix seconds."""

    start: float
    end: float
    value: float

    @property
    def seconds(self) -> float:
        return max(0.0, self.end - self.start)


@dataclass(frozen=True)
class WeightedSummary:
    """Min / weighted median / weighted P95 / max of one channel."""

    min: float
    median: float
    p95: float
    max: float


def build_intervals(
    samples: Sequence[SignalSample],
    slices: Iterable[tuple[float, float]],
    min_segment_seconds: float = 1,
) -> list[WeightedInterval]:
    """
    Build piecewise-constant intervals clamped to slice boundaries.

    For every slice [t0, t1) the samples starting inside it are taken in time
    order; each holds until the next one or until t1. A hold shorter than
    ``min_segment_seconds`` becomes a zero-length interval, which still counts
    for min/max but carries no weight. NaN and infinite values are skipped.

    Args:
        samples: Channel samples (any order)
        slices: (start, end) pairs in Unix seconds
        min_segment_seconds: Noise floor for interval durations

    Returns:
        Intervals in slice order
    """
    if not samples:
        return []
    ordered = sorted(samples, key=lambda s: s.time)
    epochs = [s.epoch for s in ordered]

    out: list[WeightedInterval] = []
    for t0, t1 in slices:
        if t1 <= t0:
            continue
        lo, hi = bisect_left(epochs, t0), bisect_left(epochs, t1)
        inside = [(epochs[i], ordered[i].value) for i in range(lo, hi)]
        for i, (t, value) in enumerate(inside):
            if not math.isfinite(value):
                continue
            next_t = inside[i + 1][0] if i + 1 < len(inside) else t1
            end = min(next_t, t1)
            if end - t < min_segment_seconds:
                out.append(WeightedInterval(t, t, value))
            else:
                out.append(WeightedInterval(t, end, value))
    return out


def weighted_quantile(
    values: Sequence[float], weights: Sequence[float], q: float
) -> float | None:
    """
    Weighted quantile over cumulative weight.

    Values are sorted and the target ``q * total`` is located on their
    cumulative weight. A target inside a value's span returns that value;
    a target exactly on the boundary between two spans interpolates
    halfway between them. q = 0 gives the smallest value and q = 1 the
    largest. Zero and negative weights are ignored.

    Args:
        values: Sample values
        weights: Matching weights
        q: Quantile in [0, 1]

    Returns:
        The quantile, or None when no positive weight exists
    """
    v = np.asarray(values, dtype=np.float64)
    w = np.asarray(weights, dtype=np.float64)
    keep = (w > 0) & np.isfinite(v)
    v, w = v[keep], w[keep]
    if v.size == 0:
        return None

    q = min(max(q, 0.0), 1.0)
    order = np.argsort(v, kind="stable")
    v, w = v[order], w[order]
    cumulative = np.cumsum(w)
    total = cumulative[-1]
    target = q * total
    eps = 1e-9 * total
    i = min(int(np.searchsorted(cumulative, target - eps, side="left")), v.size - 1)
    on_boundary = abs(cumulative[i] - target) <= eps
    if on_boundary and i + 1 < v.size and q > 0.0:
        return float((v[i] + v[i + 1]) / 2.0)
    return float(v[i])


def interval_quantile(intervals: Sequence[WeightedInterval], q: float) -> float | None:
    return weighted_quantile(
        [it.value for it in intervals], [it.seconds for it in intervals], q
    )


def interval_min(intervals: Sequence[WeightedInterval]) -> float | None:
    return min((it.value for it in intervals), default=None)


def interval_max(intervals: Sequence[WeightedInterval]) -> float | None:
    return max((it.value for it in intervals), default=None)


def total_seconds(intervals: Iterable[WeightedInterval]) -> float:
    return sum(it.seconds for it in intervals)


def fraction_over(intervals: Sequence[WeightedInterval], threshold: float) -> float | None:
    """
    Fraction of weighted time with value strictly above ``threshold``.

    Returns:
        A value in [0, 1], or None when the intervals carry no time
    """
    total = total_seconds(intervals)
    if total <= 0:
        return None
    over = sum(it.seconds for it in intervals if it.value > threshold)
    return over / total


def time_weighted_mean(intervals: Sequence[WeightedInterval]) -> float | None:
    total = total_seconds(intervals)
    if total <= 0:
        return None
    return sum(it.value * it.seconds for it in intervals) / total


def summarize(intervals: Sequence[WeightedInterval]) -> WeightedSummary | None:
    """Min / median / P95 / max, or None when the intervals carry no time."""
    median = interval_quantile(intervals, WEIGHTED_MEDIAN)
    p95 = interval_quantile(intervals, WEIGHTED_P95)
    if median is None or p95 is None:
        return None
    return WeightedSummary(
        min=interval_min(intervals),  # type: ignore[arg-type]
        median=median,
        p95=p95,
        max=interval_max(intervals),  # type: ignore[arg-type]
    )


def summarize_values(values: Sequence[float], weights: Sequence[float]) -> WeightedSummary | None:
    """Summary of weighted point values (e.g. per-breath metrics)."""
    median = weighted_quantile(values, weights, WEIGHTED_MEDIAN)
    p95 = weighted_quantile(values, weights, WEIGHTED_P95)
    if median is None or p95 is None:
        return None
    finite = [v for v, w in zip(values, weights) if w > 0 and math.isfinite(v)]
    return WeightedSummary(min=min(finite), median=median, p95=p95, max=max(finite))
