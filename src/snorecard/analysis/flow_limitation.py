"""
Flow-limitation estimation from the flow waveform.

Each breath's inspiration gets a flattening score in [0, 1]: the ratio of
mean to peak positive flow, mapped linearly from 0.55 (rounded inspiration)
to 0.85 (flat-topped). Breath scores are reduced to a per-minute median
series, smoothed with exponential moving averages and classified into
severity bands.
"""

import statistics

from collections import defaultdict
from collections.abc import Sequence
from dataclasses import replace
from datetime import datetime, timedelta

import numpy as np

from scipy.ndimage import uniform_filter1d

from snorecard.analysis.rolling import minute_index
from snorecard.constants import (
    MINUTES_PER_DAY,
    BreathSegmentationConstants,
    FlowLimitationConstants,
)
from snorecard.models.events import TimePoint, to_epoch, to_epoch_ms
from snorecard.models.session import Breath, WaveformChannel


def smooth_flow(samples: np.ndarray) -> np.ndarray:
    """3-point moving average with edge samples repeated."""
    return uniform_filter1d(
        np.asarray(samples, dtype=np.float64),
        size=BreathSegmentationConstants.SMOOTHING_WINDOW,
        mode="nearest",
    )


def _index_at(flow: WaveformChannel, epoch_ms: float) -> int:
    index = round((epoch_ms - flow.start_ms) * flow.sample_rate_hz / 1000.0)
    return int(min(max(index, 0), flow.sample_count - 1))


def score_breath(
    flow: WaveformChannel,
    breath: Breath,
    zero_eps: float = BreathSegmentationConstants.ZERO_EPS,
    smoothed: np.ndarray | None = None,
) -> float | None:
    """
    Score the inspiratory flattening of one breath.

    Args:
        flow: Flow waveform the breath was segmented from
        breath: Breath to score
        zero_eps: Flow at or below this is not counted as inspiration
        smoothed: Pre-computed ``smooth_flow(flow.samples)``

    Returns:
        Score in [0, 1], or None when the inspiration has fewer than 5 points
    """
    if flow.sample_count < 3:
        return None
    start_ms = to_epoch_ms(breath.start)
    i0 = _index_at(flow, start_ms)
    i1 = _index_at(flow, start_ms + breath.inspiratory_time * 1000.0)
    if i1 <= i0 + 2:
        return None

    if smoothed is None:
        smoothed = smooth_flow(flow.samples)
    window = smoothed[i0 : i1 + 1]
    positive = window[window > zero_eps]
    if positive.size < FlowLimitationConstants.MIN_INSPIRATORY_POINTS:
        return None
    peak = float(positive.max())
    if peak <= 0:
        return None

    ratio = min(max(float(positive.mean()) / peak, 0.0), 1.0)
    score = (ratio - FlowLimitationConstants.RATIO_FLOOR) / FlowLimitationConstants.RATIO_SPAN
    return min(max(score, 0.0), 1.0)


def score_breaths(flow: WaveformChannel, breaths: Sequence[Breath]) -> list[Breath]:
    """Return copies of ``breaths`` with ``flow_limitation`` filled in."""
    smoothed = smooth_flow(flow.samples)
    return [
        replace(breath, flow_limitation=score_breath(flow, breath, smoothed=smoothed))
        for breath in breaths
    ]


def minute_median_series(
    points: Sequence[TimePoint],
    day_start: datetime,
    minutes: int = MINUTES_PER_DAY,
) -> list[TimePoint]:
    """
    Reduce breath-resolution scores to one median per minute.

    Always returns ``minutes`` points starting at ``day_start``; minutes
    without a score carry None.
    """
    start_epoch = to_epoch(day_start)
    by_minute: dict[int, list[float]] = defaultdict(list)
    for point in points:
        if point.value is None:
            continue
        index = minute_index(to_epoch(point.time), start_epoch)
        if 0 <= index < minutes:
            by_minute[index].append(point.value)

    return [
        TimePoint(
            time=day_start + timedelta(minutes=i),
            value=statistics.median(by_minute[i]) if i in by_minute else None,
        )
        for i in range(minutes)
    ]


def ema_series(series: Sequence[TimePoint], window_minutes: int) -> list[TimePoint]:
    """
    Exponential moving average with alpha = 2 / (window + 1).

    Gaps stay None and do not update the running average.
    """
    alpha = 2.0 / (window_minutes + 1.0)
    ema: float | None = None
    out = []
    for point in series:
        if point.value is None:
            out.append(TimePoint(time=point.time, value=None))
            continue
        ema = point.value if ema is None else alpha * point.value + (1.0 - alpha) * ema
        out.append(TimePoint(time=point.time, value=ema))
    return out


def severity_band(value: float | None) -> int:
    """-1 missing, 0 below 0.1, 1 below 0.3, 2 otherwise."""
    if value is None:
        return FlowLimitationConstants.BAND_MISSING
    if value < FlowLimitationConstants.MEDIUM_THRESHOLD:
        return FlowLimitationConstants.BAND_LOW
    if value < FlowLimitationConstants.HIGH_THRESHOLD:
        return FlowLimitationConstants.BAND_MEDIUM
    return FlowLimitationConstants.BAND_HIGH


def severity_bands(series: Sequence[TimePoint]) -> list[int]:
    return [severity_band(point.value) for point in series]
