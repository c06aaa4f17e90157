"""
Breath segmentation for flow waveform analysis.

Breaths are found from zero crossings of the smoothed, baseline-corrected
flow signal:

* inspiration starts where flow crosses from <= 0 to > 0
* inspiration ends at the next crossing from >= 0 to < 0
* the breath ends where the next inspiration starts

A deadband around zero keeps sensor noise from producing crossings.
"""

import logging

from bisect import bisect_left
from collections.abc import Sequence

import numpy as np

from snorecard.analysis.flow_limitation import score_breaths, smooth_flow
from snorecard.constants import BreathSegmentationConstants as BSC
from snorecard.constants import SECONDS_PER_MINUTE
from snorecard.models.events import SignalSample, utc_from_epoch
from snorecard.models.session import Breath, WaveformChannel

logger = logging.getLogger(__name__)


def estimate_baseline(samples: np.ndarray) -> float:
    """Median of an evenly strided subsample of at most 5000 points."""
    if samples.size == 0:
        return 0.0
    stride = max(1, samples.size // BSC.BASELINE_SUBSAMPLE_TARGET)
    return float(np.median(samples[::stride]))


def deadband(deviation: np.ndarray, zero_eps: float = BSC.ZERO_EPS) -> float:
    """Noise band around zero inside which no crossing is detected."""
    if deviation.size == 0:
        return max(zero_eps, BSC.MIN_DEADBAND)
    noise = BSC.DEADBAND_MULTIPLIER * float(
        np.percentile(np.abs(deviation), BSC.DEADBAND_PERCENTILE)
    )
    return max(zero_eps, BSC.MIN_DEADBAND, noise)


def find_crossings(deviation: np.ndarray, eps: float) -> tuple[np.ndarray, np.ndarray]:
    """
    Locate inspiration starts and ends.

    Returns:
        (start indices, end indices), each ascending
    """
    positive = deviation > eps
    negative = deviation < -eps
    starts = np.flatnonzero(~positive[:-1] & positive[1:]) + 1
    ends = np.flatnonzero(~negative[:-1] & negative[1:]) + 1
    return starts, ends


def positive_volume_liters(flow_lpm: np.ndarray, dt: float) -> float:
    """Trapezoid integral of positive flow (L/min) over time, in liters."""
    clipped = np.clip(flow_lpm, 0.0, None)
    if clipped.size < 2:
        return 0.0
    return float(((clipped[:-1] + clipped[1:]) / 2.0).sum() * dt / SECONDS_PER_MINUTE)


class BreathSegmenter:
    """
    Segments a flow waveform into breaths with ventilation metrics.

    Example:
        >>> segmenter = BreathSegmenter(max_breath_duration=10.0)
        >>> breaths = segmenter.segment(session.flow_waveform)
    """

    def __init__(
        self,
        min_breath_duration: float = BSC.MIN_BREATH_SECONDS,
        max_breath_duration: float = BSC.MAX_BREATH_SECONDS,
        min_inspiration: float = BSC.MIN_INSPIRATION_SECONDS,
        zero_eps: float = BSC.ZERO_EPS,
        leak_threshold: float | None = None,
        leak_reject_fraction: float = BSC.LEAK_REJECT_FRACTION,
    ):
        """
        Initialize breath segmenter with configuration.

        Args:
            min_breath_duration: Minimum valid breath duration in seconds
            max_breath_duration: Maximum valid breath duration in seconds
            min_inspiration: Minimum inspiration time in seconds
            zero_eps: Smallest deadband around zero flow (L/min)
            leak_threshold: Leak (L/min) above which a breath window counts
                as leaky; None disables leak rejection
            leak_reject_fraction: Share of leaky samples that rejects a breath
        """
        self.min_breath_duration = min_breath_duration
        self.max_breath_duration = max_breath_duration
        self.min_inspiration = min_inspiration
        self.zero_eps = zero_eps
        self.leak_threshold = leak_threshold
        self.leak_reject_fraction = leak_reject_fraction

    def segment(
        self,
        flow: WaveformChannel,
        leak: Sequence[SignalSample] | None = None,
    ) -> list[Breath]:
        """
        Segment ``flow`` into breaths and score each for flow limitation.

        Args:
            flow: Flow waveform in L/min
            leak: Optional leak samples used for leak-aware rejection

        Returns:
            Breaths in time order
        """
        if flow.sample_count < 3:
            return []

        rate = flow.sample_rate_hz
        dt = 1.0 / rate
        smoothed = smooth_flow(flow.samples)
        deviation = smoothed - estimate_baseline(smoothed)
        eps = deadband(deviation, self.zero_eps)
        starts, ends = find_crossings(deviation, eps)
        logger.debug(
            f"Flow {flow.sample_count} samples at {rate} Hz: "
            f"{starts.size} inspiration starts, deadband {eps:.3f} L/min"
        )
        if starts.size < 2:
            return []

        leak_index = self._leak_index(leak)
        start_epoch = flow.start_ms / 1000.0
        breaths: list[Breath] = []
        rejected_for_leak = 0

        for s_idx, next_s_idx in zip(starts[:-1], starts[1:]):
            e_pos = int(np.searchsorted(ends, s_idx, side="right"))
            if e_pos >= ends.size:
                break
            e_idx = int(ends[e_pos])
            if e_idx >= next_s_idx:
                continue

            duration = (next_s_idx - s_idx) * dt
            if not self.min_breath_duration <= duration <= self.max_breath_duration:
                continue
            insp = (e_idx - s_idx) * dt
            if insp < self.min_inspiration:
                continue
            exp = duration - insp
            if exp <= 0:
                continue

            t0 = start_epoch + s_idx * dt
            if leak_index is not None and self._is_leaky(leak_index, t0, t0 + duration):
                rejected_for_leak += 1
                continue

            tidal = positive_volume_liters(deviation[s_idx : e_idx + 1], dt)
            rr = SECONDS_PER_MINUTE / duration
            breaths.append(
                Breath(
                    start=utc_from_epoch(t0),
                    duration_seconds=duration,
                    tidal_volume=tidal,
                    respiratory_rate=rr,
                    minute_ventilation=tidal * rr,
                    inspiratory_time=insp,
                    expiratory_time=exp,
                    ie_ratio=insp / exp,
                )
            )

        if rejected_for_leak:
            logger.debug(f"Rejected {rejected_for_leak} breaths during high leak")
        logger.debug(f"Segmented {len(breaths)} breaths")
        return score_breaths(flow, breaths)

    def _leak_index(
        self, leak: Sequence[SignalSample] | None
    ) -> tuple[list[float], list[float]] | None:
        if self.leak_threshold is None or not leak:
            return None
        ordered = sorted(leak, key=lambda s: s.time)
        return [s.epoch for s in ordered], [s.value for s in ordered]

    def _is_leaky(
        self, index: tuple[list[float], list[float]], t0: float, t1: float
    ) -> bool:
        epochs, values = index
        lo, hi = bisect_left(epochs, t0), bisect_left(epochs, t1)
        if hi <= lo:
            return False
        over = sum(1 for v in values[lo:hi] if v > self.leak_threshold)
        return over / (hi - lo) >= self.leak_reject_fraction
