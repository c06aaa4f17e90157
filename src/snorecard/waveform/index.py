"""
Multi-resolution min/max index over high-rate waveforms.

Each contiguous run of samples (a segment) keeps a pyramid of levels; level
k holds the min and max of consecutive groups of 4**k raw samples. A query
reads the coarsest level whose group span still fits inside one output
bucket, and only the groups overlapping the requested range, so its cost
depends on the response size rather than on the recording length.
"""

import logging
import math

from bisect import bisect_right
from collections.abc import Iterable
from dataclasses import dataclass, field

import numpy as np

from snorecard.constants import WaveformIndexConstants as WIC
from snorecard.models.events import SignalType
from snorecard.models.session import Session, WaveformChannel

logger = logging.getLogger(__name__)

WAVEFORM_SIGNALS = (
    SignalType.FLOW,
    SignalType.PRESSURE,
    SignalType.LEAK,
    SignalType.FLEX_ACTIVE,
)


@dataclass(frozen=True)
class EnvelopePoint:
    """Min and max of the samples in one output bucket starting at ``t_ms``."""

    t_ms: int
    min: float
    max: float


def reduce_level(
    mins: np.ndarray, maxs: np.ndarray, factor: int
) -> tuple[np.ndarray, np.ndarray]:
    """Min/max of consecutive groups of ``factor`` entries (last group may be short)."""
    pad = (-mins.size) % factor
    if pad:
        mins = np.pad(mins, (0, pad), mode="edge")
        maxs = np.pad(maxs, (0, pad), mode="edge")
    return mins.reshape(-1, factor).min(axis=1), maxs.reshape(-1, factor).max(axis=1)


@dataclass(eq=False)
class Segment:
    """Contiguous fixed-rate samples plus their min/max pyramid."""

    start_ms: float
    sample_rate_hz: float
    samples: np.ndarray
    levels: list[tuple[np.ndarray, np.ndarray]] = field(default_factory=list)

    @property
    def step_ms(self) -> float:
        return 1000.0 / self.sample_rate_hz

    @property
    def end_ms(self) -> float:
        return self.start_ms + self.samples.size * self.step_ms

    def build_levels(self) -> None:
        """Level 0 is the raw data; each further level reduces by 4."""
        self.levels = [(self.samples, self.samples)]
        mins, maxs = self.samples, self.samples
        while mins.size > 1:
            mins, maxs = reduce_level(mins, maxs, WIC.REDUCTION_FACTOR)
            self.levels.append((mins, maxs))

    def level_for(self, width_ms: float) -> int:
        """Coarsest level whose group span is at most ``width_ms``."""
        level = 0
        while (
            level + 1 < len(self.levels)
            and WIC.REDUCTION_FACTOR ** (level + 1) * self.step_ms <= width_ms
        ):
            level += 1
        return level

    def index_at(self, t_ms: float) -> int:
        """First sample index with timestamp >= ``t_ms``, clamped to [0, n]."""
        i = math.ceil((t_ms - self.start_ms) / self.step_ms - 1e-9)
        return min(max(i, 0), self.samples.size)

    def pieces(
        self, start_ms: float, end_ms: float, width_ms: float
    ) -> Iterable[tuple[np.ndarray, np.ndarray, np.ndarray]]:
        """
        Yield (times, mins, maxs) covering the samples inside [start, end).

        Whole level groups are read from the pyramid; the partial groups at
        the range edges are read from raw samples.
        """
        i0, i1 = self.index_at(start_ms), self.index_at(end_ms)
        if i1 <= i0:
            return
        level = self.level_for(width_ms)
        group = WIC.REDUCTION_FACTOR**level
        j0, j1 = -(-i0 // group), i1 // group

        if j1 <= j0:
            raw = self.samples[i0:i1]
            yield self._times(i0, i1, 1), raw, raw
            return

        if i0 < j0 * group:
            raw = self.samples[i0 : j0 * group]
            yield self._times(i0, j0 * group, 1), raw, raw
        mins, maxs = self.levels[level]
        yield self._times(j0 * group, j1 * group, group), mins[j0:j1], maxs[j0:j1]
        if j1 * group < i1:
            raw = self.samples[j1 * group : i1]
            yield self._times(j1 * group, i1, 1), raw, raw

    def _times(self, i0: int, i1: int, stride: int) -> np.ndarray:
        return self.start_ms + np.arange(i0, i1, stride, dtype=np.float64) * self.step_ms


def _segments_for(channels: Iterable[WaveformChannel]) -> list[Segment]:
    """
    Order channels by start, trim overlaps and join runs separated by small gaps.
    """
    segments: list[Segment] = []
    pending: list[np.ndarray] = []

    for channel in sorted(channels, key=lambda c: c.start_ms):
        data = np.asarray(channel.samples, dtype=np.float32)
        if data.size == 0:
            continue
        start_ms = float(channel.start_ms)
        rate = channel.sample_rate_hz
        step = 1000.0 / rate

        if segments:
            last = segments[-1]
            last_end = last.start_ms + sum(p.size for p in pending) * last.step_ms
            if start_ms < last_end:
                skip = math.ceil((last_end - start_ms) / step - 1e-9)
                if skip >= data.size:
                    continue
                data = data[skip:]
                start_ms += skip * step
            if last.sample_rate_hz == rate and start_ms - last_end < WIC.GAP_SNAP_MS:
                pending.append(data)
                continue
            last.samples = np.concatenate(pending)
            pending = []

        segments.append(Segment(start_ms=start_ms, sample_rate_hz=rate, samples=data))
        pending = [data]

    if segments:
        segments[-1].samples = np.concatenate(pending)
    for segment in segments:
        segment.samples.setflags(write=False)
        segment.build_levels()
    return segments


class WaveformIndex:
    """
    Read-only envelope index over the waveforms of a set of sessions.

    Example:
        >>> index = WaveformIndex.build(sessions)
        >>> points = index.query(SignalType.FLOW, start_ms, end_ms, max_buckets=800)
    """

    def __init__(self, segments: dict[SignalType, list[Segment]]):
        self._segments = segments
        self._starts = {
            signal: [s.start_ms for s in segs] for signal, segs in segments.items()
        }

    @classmethod
    def build(
        cls,
        sessions: Iterable[Session],
        signals: Iterable[SignalType] | None = None,
    ) -> "WaveformIndex":
        """
        Index the waveforms of ``sessions``.

        Args:
            sessions: Merged sessions
            signals: Signals to index (default: every waveform signal)
        """
        wanted = tuple(signals) if signals is not None else WAVEFORM_SIGNALS
        sessions = list(sessions)
        segments = {}
        for signal in wanted:
            channels = [wf for s in sessions if (wf := s.waveform(signal)) is not None]
            if channels:
                segments[signal] = _segments_for(channels)
                logger.debug(
                    f"Indexed {signal.value}: {len(channels)} channels in "
                    f"{len(segments[signal])} segments"
                )
        return cls(segments)

    @property
    def signals(self) -> list[SignalType]:
        return list(self._segments)

    def span_ms(self, signal: SignalType) -> tuple[float, float] | None:
        """First and exclusive last timestamp covered for ``signal``."""
        segments = self._segments.get(signal)
        if not segments:
            return None
        return segments[0].start_ms, segments[-1].end_ms

    def query(
        self,
        signal: SignalType,
        start_ms: int,
        end_ms: int,
        max_buckets: int = WIC.DEFAULT_MAX_BUCKETS,
    ) -> list[EnvelopePoint]:
        """
        Downsampled min/max envelope over [start_ms, end_ms).

        Args:
            signal: Signal to read
            start_ms: Inclusive range start (Unix milliseconds)
            end_ms: Exclusive range end (Unix milliseconds)
            max_buckets: Upper bound on the number of returned points

        Returns:
            Points in time order; buckets without samples are omitted
        """
        segments = self._segments.get(signal)
        if not segments or end_ms <= start_ms or max_buckets <= 0:
            return []

        width = max(1, math.ceil((end_ms - start_ms) / max_buckets))
        count = math.ceil((end_ms - start_ms) / width)
        out_min = np.full(count, np.inf)
        out_max = np.full(count, -np.inf)

        first = max(0, bisect_right(self._starts[signal], start_ms) - 1)
        for segment in segments[first:]:
            if segment.start_ms >= end_ms:
                break
            if segment.end_ms <= start_ms:
                continue
            for times, mins, maxs in segment.pieces(start_ms, end_ms, width):
                slots = np.clip(((times - start_ms) // width).astype(np.int64), 0, count - 1)
                np.minimum.at(out_min, slots, mins)
                np.maximum.at(out_max, slots, maxs)

        filled = np.flatnonzero(np.isfinite(out_min))
        return [
            EnvelopePoint(
                t_ms=int(start_ms + i * width),
                min=float(out_min[i]),
                max=float(out_max[i]),
            )
            for i in filled
        ]
