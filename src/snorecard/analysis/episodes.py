"""
Episode detection and correlation.

An episode is a bounded run of a repeating condition: clustered snore
events, leak above the night's threshold, or minutes of high flow
limitation. Snore episodes are then linked to overlapping leak and
high-FL episodes.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from snorecard.analysis.weighted_stats import WeightedInterval
from snorecard.constants import EpisodeConstants, FlowLimitationConstants, SECONDS_PER_MINUTE
from snorecard.models.events import SNORE_EVENT_TYPES, Event, to_epoch, utc_from_epoch


@dataclass(frozen=True)
class SnoreEpisode:
    """A cluster of snore events; ``end`` is exclusive."""

    start: datetime
    end: datetime
    count: int
    duration_seconds: int
    density_per_min: float
    peak_density_per_min: int

    @property
    def start_epoch(self) -> float:
        return to_epoch(self.start)

    @property
    def end_epoch(self) -> float:
        return to_epoch(self.end)


@dataclass(frozen=True)
class ValueEpisode:
    """A run of time where a channel satisfied a condition; ``end`` is exclusive."""

    start: datetime
    end: datetime
    max_value: float
    mean_value: float

    @property
    def start_epoch(self) -> float:
        return to_epoch(self.start)

    @property
    def end_epoch(self) -> float:
        return to_epoch(self.end)

    @property
    def duration_seconds(self) -> float:
        return max(0.0, self.end_epoch - self.start_epoch)


@dataclass(frozen=True)
class EpisodeLink:
    """Overlap of one snore episode with leak and high-FL episodes."""

    snore_index: int
    episode: SnoreEpisode
    leak_overlap_seconds: float
    high_fl_overlap_seconds: float

    @property
    def has_leak_overlap(self) -> bool:
        return self.leak_overlap_seconds > 0

    @property
    def has_high_fl_overlap(self) -> bool:
        return self.high_fl_overlap_seconds > 0

    @property
    def has_both(self) -> bool:
        return self.has_leak_overlap and self.has_high_fl_overlap


@dataclass(frozen=True)
class CorrelationSummary:
    snore_episode_count: int = 0
    with_leak_overlap: int = 0
    with_high_fl_overlap: int = 0
    with_both_overlap: int = 0
    total_leak_overlap_seconds: float = 0.0
    total_high_fl_overlap_seconds: float = 0.0


def _peak_window_count(epochs: Sequence[float], window_seconds: float) -> int:
    """Largest number of sorted epochs inside any [t, t + window) window."""
    best = 0
    lo = 0
    for hi, t in enumerate(epochs):
        while t - epochs[lo] >= window_seconds:
            lo += 1
        best = max(best, hi - lo + 1)
    return best


def _close_snore_episode(epochs: list[float]) -> SnoreEpisode:
    start, last = epochs[0], epochs[-1]
    end = last + 1.0
    duration = max(EpisodeConstants.SNORE_MIN_DURATION_SECONDS, round(end - start))
    return SnoreEpisode(
        start=utc_from_epoch(start),
        end=utc_from_epoch(end),
        count=len(epochs),
        duration_seconds=duration,
        density_per_min=len(epochs) / (duration / SECONDS_PER_MINUTE),
        peak_density_per_min=_peak_window_count(
            epochs, EpisodeConstants.PEAK_DENSITY_WINDOW_SECONDS
        ),
    )


def snore_episodes(
    events: Iterable[Event],
    gap_seconds: float = EpisodeConstants.SNORE_GAP_TOLERANCE_SECONDS,
) -> list[SnoreEpisode]:
    """
    Cluster snore events into episodes.

    Consecutive snore events at most ``gap_seconds`` apart belong to the same
    episode. An episode ends one second after its last event.

    Args:
        events: Events of any type; only snore-type events are used
        gap_seconds: Largest gap that keeps an episode open

    Returns:
        Episodes in time order
    """
    epochs = sorted(e.epoch for e in events if e.event_type in SNORE_EVENT_TYPES)
    if not epochs:
        return []

    out = []
    current = [epochs[0]]
    for t in epochs[1:]:
        if t - current[-1] <= gap_seconds:
            current.append(t)
        else:
            out.append(_close_snore_episode(current))
            current = [t]
    out.append(_close_snore_episode(current))
    return out


def value_episodes_over_threshold(
    intervals: Iterable[WeightedInterval],
    threshold: float,
    min_duration_seconds: float = EpisodeConstants.LEAK_MIN_DURATION_SECONDS,
    gap_seconds: float = EpisodeConstants.LEAK_GAP_TOLERANCE_SECONDS,
) -> list[ValueEpisode]:
    """
    Turn intervals with value above ``threshold`` into episodes.

    Over-threshold intervals that start within ``gap_seconds`` of the current
    episode's end extend it; an interval at or below the threshold closes it.
    Episodes shorter than ``min_duration_seconds`` are dropped.

    Returns:
        Episodes in time order, with the max value and time-weighted mean
    """
    out: list[ValueEpisode] = []
    run: list[WeightedInterval] = []

    def flush() -> None:
        if not run:
            return
        start, end = run[0].start, max(it.end for it in run)
        weight = sum(it.seconds for it in run)
        if end - start >= min_duration_seconds and weight > 0:
            out.append(
                ValueEpisode(
                    start=utc_from_epoch(start),
                    end=utc_from_epoch(end),
                    max_value=max(it.value for it in run),
                    mean_value=sum(it.value * it.seconds for it in run) / weight,
                )
            )
        run.clear()

    for interval in sorted(intervals, key=lambda it: it.start):
        if interval.value <= threshold:
            flush()
            continue
        if run and interval.start > max(it.end for it in run) + gap_seconds:
            flush()
        run.append(interval)
    flush()
    return out


def episodes_from_minute_bands(
    bands: Sequence[int],
    day_start: datetime,
    min_band: int = FlowLimitationConstants.BAND_HIGH,
    min_duration_seconds: float = EpisodeConstants.HIGH_FL_MIN_DURATION_SECONDS,
    gap_minutes: int = EpisodeConstants.HIGH_FL_GAP_TOLERANCE_MINUTES,
) -> list[ValueEpisode]:
    """
    Turn minutes whose severity band is at least ``min_band`` into episodes.

    A qualifying minute joins the current episode when at most
    ``gap_minutes`` non-qualifying minutes separate them.

    Args:
        bands: One severity band per minute, starting at ``day_start``
        day_start: Instant of minute 0
        min_band: Lowest qualifying band
        min_duration_seconds: Shortest episode kept
        gap_minutes: Tolerated run of non-qualifying minutes

    Returns:
        Episodes in time order; max and mean are 1.0 (a band indicator)
    """
    out = []
    first: int | None = None
    last: int | None = None

    def flush() -> None:
        if first is None or last is None:
            return
        if (last + 1 - first) * SECONDS_PER_MINUTE >= min_duration_seconds:
            out.append(
                ValueEpisode(
                    start=day_start + timedelta(minutes=first),
                    end=day_start + timedelta(minutes=last + 1),
                    max_value=1.0,
                    mean_value=1.0,
                )
            )

    for minute, band in enumerate(bands):
        if band < min_band:
            continue
        if last is not None and minute - last - 1 <= gap_minutes:
            last = minute
            continue
        flush()
        first = last = minute
    flush()
    return out


def _overlap_seconds(a0: float, a1: float, b0: float, b1: float) -> float:
    return max(0.0, min(a1, b1) - max(a0, b0))


def link_episodes(
    snores: Sequence[SnoreEpisode],
    leaks: Sequence[ValueEpisode],
    high_fl: Sequence[ValueEpisode],
) -> list[EpisodeLink]:
    """Sum, per snore episode, its overlap with leak and high-FL episodes."""
    out = []
    for index, episode in enumerate(snores):
        s0, s1 = episode.start_epoch, episode.end_epoch
        out.append(
            EpisodeLink(
                snore_index=index,
                episode=episode,
                leak_overlap_seconds=sum(
                    _overlap_seconds(s0, s1, e.start_epoch, e.end_epoch) for e in leaks
                ),
                high_fl_overlap_seconds=sum(
                    _overlap_seconds(s0, s1, e.start_epoch, e.end_epoch) for e in high_fl
                ),
            )
        )
    return out


def summarize_links(links: Sequence[EpisodeLink]) -> CorrelationSummary:
    return CorrelationSummary(
        snore_episode_count=len(links),
        with_leak_overlap=sum(1 for link in links if link.has_leak_overlap),
        with_high_fl_overlap=sum(1 for link in links if link.has_high_fl_overlap),
        with_both_overlap=sum(1 for link in links if link.has_both),
        total_leak_overlap_seconds=sum(link.leak_overlap_seconds for link in links),
        total_high_fl_overlap_seconds=sum(link.high_fl_overlap_seconds for link in links),
    )
