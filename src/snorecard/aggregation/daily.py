"""
Daily aggregation.

Each run follows the same steps: collect slices, clamp events and samples
to them, compute derived statistics, then freeze. Buckets are only handed
out after the freeze step.

Sessions belong to the local calendar day of their start instant, so a
night that crosses midnight stays in one bucket. Minute series run from
local midnight to the next one, stretched to the end of the latest slice.
"""

import logging

from collections import defaultdict
from collections.abc import Iterable, Sequence
from datetime import date, datetime, timedelta, timezone

from snorecard.aggregation.types import (
    AggregationConfig,
    AggregationError,
    BreathStats,
    DailyBucket,
    SessionSlice,
)
from snorecard.analysis.breath_segmenter import BreathSegmenter
from snorecard.analysis.calculations import (
    ahi_from_counts,
    count_events,
    events_per_hour,
    rdi_from_counts,
    seconds_to_hours,
    snore_total,
)
from snorecard.analysis.episodes import (
    episodes_from_minute_bands,
    link_episodes,
    snore_episodes,
    summarize_links,
    value_episodes_over_threshold,
)
from snorecard.analysis.flow_limitation import (
    ema_series,
    minute_median_series,
    severity_bands,
)
from snorecard.analysis.leak_model import fit_leak_model, unintentional_leak
from snorecard.analysis.rolling import (
    ahi_event_counts_per_minute,
    rolling_ahi,
    snore_counts_per_minute,
    usage_seconds_per_minute,
    window_minutes,
)
from snorecard.analysis.weighted_stats import (
    WeightedInterval,
    build_intervals,
    fraction_over,
    summarize,
    summarize_values,
    time_weighted_mean,
)
from snorecard.constants import (
    ROLLING_AHI_WINDOWS,
    AggregationDefaults,
    FlowLimitationConstants,
)
from snorecard.models.events import Event, SignalSample, SignalType, TimePoint, to_epoch
from snorecard.models.session import Breath, Session

logger = logging.getLogger(__name__)


def breath_stats(breaths: Sequence[Breath]) -> BreathStats | None:
    """
    Duration-weighted breath metrics.

    All metrics share the same breath list, so they are all present or all
    None together.
    """
    weights = [b.duration_seconds for b in breaths]
    summaries = {
        name: summarize_values([getattr(b, name) for b in breaths], weights)
        for name in (
            "tidal_volume",
            "respiratory_rate",
            "minute_ventilation",
            "inspiratory_time",
            "expiratory_time",
            "ie_ratio",
        )
    }
    if any(summary is None for summary in summaries.values()):
        return None
    return BreathStats(breath_count=len(breaths), **summaries)  # type: ignore[arg-type]


class _BucketBuilder:
    """Mutable collector for one day; only ``freeze`` output leaves the aggregator."""

    def __init__(self, day: date, day_start: datetime, next_day_start: datetime):
        self.day = day
        self.day_start = day_start.astimezone(timezone.utc)
        self.next_day_start = next_day_start.astimezone(timezone.utc)
        self.slices: list[SessionSlice] = []
        self.events: list[Event] = []
        self.samples: dict[SignalType, list[SignalSample]] = defaultdict(list)
        self.breaths: list[Breath] = []

    def add_session(self, session: Session) -> None:
        self.slices.append(SessionSlice(session=session, start=session.start, end=session.end))

    def slice_epochs(self) -> list[tuple[float, float]]:
        return [s.epochs for s in self.slices]

    def clamp(self) -> None:
        """Keep only the events, samples and breaths inside a slice."""
        for piece in self.slices:
            session = piece.session
            self.events.extend(e for e in session.events if piece.contains(e.epoch))
            for signal in SignalType:
                self.samples[signal].extend(
                    s for s in session.samples(signal) if piece.contains(s.epoch)
                )
            self.breaths.extend(b for b in session.breaths if piece.contains(b.epoch))

        self.events.sort(key=lambda e: e.time)
        for channel in self.samples.values():
            channel.sort(key=lambda s: s.time)
        self.breaths.sort(key=lambda b: b.start)

    def minutes(self) -> int:
        latest_end = max((s.epochs[1] for s in self.slices), default=None)
        return window_minutes(
            to_epoch(self.day_start), to_epoch(self.next_day_start), latest_end
        )

    def intervals(
        self, samples: Sequence[SignalSample], config: AggregationConfig
    ) -> list[WeightedInterval]:
        return build_intervals(samples, self.slice_epochs(), config.min_sample_segment_seconds)

    def freeze(self, config: AggregationConfig) -> DailyBucket:
        usage = sum(s.seconds for s in self.slices)
        if usage < 0:
            raise AggregationError(f"Negative usage on {self.day}")
        hours = seconds_to_hours(usage)
        counts = count_events(self.events)
        day_epoch = to_epoch(self.day_start)
        minutes = self.minutes()

        pressure = self.samples[SignalType.PRESSURE]
        leak = self.samples[SignalType.LEAK]

        leak_intervals = self.intervals(leak, config)
        leak_mean = time_weighted_mean(leak_intervals)
        threshold = leak_mean if leak_mean is not None else config.leak_over_threshold

        model = fit_leak_model(leak, pressure)
        unintentional = unintentional_leak(leak, pressure, model) if model else []

        flex_intervals = self.intervals(self.samples[SignalType.FLEX_ACTIVE], config)

        scored = [b for b in self.breaths if b.flow_limitation is not None]
        fl_points = [TimePoint(time=b.start, value=b.flow_limitation) for b in scored]
        fl_minutes = minute_median_series(fl_points, self.day_start, minutes)
        ema_5 = ema_series(fl_minutes, FlowLimitationConstants.EMA_SHORT_MINUTES)
        ema_15 = ema_series(fl_minutes, FlowLimitationConstants.EMA_LONG_MINUTES)
        bands_5 = severity_bands(ema_5)
        bands_15 = severity_bands(ema_15)

        snores = snore_episodes(self.events, config.snore_gap_tolerance_seconds)
        leak_episodes = value_episodes_over_threshold(
            leak_intervals,
            threshold,
            min_duration_seconds=config.leak_episode_min_seconds,
            gap_seconds=config.leak_episode_gap_seconds,
        )
        high_fl = episodes_from_minute_bands(
            bands_5, self.day_start, min_duration_seconds=config.high_fl_episode_min_seconds
        )
        links = link_episodes(snores, leak_episodes, high_fl)

        heatmap = snore_counts_per_minute(self.events, day_epoch, minutes)
        usage_minutes = usage_seconds_per_minute(self.slice_epochs(), day_epoch, minutes)
        ahi_minutes = ahi_event_counts_per_minute(self.events, day_epoch, minutes)
        snore_count = snore_total(self.events)

        return DailyBucket(
            day=self.day,
            day_start=self.day_start,
            slices=tuple(sorted(self.slices, key=lambda s: s.start)),
            events=tuple(self.events),
            pressure_samples=tuple(pressure),
            exhale_pressure_samples=tuple(self.samples[SignalType.EXHALE_PRESSURE]),
            leak_samples=tuple(leak),
            flow_samples=tuple(self.samples[SignalType.FLOW]),
            flex_samples=tuple(self.samples[SignalType.FLEX_ACTIVE]),
            breaths=tuple(self.breaths),
            usage_seconds=usage,
            event_counts=counts,
            ahi=ahi_from_counts(counts, hours),
            rdi=rdi_from_counts(counts, hours),
            snore_count=snore_count,
            snore_per_hour=events_per_hour(snore_count, hours),
            flex_duty_cycle=fraction_over(flex_intervals, AggregationDefaults.FLEX_ACTIVE_THRESHOLD),
            pressure=summarize(self.intervals(pressure, config)),
            exhale_pressure=summarize(
                self.intervals(self.samples[SignalType.EXHALE_PRESSURE], config)
            ),
            leak=summarize(leak_intervals),
            leak_threshold=threshold,
            leak_percent_over_threshold=fraction_over(leak_intervals, threshold),
            leak_model=model,
            unintentional_leak=summarize(self.intervals(unintentional, config)),
            breath_stats=breath_stats(self.breaths),
            flow_limitation=summarize_values(
                [b.flow_limitation for b in scored],  # type: ignore[misc]
                [b.duration_seconds for b in scored],
            ),
            flow_limitation_series=tuple(fl_points),
            flow_limitation_minute_median=tuple(fl_minutes),
            flow_limitation_ema_5m=tuple(ema_5),
            flow_limitation_ema_15m=tuple(ema_15),
            flow_limitation_bands_5m=tuple(bands_5),
            flow_limitation_bands_15m=tuple(bands_15),
            snore_heatmap=tuple(heatmap),
            snore_heatmap_max=max(heatmap, default=0),
            snore_episodes=tuple(snores),
            leak_episodes=tuple(leak_episodes),
            high_fl_episodes=tuple(high_fl),
            episode_links=tuple(links),
            correlation=summarize_links(links),
            rolling_ahi={
                window: tuple(rolling_ahi(usage_minutes, ahi_minutes, self.day_start, window))
                for window in ROLLING_AHI_WINDOWS
            },
        )


class DailyAggregator:
    """
    Builds immutable daily buckets from merged sessions.

    Example:
        >>> aggregator = DailyAggregator(AggregationConfig(timezone="Europe/Paris"))
        >>> buckets = aggregator.build(merge_sessions(sessions))
    """

    def __init__(
        self,
        config: AggregationConfig | None = None,
        segmenter: BreathSegmenter | None = None,
    ):
        self.config = config or AggregationConfig()
        self.segmenter = segmenter or BreathSegmenter()

    def with_breaths(self, session: Session) -> Session:
        """Segment the flow waveform when the session has no breaths yet."""
        if session.breaths or session.flow_waveform is None:
            return session
        return session.with_breaths(
            self.segmenter.segment(session.flow_waveform, session.leak_samples)
        )

    def build(self, sessions: Iterable[Session]) -> list[DailyBucket]:
        """
        Build one bucket per local day that has at least one session.

        Args:
            sessions: Merged sessions in any order

        Returns:
            Buckets sorted ascending by day
        """
        builders: dict[date, _BucketBuilder] = {}
        for session in sessions:
            day = self.config.local_day(session.start)
            builder = builders.get(day)
            if builder is None:
                builder = builders[day] = _BucketBuilder(
                    day,
                    self.config.day_start(day),
                    self.config.day_start(day + timedelta(days=1)),
                )
            builder.add_session(self.with_breaths(session))

        buckets = []
        for day in sorted(builders):
            builder = builders[day]
            builder.clamp()
            bucket = builder.freeze(self.config)
            logger.debug(
                f"Day {day}: {len(bucket.slices)} sessions, "
                f"{bucket.usage_hours:.2f} h, AHI {bucket.ahi}"
            )
            buckets.append(bucket)

        logger.info(f"Aggregated {len(buckets)} days")
        return buckets
