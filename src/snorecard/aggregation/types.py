"""
Aggregation configuration and result types.

Buckets are built once per aggregation run and never mutated afterwards:
every collection on them is a tuple and every dataclass is frozen.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, time, tzinfo
from types import MappingProxyType
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

from snorecard.analysis.episodes import (
    CorrelationSummary,
    EpisodeLink,
    SnoreEpisode,
    ValueEpisode,
)
from snorecard.analysis.leak_model import LeakModel
from snorecard.analysis.weighted_stats import WeightedSummary
from snorecard.constants import AggregationDefaults, EpisodeConstants, SECONDS_PER_HOUR
from snorecard.models.events import Event, EventType, SignalSample, TimePoint, to_epoch
from snorecard.models.session import Breath, Session

__all__ = [
    "AggregationConfig",
    "AggregationError",
    "BreathStats",
    "DailyBucket",
    "SessionSlice",
    "TrendBucket",
    "WeightedSummary",
]


class AggregationError(Exception):
    """Raised when aggregation input violates an invariant."""


class AggregationConfig(BaseModel):
    """Tunables for the daily aggregator."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    leak_over_threshold: float = Field(
        default=AggregationDefaults.LEAK_OVER_THRESHOLD,
        gt=0,
        description="Large-leak threshold (L/min) used only when a night has no leak samples",
    )
    min_sample_segment_seconds: int = Field(
        default=AggregationDefaults.MIN_SAMPLE_SEGMENT_SECONDS,
        ge=0,
        description="Sample holds shorter than this carry no weight",
    )
    timezone: str | None = Field(
        default=None,
        description="IANA zone used for calendar-day bucketing (None = system local)",
    )
    snore_gap_tolerance_seconds: float = Field(
        default=EpisodeConstants.SNORE_GAP_TOLERANCE_SECONDS,
        ge=0,
        description="Largest gap between snores inside one snore episode",
    )
    leak_episode_min_seconds: float = Field(
        default=EpisodeConstants.LEAK_MIN_DURATION_SECONDS,
        ge=0,
        description="Shortest leak-over-threshold episode kept",
    )
    leak_episode_gap_seconds: float = Field(
        default=EpisodeConstants.LEAK_GAP_TOLERANCE_SECONDS,
        ge=0,
        description="Gap bridged between leak-over-threshold intervals",
    )
    high_fl_episode_min_seconds: float = Field(
        default=EpisodeConstants.HIGH_FL_MIN_DURATION_SECONDS,
        ge=0,
        description="Shortest high flow-limitation episode kept",
    )

    @field_validator("timezone")
    @classmethod
    def _known_zone(cls, value: str | None) -> str | None:
        if value is None:
            return None
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone {value!r}") from e
        return value

    def zone(self) -> tzinfo | None:
        """Configured zone, or None for the system local zone."""
        return ZoneInfo(self.timezone) if self.timezone else None

    def local_day(self, instant: datetime) -> date:
        """Calendar day of ``instant`` in the configured zone."""
        return instant.astimezone(self.zone()).date()

    def day_start(self, day: date) -> datetime:
        """Local midnight that starts ``day``, as an aware datetime."""
        zone = self.zone()
        if zone is None:
            return datetime.combine(day, time()).astimezone()
        return datetime.combine(day, time(), tzinfo=zone)


@dataclass(frozen=True)
class SessionSlice:
    """The part of one session assigned to a daily bucket."""

    session: Session
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise AggregationError(f"Slice end {self.end} precedes start {self.start}")
        if self.start < self.session.start or self.end > self.session.end:
            raise AggregationError(
                f"Slice [{self.start}, {self.end}) extends past its session "
                f"[{self.session.start}, {self.session.end})"
            )

    __hash__ = None  # type: ignore[assignment]

    @property
    def seconds(self) -> float:
        return (self.end - self.start).total_seconds()

    @property
    def epochs(self) -> tuple[float, float]:
        return to_epoch(self.start), to_epoch(self.end)

    def contains(self, epoch: float) -> bool:
        t0, t1 = self.epochs
        return t0 <= epoch < t1


@dataclass(frozen=True)
class BreathStats:
    """Duration-weighted breath metrics; present only when breaths qualify."""

    breath_count: int
    tidal_volume: WeightedSummary
    respiratory_rate: WeightedSummary
    minute_ventilation: WeightedSummary
    inspiratory_time: WeightedSummary
    expiratory_time: WeightedSummary
    ie_ratio: WeightedSummary


def _frozen_counts(counts: Mapping[EventType, int]) -> Mapping[EventType, int]:
    return MappingProxyType(dict(counts))


@dataclass(frozen=True, eq=False)
class DailyBucket:
    """Everything known about one local calendar day of therapy."""

    day: date
    day_start: datetime
    slices: tuple[SessionSlice, ...]
    events: tuple[Event, ...]
    pressure_samples: tuple[SignalSample, ...]
    exhale_pressure_samples: tuple[SignalSample, ...]
    leak_samples: tuple[SignalSample, ...]
    flow_samples: tuple[SignalSample, ...]
    flex_samples: tuple[SignalSample, ...]
    breaths: tuple[Breath, ...]

    usage_seconds: float
    event_counts: Mapping[EventType, int]
    ahi: float | None
    rdi: float | None
    snore_count: float
    snore_per_hour: float | None
    flex_duty_cycle: float | None

    pressure: WeightedSummary | None
    exhale_pressure: WeightedSummary | None
    leak: WeightedSummary | None
    leak_threshold: float
    leak_percent_over_threshold: float | None
    leak_model: LeakModel | None
    unintentional_leak: WeightedSummary | None

    breath_stats: BreathStats | None
    flow_limitation: WeightedSummary | None
    flow_limitation_series: tuple[TimePoint, ...]
    flow_limitation_minute_median: tuple[TimePoint, ...]
    flow_limitation_ema_5m: tuple[TimePoint, ...]
    flow_limitation_ema_15m: tuple[TimePoint, ...]
    flow_limitation_bands_5m: tuple[int, ...]
    flow_limitation_bands_15m: tuple[int, ...]

    snore_heatmap: tuple[int, ...]
    snore_heatmap_max: int
    snore_episodes: tuple[SnoreEpisode, ...]
    leak_episodes: tuple[ValueEpisode, ...]
    high_fl_episodes: tuple[ValueEpisode, ...]
    episode_links: tuple[EpisodeLink, ...]
    correlation: CorrelationSummary

    rolling_ahi: Mapping[int, tuple[TimePoint, ...]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "event_counts", _frozen_counts(self.event_counts))
        object.__setattr__(self, "rolling_ahi", MappingProxyType(dict(self.rolling_ahi)))

    @property
    def usage_hours(self) -> float:
        return self.usage_seconds / SECONDS_PER_HOUR

    @property
    def minute_count(self) -> int:
        """Length of the per-minute series (local day, stretched past midnight)."""
        return len(self.snore_heatmap)

    def count(self, event_type: EventType) -> int:
        return self.event_counts.get(event_type, 0)


@dataclass(frozen=True, eq=False)
class TrendBucket:
    """Weekly or monthly rollup of daily buckets."""

    period: str
    start: date
    end_exclusive: date
    days: tuple[DailyBucket, ...]
    usage_seconds: float
    event_counts: Mapping[EventType, int]
    ahi: float | None
    snore_count: float
    pressure_median: float | None
    pressure_p95: float | None
    leak_median: float | None
    leak_p95: float | None
    leak_percent_over_threshold: float | None
    tidal_volume_median: float | None
    resp_rate_median: float | None
    minute_vent_median: float | None
    flow_limitation_median: float | None
    nights_used: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "event_counts", _frozen_counts(self.event_counts))
