"""
Viewport queries: waveform envelopes plus the overlays aligned to them.

A viewport is a half-open [start_ms, end_ms) range in Unix milliseconds.
Overlays come from one daily bucket and are clipped to the range.
"""

import math

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import timedelta

from pydantic import BaseModel, ConfigDict, Field, model_validator

from snorecard.aggregation.types import DailyBucket
from snorecard.analysis.episodes import EpisodeLink, SnoreEpisode, ValueEpisode
from snorecard.constants import MILLISECONDS_PER_SECOND, SECONDS_PER_MINUTE
from snorecard.constants import WaveformIndexConstants as WIC
from snorecard.models.events import Event, SignalType, TimePoint, to_epoch_ms
from snorecard.waveform.index import WAVEFORM_SIGNALS, EnvelopePoint, WaveformIndex


class ViewportRequest(BaseModel):
    """A validated envelope query."""

    model_config = ConfigDict(frozen=True)

    signal: SignalType = Field(default=SignalType.FLOW, description="Signal to read")
    start_ms: int = Field(description="Inclusive range start, Unix milliseconds")
    end_ms: int = Field(description="Exclusive range end, Unix milliseconds")
    max_buckets: int = Field(
        default=WIC.DEFAULT_MAX_BUCKETS, gt=0, description="Upper bound on returned points"
    )

    @model_validator(mode="after")
    def _ordered(self) -> "ViewportRequest":
        if self.end_ms <= self.start_ms:
            raise ValueError(f"end_ms ({self.end_ms}) must be after start_ms ({self.start_ms})")
        return self


def query_envelope(index: WaveformIndex, request: ViewportRequest) -> list[EnvelopePoint]:
    return index.query(request.signal, request.start_ms, request.end_ms, request.max_buckets)


def _overlaps(start_ms: int, end_ms: int, range_start: int, range_end: int) -> bool:
    return start_ms < range_end and end_ms > range_start


@dataclass(frozen=True)
class ViewportResult:
    """Everything needed to draw one viewport of one day."""

    start_ms: int
    end_ms: int
    waveforms: dict[SignalType, list[EnvelopePoint]] = field(default_factory=dict)
    events: tuple[Event, ...] = ()
    flow_limitation_breaths: tuple[TimePoint, ...] = ()
    flow_limitation_ema_5m: tuple[TimePoint, ...] = ()
    flow_limitation_ema_15m: tuple[TimePoint, ...] = ()
    flow_limitation_bands_5m: tuple[int, ...] = ()
    flow_limitation_bands_15m: tuple[int, ...] = ()
    snore_episodes: tuple[SnoreEpisode, ...] = ()
    snore_heatmap: tuple[TimePoint, ...] = ()
    snore_heatmap_max: int = 0
    leak_episodes: tuple[ValueEpisode, ...] = ()
    high_fl_episodes: tuple[ValueEpisode, ...] = ()
    episode_links: tuple[EpisodeLink, ...] = ()


class ViewportApi:
    """
    Range queries over one waveform index and its daily buckets.

    Example:
        >>> api = ViewportApi(WaveformIndex.build(sessions))
        >>> result = api.from_daily_bucket(bucket, start_ms, end_ms, max_buckets=800)
    """

    def __init__(self, index: WaveformIndex):
        self.index = index

    def waveform(
        self,
        signal: SignalType,
        start_ms: int,
        end_ms: int,
        max_buckets: int = WIC.DEFAULT_MAX_BUCKETS,
    ) -> list[EnvelopePoint]:
        return query_envelope(
            self.index,
            ViewportRequest(
                signal=signal, start_ms=start_ms, end_ms=end_ms, max_buckets=max_buckets
            ),
        )

    def from_daily_bucket(
        self,
        bucket: DailyBucket,
        start_ms: int,
        end_ms: int,
        max_buckets: int = WIC.DEFAULT_MAX_BUCKETS,
        signals: Iterable[SignalType] = WAVEFORM_SIGNALS,
    ) -> ViewportResult:
        """
        Envelopes for ``signals`` plus the bucket's overlays inside the range.

        Minute series are cut to the minutes touching the range; episodes are
        kept when they overlap it.
        """
        waveforms = {
            signal: self.waveform(signal, start_ms, end_ms, max_buckets) for signal in signals
        }

        day_start_ms = to_epoch_ms(bucket.day_start)
        minute_ms = SECONDS_PER_MINUTE * MILLISECONDS_PER_SECOND
        day_minutes = bucket.minute_count
        i0 = min(max((start_ms - day_start_ms) // minute_ms, 0), day_minutes)
        i1 = min(max(math.ceil((end_ms - day_start_ms) / minute_ms), 0), day_minutes)

        def minutes(series: Sequence) -> tuple:
            return tuple(series[i0:i1]) if i0 < i1 else ()

        heatmap = tuple(
            TimePoint(
                time=bucket.day_start + timedelta(minutes=i),
                value=float(bucket.snore_heatmap[i]),
            )
            for i in range(i0, i1)
        )

        def in_range(ms: int) -> bool:
            return start_ms <= ms < end_ms

        def episode_overlaps(episode: SnoreEpisode | ValueEpisode) -> bool:
            return _overlaps(
                to_epoch_ms(episode.start), to_epoch_ms(episode.end), start_ms, end_ms
            )

        return ViewportResult(
            start_ms=start_ms,
            end_ms=end_ms,
            waveforms=waveforms,
            events=tuple(e for e in bucket.events if in_range(to_epoch_ms(e.time))),
            flow_limitation_breaths=tuple(
                p for p in bucket.flow_limitation_series if in_range(to_epoch_ms(p.time))
            ),
            flow_limitation_ema_5m=minutes(bucket.flow_limitation_ema_5m),
            flow_limitation_ema_15m=minutes(bucket.flow_limitation_ema_15m),
            flow_limitation_bands_5m=minutes(bucket.flow_limitation_bands_5m),
            flow_limitation_bands_15m=minutes(bucket.flow_limitation_bands_15m),
            snore_episodes=tuple(e for e in bucket.snore_episodes if episode_overlaps(e)),
            snore_heatmap=heatmap,
            snore_heatmap_max=bucket.snore_heatmap_max,
            leak_episodes=tuple(e for e in bucket.leak_episodes if episode_overlaps(e)),
            high_fl_episodes=tuple(e for e in bucket.high_fl_episodes if episode_overlaps(e)),
            episode_links=tuple(
                link for link in bucket.episode_links if episode_overlaps(link.episode)
            ),
        )
