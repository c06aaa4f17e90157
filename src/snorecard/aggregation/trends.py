"""
Weekly and monthly rollups of daily buckets.

Counts and usage are summed and AHI is recomputed from the summed counts.
Every other metric is the usage-weighted mean of the daily values, skipping
days where the metric is undefined.
"""

from collections import Counter, defaultdict
from collections.abc import Callable, Iterable, Sequence
from datetime import date, timedelta

from snorecard.aggregation.types import DailyBucket, TrendBucket
from snorecard.analysis.calculations import ahi_from_counts, seconds_to_hours
from snorecard.models.events import EventType

WEEK = "week"
MONTH = "month"


def week_start(day: date) -> date:
    """Monday of the ISO week containing ``day``."""
    return day - timedelta(days=day.weekday())


def month_start(day: date) -> date:
    return day.replace(day=1)


def next_month(day: date) -> date:
    if day.month == 12:
        return date(day.year + 1, 1, 1)
    return date(day.year, day.month + 1, 1)


def usage_weighted_mean(
    buckets: Iterable[DailyBucket], metric: Callable[[DailyBucket], float | None]
) -> float | None:
    """Mean of ``metric`` weighted by usage; None when no used day defines it."""
    total = 0.0
    weight = 0.0
    for bucket in buckets:
        value = metric(bucket)
        if value is None or bucket.usage_seconds <= 0:
            continue
        total += value * bucket.usage_seconds
        weight += bucket.usage_seconds
    return total / weight if weight > 0 else None


def _pressure_median(b: DailyBucket) -> float | None:
    return b.pressure.median if b.pressure else None


def _pressure_p95(b: DailyBucket) -> float | None:
    return b.pressure.p95 if b.pressure else None


def _leak_median(b: DailyBucket) -> float | None:
    return b.leak.median if b.leak else None


def _leak_p95(b: DailyBucket) -> float | None:
    return b.leak.p95 if b.leak else None


def _tidal_volume(b: DailyBucket) -> float | None:
    return b.breath_stats.tidal_volume.median if b.breath_stats else None


def _resp_rate(b: DailyBucket) -> float | None:
    return b.breath_stats.respiratory_rate.median if b.breath_stats else None


def _minute_vent(b: DailyBucket) -> float | None:
    return b.breath_stats.minute_ventilation.median if b.breath_stats else None


def _flow_limitation(b: DailyBucket) -> float | None:
    return b.flow_limitation.median if b.flow_limitation else None


def rollup(
    period: str, start: date, end_exclusive: date, days: Sequence[DailyBucket]
) -> TrendBucket:
    """Reduce the daily buckets of one period."""
    counts: Counter[EventType] = Counter()
    for bucket in days:
        counts.update(bucket.event_counts)
    usage = sum(b.usage_seconds for b in days)

    return TrendBucket(
        period=period,
        start=start,
        end_exclusive=end_exclusive,
        days=tuple(days),
        usage_seconds=usage,
        event_counts=dict(counts),
        ahi=ahi_from_counts(counts, seconds_to_hours(usage)),
        snore_count=sum(b.snore_count for b in days),
        pressure_median=usage_weighted_mean(days, _pressure_median),
        pressure_p95=usage_weighted_mean(days, _pressure_p95),
        leak_median=usage_weighted_mean(days, _leak_median),
        leak_p95=usage_weighted_mean(days, _leak_p95),
        leak_percent_over_threshold=usage_weighted_mean(
            days, lambda b: b.leak_percent_over_threshold
        ),
        tidal_volume_median=usage_weighted_mean(days, _tidal_volume),
        resp_rate_median=usage_weighted_mean(days, _resp_rate),
        minute_vent_median=usage_weighted_mean(days, _minute_vent),
        flow_limitation_median=usage_weighted_mean(days, _flow_limitation),
        nights_used=sum(1 for b in days if b.usage_seconds > 0),
    )


def _group(
    buckets: Iterable[DailyBucket],
    period: str,
    start_of: Callable[[date], date],
    end_of: Callable[[date], date],
) -> list[TrendBucket]:
    groups: dict[date, list[DailyBucket]] = defaultdict(list)
    for bucket in buckets:
        groups[start_of(bucket.day)].append(bucket)
    return [
        rollup(period, start, end_of(start), sorted(groups[start], key=lambda b: b.day))
        for start in sorted(groups)
    ]


def weekly(buckets: Iterable[DailyBucket]) -> list[TrendBucket]:
    """ISO-week (Monday start) rollups, oldest first."""
    return _group(buckets, WEEK, week_start, lambda start: start + timedelta(days=7))


def monthly(buckets: Iterable[DailyBucket]) -> list[TrendBucket]:
    """Calendar-month rollups, oldest first."""
    return _group(buckets, MONTH, month_start, next_month)
