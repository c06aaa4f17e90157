"""
Minute-resolution series over a bucket's day window.

All series here are indexed by minute from a day-start instant. The index
mapping is kept in small pure functions so boundary behaviour (events at
the day edge, slices that cross it) can be tested on its own.
"""

import math

from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta

from snorecard.constants import MINUTES_PER_DAY, SECONDS_PER_HOUR, SECONDS_PER_MINUTE
from snorecard.models.events import AHI_EVENT_TYPES, SNORE_EVENT_TYPES, Event, TimePoint


def minute_index(epoch: float, day_start_epoch: float) -> int:
    """Minute offset of ``epoch`` from the day start (negative before it)."""
    return math.floor((epoch - day_start_epoch) / SECONDS_PER_MINUTE)


def window_minutes(
    day_start_epoch: float,
    next_day_start_epoch: float,
    latest_end_epoch: float | None = None,
) -> int:
    """
    Length in minutes of a bucket's minute series.

    The window runs from local midnight to the next local midnight, so a
    daylight-saving day has 1380 or 1500 minutes. It is stretched to the
    end of the latest slice when a session runs past the next midnight.
    """
    end = next_day_start_epoch
    if latest_end_epoch is not None:
        end = max(end, latest_end_epoch)
    return max(math.ceil((end - day_start_epoch) / SECONDS_PER_MINUTE), 0)


def usage_seconds_per_minute(
    slices: Iterable[tuple[float, float]],
    day_start_epoch: float,
    minutes: int = MINUTES_PER_DAY,
) -> list[float]:
    """
    Seconds of usage falling in each minute of the day.

    Slices are clamped to the day window; each minute is capped at 60.
    """
    out = [0.0] * minutes
    day_end = day_start_epoch + minutes * SECONDS_PER_MINUTE
    for start, end in slices:
        cur = max(start, day_start_epoch)
        end = min(end, day_end)
        while cur < end:
            index = minute_index(cur, day_start_epoch)
            if not 0 <= index < minutes:
                break
            minute_end = day_start_epoch + (index + 1) * SECONDS_PER_MINUTE
            segment_end = min(end, minute_end)
            out[index] += segment_end - cur
            cur = segment_end
    return [min(max(v, 0.0), float(SECONDS_PER_MINUTE)) for v in out]


def ahi_event_counts_per_minute(
    events: Iterable[Event],
    day_start_epoch: float,
    minutes: int = MINUTES_PER_DAY,
) -> list[int]:
    """Count of apnea/hypopnea events starting in each minute."""
    out = [0] * minutes
    for event in events:
        if event.event_type not in AHI_EVENT_TYPES:
            continue
        index = minute_index(event.epoch, day_start_epoch)
        if 0 <= index < minutes:
            out[index] += 1
    return out


def rolling_ahi(
    usage_per_minute: Sequence[float],
    events_per_minute: Sequence[int],
    day_start: datetime,
    window_minutes: int,
) -> list[TimePoint]:
    """
    Trailing-window AHI for every minute of the day.

    The point at minute i covers minutes (i - window + 1) .. i. Windows
    without usage are None.
    """
    minutes = len(usage_per_minute)
    if minutes != len(events_per_minute) or window_minutes <= 0:
        return []

    use_prefix = [0.0] * (minutes + 1)
    event_prefix = [0] * (minutes + 1)
    for i in range(minutes):
        use_prefix[i + 1] = use_prefix[i] + usage_per_minute[i]
        event_prefix[i + 1] = event_prefix[i] + events_per_minute[i]

    out = []
    for i in range(minutes):
        lo = max(0, i - window_minutes + 1)
        used = use_prefix[i + 1] - use_prefix[lo]
        count = event_prefix[i + 1] - event_prefix[lo]
        value = count / (used / SECONDS_PER_HOUR) if used > 0 else None
        out.append(TimePoint(time=day_start + timedelta(minutes=i), value=value))
    return out


def snore_counts_per_minute(
    events: Iterable[Event],
    day_start_epoch: float,
    minutes: int = MINUTES_PER_DAY,
) -> list[int]:
    """
    Snore intensity per minute.

    Snore-type events add their rounded value; a missing or non-positive
    value adds one.
    """
    out = [0] * minutes
    for event in events:
        if event.event_type not in SNORE_EVENT_TYPES:
            continue
        index = minute_index(event.epoch, day_start_epoch)
        if not 0 <= index < minutes:
            continue
        amount = round(event.value) if event.value is not None else 1
        out[index] += amount if amount > 0 else 1
    return out
