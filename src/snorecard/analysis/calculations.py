"""Index and rate calculations for therapy events."""

from collections import Counter
from collections.abc import Iterable, Mapping

from snorecard.constants import SECONDS_PER_HOUR
from snorecard.models.events import SNORE_EVENT_TYPES, Event, EventType


def calculate_ahi(
    obstructive: int, hypopnea: int, central: int, duration_hours: float
) -> float | None:
    """
    Calculate Apnea-Hypopnea Index (AHI).

    AHI = (Obstructive Apneas + Hypopneas + Central Apneas) / Hours

    Args:
        obstructive: Count of obstructive apneas
        hypopnea: Count of hypopneas
        central: Count of central/clear airway apneas
        duration_hours: Usage in hours

    Returns:
        AHI value (events per hour), or None without usage
    """
    if duration_hours <= 0:
        return None

    total_events = obstructive + hypopnea + central
    return total_events / duration_hours


def calculate_rdi(
    obstructive: int, hypopnea: int, central: int, rera: int, duration_hours: float
) -> float | None:
    """
    Calculate Respiratory Disturbance Index (RDI).

    RDI = (Obstructive Apneas + Hypopneas + Central Apneas + RERA) / Hours

    Args:
        obstructive: Count of obstructive apneas
        hypopnea: Count of hypopneas
        central: Count of central/clear airway apneas
        rera: Count of respiratory effort related arousals
        duration_hours: Usage in hours

    Returns:
        RDI value (events per hour), or None without usage
    """
    if duration_hours <= 0:
        return None

    total_events = obstructive + hypopnea + central + rera
    return total_events / duration_hours


def events_per_hour(count: float, duration_hours: float) -> float | None:
    """Rate of ``count`` over ``duration_hours``; None without usage."""
    if duration_hours <= 0:
        return None
    return count / duration_hours


def seconds_to_hours(seconds: float) -> float:
    return seconds / SECONDS_PER_HOUR


def count_events(events: Iterable[Event]) -> dict[EventType, int]:
    """Count events per type."""
    return dict(Counter(event.event_type for event in events))


def ahi_from_counts(counts: Mapping[EventType, int], duration_hours: float) -> float | None:
    """AHI from per-type event counts."""
    return calculate_ahi(
        counts.get(EventType.OBSTRUCTIVE_APNEA, 0),
        counts.get(EventType.HYPOPNEA, 0),
        counts.get(EventType.CLEAR_AIRWAY, 0),
        duration_hours,
    )


def rdi_from_counts(counts: Mapping[EventType, int], duration_hours: float) -> float | None:
    """RDI from per-type event counts."""
    return calculate_rdi(
        counts.get(EventType.OBSTRUCTIVE_APNEA, 0),
        counts.get(EventType.HYPOPNEA, 0),
        counts.get(EventType.CLEAR_AIRWAY, 0),
        counts.get(EventType.RERA, 0),
        duration_hours,
    )


def snore_total(events: Iterable[Event]) -> float:
    """
    Total snore count.

    Snore-type events carry their count as value; a missing value counts as one.
    """
    total = 0.0
    for event in events:
        if event.event_type in SNORE_EVENT_TYPES:
            total += event.value if event.value is not None else 1.0
    return total
