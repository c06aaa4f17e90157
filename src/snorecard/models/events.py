"""
Discrete events and low-rate signal samples.

These are the primitives the decoders emit. They are produced in bulk (one per
device record), so they are frozen dataclasses rather than pydantic models.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class EventType(Enum):
    """Closed set of discrete event kinds."""

    OBSTRUCTIVE_APNEA = "OA"
    CLEAR_AIRWAY = "CA"  # Central / clear-airway apnea
    HYPOPNEA = "H"
    FLOW_LIMITATION = "FL"
    RERA = "RE"  # Respiratory Effort Related Arousal
    VIBRATORY_SNORE = "VS"
    VIBRATORY_SNORE_2 = "VS2"
    SNORE = "SN"  # Snore count reported by statistics records
    LARGE_LEAK = "LL"
    PERIODIC_BREATHING = "PB"
    VARIABLE_BREATHING = "VB"
    PRESSURE_PULSE = "PP"
    PRESSURE_CHANGE = "PC"
    SNORES_AT_PRESSURE = "SAP"
    BREATH_NOT_DETECTED = "BND"
    UNKNOWN = "UNK"


# Events counted by the apnea-hypopnea index
AHI_EVENT_TYPES = frozenset(
    {EventType.OBSTRUCTIVE_APNEA, EventType.CLEAR_AIRWAY, EventType.HYPOPNEA}
)

# Events that represent snoring; their value carries the snore count
SNORE_EVENT_TYPES = frozenset(
    {EventType.SNORE, EventType.VIBRATORY_SNORE, EventType.VIBRATORY_SNORE_2}
)


class SignalType(Enum):
    """Continuous low-rate channels."""

    PRESSURE = "pressure"  # cmH2O
    EXHALE_PRESSURE = "exhale_pressure"  # cmH2O
    LEAK = "leak"  # L/min
    FLOW = "flow"  # L/min
    FLEX_ACTIVE = "flex"  # 0/1


def utc_from_epoch(seconds: float) -> datetime:
    """Convert Unix seconds to an aware UTC datetime."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def to_epoch(dt: datetime) -> float:
    """Convert a datetime to Unix seconds (naive values are treated as UTC)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def to_epoch_ms(dt: datetime) -> int:
    """Convert a datetime to integer Unix milliseconds."""
    return int(round(to_epoch(dt) * 1000))


def _frozen_meta(meta: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(meta or {}))


@dataclass(frozen=True)
class Event:
    """A discrete occurrence such as an apnea or a snore."""

    time: datetime
    event_type: EventType
    value: float | None = None
    code: int | None = None
    meta: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "meta", _frozen_meta(self.meta))

    def __hash__(self) -> int:
        return hash((self.time, self.event_type, self.value, self.code))

    @property
    def epoch(self) -> float:
        return to_epoch(self.time)


@dataclass(frozen=True)
class SignalSample:
    """One (timestamp, value, signal) triple of a continuous channel."""

    time: datetime
    value: float
    signal: SignalType

    @property
    def epoch(self) -> float:
        return to_epoch(self.time)


@dataclass(frozen=True)
class TimePoint:
    """A timestamped value in a derived series; None marks a gap."""

    time: datetime
    value: float | None
