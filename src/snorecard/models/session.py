"""
Session, waveform and breath models.

A Session is one therapy run as seen by the decoders. Sessions that span
several card files are fused by the merger into one logical session.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta

import numpy as np

from snorecard.models.events import (
    Event,
    SignalSample,
    SignalType,
    to_epoch,
    to_epoch_ms,
)


@dataclass(frozen=True, eq=False)
class WaveformChannel:
    """
    Fixed-rate amplitude samples for one high-rate signal.

    The sample buffer is copied to a read-only float32 array on construction.
    """

    start: datetime
    sample_rate_hz: float
    samples: np.ndarray
    signal: SignalType = SignalType.FLOW
    unit: str = "L/min"
    label: str = "Flow"

    def __post_init__(self) -> None:
        if self.sample_rate_hz <= 0:
            raise ValueError(f"sample_rate_hz must be positive, got {self.sample_rate_hz}")
        data = np.array(self.samples, dtype=np.float32, copy=True)
        data.setflags(write=False)
        object.__setattr__(self, "samples", data)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, WaveformChannel):
            return NotImplemented
        return (
            self.start == other.start
            and self.sample_rate_hz == other.sample_rate_hz
            and self.signal == other.signal
            and self.unit == other.unit
            and self.label == other.label
            and np.array_equal(self.samples, other.samples, equal_nan=True)
        )

    __hash__ = None  # type: ignore[assignment]

    @property
    def sample_count(self) -> int:
        return int(self.samples.size)

    @property
    def duration_seconds(self) -> float:
        return self.sample_count / self.sample_rate_hz

    @property
    def start_ms(self) -> int:
        return to_epoch_ms(self.start)

    @property
    def end_ms(self) -> int:
        """Exclusive end of the channel in Unix milliseconds."""
        return self.start_ms + int(round(self.duration_seconds * 1000))

    @property
    def end(self) -> datetime:
        return self.start + timedelta(seconds=self.duration_seconds)

    def times_ms(self) -> np.ndarray:
        """Per-sample timestamps in Unix milliseconds (float64)."""
        step = 1000.0 / self.sample_rate_hz
        return self.start_ms + np.arange(self.sample_count, dtype=np.float64) * step


@dataclass(frozen=True)
class Breath:
    """Per-breath ventilation metrics derived from a flow waveform."""

    start: datetime
    duration_seconds: float
    tidal_volume: float  # liters
    respiratory_rate: float  # breaths/min
    minute_ventilation: float  # L/min
    inspiratory_time: float  # seconds
    expiratory_time: float  # seconds
    ie_ratio: float
    flow_limitation: float | None = None  # 0..1

    @property
    def epoch(self) -> float:
        return to_epoch(self.start)


@dataclass(frozen=True)
class Session:
    """One therapy run with its events, signal channels and provenance."""

    start: datetime
    end: datetime
    events: tuple[Event, ...] = ()
    pressure_samples: tuple[SignalSample, ...] = ()
    exhale_pressure_samples: tuple[SignalSample, ...] = ()
    leak_samples: tuple[SignalSample, ...] = ()
    flow_samples: tuple[SignalSample, ...] = ()
    flex_samples: tuple[SignalSample, ...] = ()
    flow_waveform: WaveformChannel | None = None
    pressure_waveform: WaveformChannel | None = None
    leak_waveform: WaveformChannel | None = None
    flex_waveform: WaveformChannel | None = None
    breaths: tuple[Breath, ...] = ()
    source: str | None = None
    source_label: str | None = None
    session_id: int | None = None
    usage_seconds: int | None = None
    min_pressure_setting: float | None = None

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"Session end {self.end} precedes start {self.start}")
        for name in (
            "events",
            "pressure_samples",
            "exhale_pressure_samples",
            "leak_samples",
            "flow_samples",
            "flex_samples",
            "breaths",
        ):
            value = getattr(self, name)
            if not isinstance(value, tuple):
                object.__setattr__(self, name, tuple(value))

    __hash__ = None  # type: ignore[assignment]

    @property
    def duration_seconds(self) -> float:
        return (self.end - self.start).total_seconds()

    def samples(self, signal: SignalType) -> tuple[SignalSample, ...]:
        """Return the sample channel for ``signal``."""
        return {
            SignalType.PRESSURE: self.pressure_samples,
            SignalType.EXHALE_PRESSURE: self.exhale_pressure_samples,
            SignalType.LEAK: self.leak_samples,
            SignalType.FLOW: self.flow_samples,
            SignalType.FLEX_ACTIVE: self.flex_samples,
        }[signal]

    def waveform(self, signal: SignalType) -> WaveformChannel | None:
        """Return the high-rate channel for ``signal`` if the session has one."""
        return {
            SignalType.FLOW: self.flow_waveform,
            SignalType.PRESSURE: self.pressure_waveform,
            SignalType.LEAK: self.leak_waveform,
            SignalType.FLEX_ACTIVE: self.flex_waveform,
        }.get(signal)

    def sample_count(self) -> int:
        return sum(len(self.samples(signal)) for signal in SignalType)

    def waveform_sample_count(self) -> int:
        return sum(
            wf.sample_count
            for wf in (
                self.flow_waveform,
                self.pressure_waveform,
                self.leak_waveform,
                self.flex_waveform,
            )
            if wf is not None
        )

    def with_breaths(self, breaths: list[Breath] | tuple[Breath, ...]) -> "Session":
        return replace(self, breaths=tuple(breaths))
