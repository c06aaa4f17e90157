"""
Synthetic test data generators for card files, flow waveforms and sessions.

Provides functions to build controlled, reproducible inputs for unit testing:
byte-exact chunk containers, EDF blobs and frame streams, plus breathing
waveforms and ready-made sessions.
"""

import struct
import zlib

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import numpy as np

from snorecard.models.events import Event, EventType, SignalSample, SignalType
from snorecard.models.session import Session, WaveformChannel
from snorecard.parsers.checksums import calculate_crc16

# 2024-03-10 22:00:00 UTC, a Sunday evening
NIGHT_START = datetime(2024, 3, 10, 22, 0, 0, tzinfo=timezone.utc)

# Payload sizes of the event codes used by the synthetic event chunks
DEFAULT_EVENT_SIZES = {
    0x01: 3,  # pressure set
    0x06: 3,  # obstructive apnea
    0x07: 3,  # clear airway
    0x0A: 3,  # hypopnea
    0x0D: 2,  # vibratory snore
    0x11: 5,  # statistics
    0x12: 4,  # snores at pressure (no delta prefix)
}


# =============================================================================
# Flow waveforms
# =============================================================================


def generate_sinusoidal_breath(
    duration: float = 4.0,
    amplitude: float = 30.0,
    sample_rate: float = 25.0,
    baseline: float = 0.0,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Generate a perfect sinusoidal breath waveform.

    Args:
        duration: Breath duration in seconds
        amplitude: Peak flow amplitude in L/min
        sample_rate: Sample rate in Hz
        baseline: Baseline offset in L/min

    Returns:
        Tuple of (timestamps, flow_values)
    """
    n_samples = int(round(duration * sample_rate))
    timestamps = np.arange(n_samples) / sample_rate
    flow_values = amplitude * np.sin(2 * np.pi * timestamps / duration) + baseline
    return timestamps, flow_values


def generate_breathing(
    n_breaths: int = 10,
    duration: float = 4.0,
    amplitude: float = 30.0,
    sample_rate: float = 25.0,
    flatness: float | None = None,
) -> np.ndarray:
    """
    Generate consecutive sinusoidal breaths.

    Args:
        n_breaths: Number of breath cycles
        duration: Duration of each breath in seconds
        amplitude: Peak flow amplitude in L/min
        sample_rate: Sample rate in Hz
        flatness: When set, inspiration is clipped at ``amplitude * (1 - flatness)``

    Returns:
        Flow values in L/min
    """
    per_breath = int(round(duration * sample_rate))
    t = np.arange(per_breath * n_breaths) / sample_rate
    flow = amplitude * np.sin(2 * np.pi * t / duration)
    if flatness is not None:
        flow = np.minimum(flow, amplitude * (1.0 - flatness))
    return flow


def make_flow_channel(
    samples: np.ndarray,
    start: datetime = NIGHT_START,
    sample_rate: float = 25.0,
    signal: SignalType = SignalType.FLOW,
) -> WaveformChannel:
    return WaveformChannel(start=start, sample_rate_hz=sample_rate, samples=samples, signal=signal)


# =============================================================================
# Sessions, events and samples
# =============================================================================


def samples_every(
    start: datetime,
    values: list[float],
    step_seconds: float = 1.0,
    signal: SignalType = SignalType.LEAK,
) -> list[SignalSample]:
    """Samples at a fixed step starting at ``start``."""
    return [
        SignalSample(time=start + timedelta(seconds=i * step_seconds), value=v, signal=signal)
        for i, v in enumerate(values)
    ]


def events_at(
    start: datetime,
    offsets_seconds: list[float],
    event_type: EventType = EventType.OBSTRUCTIVE_APNEA,
    value: float | None = None,
) -> list[Event]:
    """One event of ``event_type`` at each offset from ``start``."""
    return [
        Event(time=start + timedelta(seconds=s), event_type=event_type, value=value)
        for s in offsets_seconds
    ]


def make_session(
    start: datetime = NIGHT_START,
    hours: float = 1.0,
    events: list[Event] | tuple[Event, ...] = (),
    source: str | None = None,
    **channels,
) -> Session:
    """Session of ``hours`` starting at ``start``; extra keywords set channels."""
    return Session(
        start=start,
        end=start + timedelta(hours=hours),
        events=tuple(events),
        source=source,
        **channels,
    )


# =============================================================================
# Chunk containers
# =============================================================================


def chunk_header(
    version: int,
    block_size: int,
    header_type: int,
    family: int,
    family_version: int,
    ext: int,
    session_id: int,
    timestamp: int,
) -> bytes:
    """The 15-byte common chunk header."""
    return struct.pack(
        "<BHBBBBII",
        version,
        block_size,
        header_type,
        family,
        family_version,
        ext,
        session_id,
        timestamp,
    )


def build_chunk(
    body: bytes,
    *,
    version: int = 2,
    header_type: int = 0,
    family: int = 0,
    family_version: int = 6,
    ext: int = 2,
    session_id: int = 1,
    timestamp: int = 0,
    with_crc: bool | None = None,
) -> bytes:
    """
    Wrap ``body`` in a chunk header.

    Version 3 chunks get a trailing CRC32 over header and body unless
    ``with_crc`` says otherwise.
    """
    if with_crc is None:
        with_crc = version == 3
    block_size = 15 + len(body) + (4 if with_crc else 0)
    raw = chunk_header(
        version, block_size, header_type, family, family_version, ext, session_id, timestamp
    ) + bytes(body)
    if with_crc:
        raw += struct.pack("<I", zlib.crc32(raw) & 0xFFFFFFFF)
    return raw


def event_header_block(sizes: dict[int, int], version: int = 2) -> bytes:
    """Pair count, (code, size) pairs and, for version 3, a checksum byte."""
    out = bytes([len(sizes)]) + b"".join(bytes([code, size]) for code, size in sizes.items())
    if version == 3:
        out += b"\x00"
    return out


def event_entry(code: int, delta: int = 0, payload: bytes | list[int] = b"") -> bytes:
    """A code byte, a u16 delta-time and the payload."""
    return bytes([code]) + struct.pack("<H", delta) + bytes(payload)


def snores_at_pressure_entry(mode: int, pressure_tenth: int, count: int) -> bytes:
    """Code 0x12 carries no delta-time prefix."""
    return bytes([0x12, mode, pressure_tenth]) + struct.pack("<H", count)


def build_event_chunk(
    entries: list[bytes],
    *,
    sizes: dict[int, int] | None = None,
    version: int = 2,
    ext: int = 2,
    **header,
) -> bytes:
    """Event (ext 2) or settings (ext 1) record holding ``entries``."""
    sizes = DEFAULT_EVENT_SIZES if sizes is None else sizes
    body = event_header_block(sizes, version) + b"".join(entries)
    return build_chunk(body, version=version, header_type=0, ext=ext, **header)


def build_waveform_chunk(
    counts: np.ndarray | list[int],
    *,
    interval_seconds: int = 1,
    interleave: int = 25,
    version: int = 2,
    session_id: int = 1,
    timestamp: int = 0,
) -> bytes:
    """
    Waveform interval record carrying one flow signal.

    ``counts`` are raw signed 8-bit flow samples; a trailing partial
    interval is dropped.
    """
    data = np.asarray(counts, dtype=np.int8)
    interval_count = data.size // interleave
    data = data[: interval_count * interleave]
    extra = b"\x00" if version == 3 else b""
    body = (
        struct.pack("<HBB", interval_count, interval_seconds, 1)
        + bytes([0])
        + struct.pack("<H", interleave)
        + extra  # v3 descriptors are 4 bytes
        + b"\x00"  # always zero
        + extra  # v3 header checksum
        + data.tobytes()
    )
    return build_chunk(
        body,
        version=version,
        header_type=1,
        ext=5,
        session_id=session_id,
        timestamp=timestamp,
    )


def flow_counts(n_breaths: int = 15, duration: float = 4.0, sample_rate: int = 25) -> np.ndarray:
    """Sinusoidal breathing as raw int8 chunk counts (about +/-30 L/min)."""
    flow = generate_breathing(n_breaths, duration, amplitude=30.0, sample_rate=sample_rate)
    return np.round(flow / 1.095).astype(np.int8)


# =============================================================================
# EDF
# =============================================================================


@dataclass
class EdfSignal:
    """One EDF signal with its digital samples for every record."""

    label: str
    samples_per_record: int
    digital: np.ndarray
    unit: str = ""
    physical_min: float = -32768
    physical_max: float = 32767
    digital_min: int = -32768
    digital_max: int = 32767


def _field(value: object, width: int) -> bytes:
    return str(value).ljust(width)[:width].encode("latin-1")


def build_edf(
    start: datetime,
    signals: list[EdfSignal],
    record_duration: float = 1.0,
    declared_records: int | None = None,
) -> bytes:
    """
    Build an EDF blob.

    Args:
        start: Wall-clock start (tz-naive) written into the header
        signals: Signals; all must hold the same number of records
        record_duration: Seconds per data record
        declared_records: Record count written into the header (default: actual)

    Returns:
        File contents
    """
    ns = len(signals)
    records = len(signals[0].digital) // signals[0].samples_per_record if signals else 0
    header_bytes = 256 + 256 * ns
    fixed = (
        _field("0", 8)
        + _field("X X X X", 80)
        + _field("Startdate X X X X", 80)
        + _field(start.strftime("%d.%m.%y"), 8)
        + _field(start.strftime("%H.%M.%S"), 8)
        + _field(header_bytes, 8)
        + _field("", 44)
        + _field(records if declared_records is None else declared_records, 8)
        + _field(f"{record_duration:g}", 8)
        + _field(ns, 4)
    )

    def column(values: list[object], width: int) -> bytes:
        return b"".join(_field(v, width) for v in values)

    per_signal = (
        column([s.label for s in signals], 16)
        + column(["" for _ in signals], 80)
        + column([s.unit for s in signals], 8)
        + column([f"{s.physical_min:g}" for s in signals], 8)
        + column([f"{s.physical_max:g}" for s in signals], 8)
        + column([s.digital_min for s in signals], 8)
        + column([s.digital_max for s in signals], 8)
        + column(["" for _ in signals], 80)
        + column([s.samples_per_record for s in signals], 8)
        + column(["" for _ in signals], 32)
    )

    data = bytearray()
    for r in range(records):
        for s in signals:
            n = s.samples_per_record
            data += np.asarray(s.digital[r * n : (r + 1) * n], dtype="<i2").tobytes()
    return fixed + per_signal + bytes(data)


# =============================================================================
# Legacy frame streams
# =============================================================================


def build_frame(payload: bytes, with_crc: bool = True) -> bytes:
    """``[u16 length][payload][u16 crc16]`` frame."""
    raw = bytes(payload)
    if with_crc:
        raw += struct.pack("<H", calculate_crc16(raw))
    return struct.pack("<H", len(raw)) + raw


def subrecord(record_type: int, data: bytes, flags: int = 0) -> bytes:
    return struct.pack("<BBH", record_type, flags, len(data)) + bytes(data)


def scalar_record_data(code: int, epoch: int, raw: int) -> bytes:
    """Code, absolute Unix seconds and one int16 value."""
    return bytes([code]) + struct.pack("<Ih", epoch, raw)


def series_record_data(code: int, epoch: int, period: int, values: list[int]) -> bytes:
    """Code, absolute Unix seconds and a fixed-period int16 series."""
    return (
        bytes([code])
        + struct.pack("<IHH", epoch, period, len(values))
        + struct.pack(f"<{len(values)}h", *values)
    )
