"""
Legacy length-prefixed frame streams.

Older card dumps store ``[u16 length][data][u16 crc16]`` frames. Each frame's
payload may pack several ``[u8 type][u8 flags][u16 length][data]``
sub-records; when that layout does not fit, the whole payload is one record
of type 0xFF. Records are then decoded with a generic heuristic: a code byte,
a timestamp (absolute Unix seconds or a minute offset) and either a scalar
or a fixed-period series of int16 values.
"""

import logging

from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from snorecard.constants import FrameConstants
from snorecard.models.events import (
    Event,
    EventType,
    SignalSample,
    SignalType,
    utc_from_epoch,
)
from snorecard.models.session import Session
from snorecard.parsers.byte_reader import LittleEndianReader, u16_at
from snorecard.parsers.checksums import verify_crc16

logger = logging.getLogger(__name__)

# Anchor for records that only carry a minute offset
FALLBACK_START = datetime(2000, 1, 1, tzinfo=timezone.utc)

EVENT_CODES: dict[int, EventType] = {
    0x01: EventType.OBSTRUCTIVE_APNEA,
    0x02: EventType.CLEAR_AIRWAY,
    0x03: EventType.HYPOPNEA,
    0x10: EventType.FLOW_LIMITATION,
    0x11: EventType.SNORE,
    0x12: EventType.PERIODIC_BREATHING,
    0x13: EventType.RERA,
    0x14: EventType.VIBRATORY_SNORE,
    0x15: EventType.VIBRATORY_SNORE_2,
    0x16: EventType.BREATH_NOT_DETECTED,
    0x20: EventType.LARGE_LEAK,
}

SAMPLE_CODES: dict[int, SignalType] = {
    0x30: SignalType.PRESSURE,
    0x31: SignalType.LEAK,
    0x32: SignalType.FLOW,
}

PRESSURE_CODE = 0x30
FLOW_CODE = 0x32


@dataclass(frozen=True)
class Frame:
    """One length-prefixed frame."""

    offset: int
    payload: bytes
    crc_ok: bool


@dataclass(frozen=True)
class Record:
    """One logical record inside a frame payload."""

    frame_offset: int
    record_type: int
    flags: int
    data: bytes


def iter_frames(data: bytes) -> Iterator[Frame]:
    """
    Iterate the length-prefixed frames of a buffer.

    Stops on a zero length or a length past the end of the buffer. A trailing
    u16 that matches the CRC16 of the preceding bytes is stripped.
    """
    reader = LittleEndianReader(data)
    for _ in range(FrameConstants.MAX_FRAMES):
        if reader.remaining < 2:
            return
        offset = reader.pos
        length = reader.read_uint16()
        if length == 0 or length > reader.remaining:
            return
        raw = reader.read_bytes(length)

        crc_ok = False
        payload = raw
        if len(raw) >= 4 and verify_crc16(raw[:-2], u16_at(raw, len(raw) - 2)):
            crc_ok = True
            payload = raw[:-2]
        yield Frame(offset=offset, payload=payload, crc_ok=crc_ok)


def looks_like_frame_stream(data: bytes) -> bool:
    """
    Check whether a buffer is exactly a sequence of frames.

    The frames must tile the whole buffer and at least one of them must carry
    a verifying CRC16, which keeps random data from matching.
    """
    if len(data) < 6:
        return False
    consumed = 0
    any_crc = False
    for frame in iter_frames(data):
        consumed = frame.offset + 2 + len(frame.payload) + (2 if frame.crc_ok else 0)
        any_crc = any_crc or frame.crc_ok
    return any_crc and consumed == len(data)


def split_records(frame: Frame) -> list[Record]:
    """Split a frame payload into sub-records, or wrap it as one 0xFF record."""
    payload = frame.payload
    fallback = [Record(frame.offset, FrameConstants.UNKNOWN_RECORD_TYPE, 0, payload)]
    if len(payload) < FrameConstants.SUBRECORD_HEADER_SIZE:
        return fallback

    reader = LittleEndianReader(payload)
    records: list[Record] = []
    while reader.remaining >= FrameConstants.SUBRECORD_HEADER_SIZE:
        record_type = reader.read_uint8()
        flags = reader.read_uint8()
        length = reader.read_uint16()
        if length == 0 or length > reader.remaining:
            break
        records.append(Record(frame.offset, record_type, flags, reader.read_bytes(length)))
        if len(records) > FrameConstants.MAX_SUBRECORDS or reader.eof:
            break
        if reader.remaining >= FrameConstants.SUBRECORD_HEADER_SIZE:
            next_length = reader.peek_uint16(2)
            if next_length == 0 or next_length > reader.remaining - FrameConstants.SUBRECORD_HEADER_SIZE:
                break

    return records or fallback


def _scale(code: int, raw: int) -> float:
    return raw / 100.0 if code == FLOW_CODE else raw / 10.0


@dataclass
class DecodedRecords:
    """Events and samples recovered from a frame stream."""

    events: list[Event]
    samples: dict[SignalType, list[SignalSample]]

    def times(self) -> list[datetime]:
        out = [e.time for e in self.events]
        for samples in self.samples.values():
            out.extend(s.time for s in samples)
        return out


def decode_record(record: Record, out: DecodedRecords) -> None:
    """Decode one generic record into ``out``."""
    data = record.data
    if len(data) < 3:
        return
    reader = LittleEndianReader(data)
    code = reader.read_uint8()

    when: datetime | None = None
    if reader.remaining >= 4:
        seconds = reader.read_uint32()
        if FrameConstants.MIN_UNIX_SECONDS <= seconds <= FrameConstants.MAX_UNIX_SECONDS:
            when = utc_from_epoch(seconds)
    if when is None:
        if reader.remaining < 2:
            return
        when = FALLBACK_START + timedelta(minutes=reader.read_uint16())

    if reader.remaining >= 4:
        period = reader.peek_uint16()
        count = reader.peek_uint16(2)
        if (
            0 < period <= FrameConstants.MAX_SERIES_PERIOD_SECONDS
            and 0 < count <= FrameConstants.MAX_SERIES_COUNT
            and reader.remaining - 4 >= count * 2
        ):
            reader.skip(4)
            values = [reader.read_int16() for _ in range(count)]
            _emit_series(code, record.flags, when, period, values, out)
            return

    value = _scale(code, reader.read_int16()) if reader.remaining >= 2 else None
    if code in SAMPLE_CODES and code != PRESSURE_CODE and value is not None:
        signal = SAMPLE_CODES[code]
        out.samples[signal].append(SignalSample(time=when, value=value, signal=signal))
        return

    if code == PRESSURE_CODE:
        event_type = EventType.PRESSURE_CHANGE
    else:
        event_type = EVENT_CODES.get(code, EventType.UNKNOWN)
    out.events.append(
        Event(time=when, event_type=event_type, value=value, code=code, meta={"flags": record.flags})
    )


def _emit_series(
    code: int,
    flags: int,
    when: datetime,
    period: int,
    values: list[int],
    out: DecodedRecords,
) -> None:
    signal = SAMPLE_CODES.get(code)
    if signal is None and values and all(v in (0, 1, 10) for v in values):
        signal = SignalType.FLEX_ACTIVE

    for i, raw in enumerate(values):
        t = when + timedelta(seconds=period * i)
        if signal is SignalType.FLEX_ACTIVE:
            out.samples[signal].append(SignalSample(time=t, value=0.0 if raw == 0 else 1.0, signal=signal))
        elif signal is not None:
            out.samples[signal].append(SignalSample(time=t, value=_scale(code, raw), signal=signal))
        else:
            out.events.append(
                Event(
                    time=t,
                    event_type=EVENT_CODES.get(code, EventType.UNKNOWN),
                    value=_scale(code, raw),
                    code=code,
                    meta={"flags": flags},
                )
            )


class FrameStreamDecoder:
    """Decode a legacy frame stream into a single session."""

    parser_id = "frames"

    def decode(self, data: bytes, source: str | None = None) -> tuple[Session | None, int, int]:
        """
        Decode every frame.

        Args:
            data: File contents
            source: Source path or label

        Returns:
            (session or None, frames with a verifying CRC, frames without)
        """
        out = DecodedRecords(events=[], samples={signal: [] for signal in SignalType})
        crc_ok = crc_failed = 0
        for frame in iter_frames(data):
            if frame.crc_ok:
                crc_ok += 1
            else:
                crc_failed += 1
            for record in split_records(frame):
                decode_record(record, out)

        times = out.times()
        logger.debug(
            f"Frame stream: {crc_ok + crc_failed} frames ({crc_ok} CRC ok), "
            f"{len(out.events)} events, {sum(len(s) for s in out.samples.values())} samples"
        )
        if not times:
            return None, crc_ok, crc_failed

        start = min(times)
        end = max(times) + timedelta(minutes=1)
        by_time = sorted(out.events, key=lambda e: e.time)
        session = Session(
            start=start,
            end=end,
            events=tuple(by_time),
            pressure_samples=tuple(sorted(out.samples[SignalType.PRESSURE], key=lambda s: s.time)),
            leak_samples=tuple(sorted(out.samples[SignalType.LEAK], key=lambda s: s.time)),
            flow_samples=tuple(sorted(out.samples[SignalType.FLOW], key=lambda s: s.time)),
            flex_samples=tuple(sorted(out.samples[SignalType.FLEX_ACTIVE], key=lambda s: s.time)),
            source=source,
            source_label="frames",
            usage_seconds=int((end - start).total_seconds()),
        )
        return session, crc_ok, crc_failed
