"""
Chunk container decoder.

Card files (.000 - .005) are sequences of self-delimited chunks. Every chunk
starts with a 15-byte common header:

    [0]      format version (2 or 3)
    [1..2]   block size, u16le, includes the header
    [3]      header type: 0 = event record, 1 = interval/waveform record
    [4]      device family
    [5]      family version
    [6]      extension / sub-type
    [7..10]  session id, u32le
    [11..14] Unix timestamp, u32le

Event records carry a header-data block mapping each event code to its
payload size. Interval records carry usage intervals and, for the waveform
sub-type, interleaved signed 8-bit flow samples.

A truncated or malformed tail stops iteration at the last complete chunk; an
unknown event code triggers a bounded resync instead of abandoning the chunk.
"""

import logging

from dataclasses import dataclass, field
from datetime import datetime

import numpy as np

from snorecard.constants import ChunkFormatConstants as CF
from snorecard.constants import EventCode
from snorecard.models.events import (
    Event,
    EventType,
    SignalSample,
    SignalType,
    utc_from_epoch,
)
from snorecard.models.session import Session, WaveformChannel
from snorecard.parsers.byte_reader import u16_at, u32_at
from snorecard.parsers.checksums import verify_crc32
from snorecard.parsers.types import ChunkHeader, EventStreamResult, EventStreamStatus

logger = logging.getLogger(__name__)


# Codes whose payload starts with an "elapsed seconds" byte: event time is the
# running epoch minus that byte. Value is (event type, payload index, min size).
ELAPSED_EVENT_CODES: dict[int, tuple[EventType, int, int]] = {
    EventCode.RERA: (EventType.RERA, 0, 3),
    EventCode.OBSTRUCTIVE_APNEA: (EventType.OBSTRUCTIVE_APNEA, 0, 3),
    EventCode.CLEAR_AIRWAY: (EventType.CLEAR_AIRWAY, 0, 3),
    EventCode.HYPOPNEA: (EventType.HYPOPNEA, 0, 3),
    EventCode.HYPOPNEA_VARIANT: (EventType.HYPOPNEA, 1, 4),
    EventCode.FLOW_LIMITATION: (EventType.FLOW_LIMITATION, 0, 3),
    EventCode.VARIABLE_BREATHING: (EventType.VARIABLE_BREATHING, 0, 3),
    EventCode.PERIODIC_BREATHING: (EventType.PERIODIC_BREATHING, 0, 3),
    EventCode.LARGE_LEAK: (EventType.LARGE_LEAK, 0, 3),
    EventCode.HYPOPNEA_ALT_1: (EventType.HYPOPNEA, 0, 3),
    EventCode.HYPOPNEA_ALT_2: (EventType.HYPOPNEA, 0, 3),
}


def looks_like_chunk(data: bytes) -> bool:
    """
    Check whether a buffer starts with a plausible chunk header.

    Requires at least 16 bytes, version 2 or 3, a block size between 16 and
    the buffer length, and header type 0 or 1.
    """
    if len(data) < CF.MIN_CHUNK_SIZE:
        return False
    if data[0] not in CF.SUPPORTED_VERSIONS:
        return False
    block_size = u16_at(data, 1)
    if block_size < CF.MIN_CHUNK_SIZE or block_size > len(data):
        return False
    return data[3] in (CF.HEADER_TYPE_EVENT, CF.HEADER_TYPE_INTERVAL)


def parse_normal_header(
    data: bytes, header: ChunkHeader
) -> tuple[int, dict[int, int]] | None:
    """
    Parse the header-data block of an event record.

    Layout after the common header: one length byte N, then N (code, size)
    pairs, then (version 3 only) one checksum byte.

    Returns:
        (data_start, code -> payload size) or None if the block overruns the chunk
    """
    pos = header.offset
    if pos + CF.MIN_CHUNK_SIZE > len(data):
        return None

    pair_count = data[pos + CF.COMMON_HEADER_SIZE]
    pairs_start = pos + CF.MIN_CHUNK_SIZE
    pairs_end = pairs_start + pair_count * 2
    data_start = pairs_end + (1 if header.version == 3 else 0)
    if data_start > header.end or pairs_end > len(data):
        return None

    sizes = {data[i]: data[i + 1] for i in range(pairs_start, pairs_end, 2)}
    return data_start, sizes


def _resync(data: bytes, start: int, limit: int, sizes: dict[int, int]) -> int | None:
    """Find the next known code within the resync window."""
    stop = min(limit, start + CF.RESYNC_WINDOW_BYTES)
    for i in range(start, stop):
        if data[i] in sizes:
            return i
    return None


def _clamp_epoch(epoch: int) -> int:
    return epoch if epoch > 0 else 0


def _pick_flex_tenth(payload: bytes) -> int:
    """
    Choose the flex pressure byte of a statistics record.

    Prefer payload[2]; otherwise the first payload[1:] byte that looks like a
    pressure in tenths of cmH2O; otherwise payload[1].
    """
    lo, hi = CF.FLEX_TENTH_MIN, CF.FLEX_TENTH_MAX
    if len(payload) >= 3 and lo <= payload[2] <= hi:
        return payload[2]
    for value in payload[1:]:
        if lo <= value <= hi:
            return value
    return payload[1]


@dataclass
class _StreamCollector:
    events: list[Event] = field(default_factory=list)
    pressure: list[SignalSample] = field(default_factory=list)
    exhale: list[SignalSample] = field(default_factory=list)
    leak: list[SignalSample] = field(default_factory=list)

    def event(
        self,
        epoch: int,
        event_type: EventType,
        value: float | None,
        code: int,
        meta: dict | None = None,
    ) -> None:
        self.events.append(
            Event(
                time=utc_from_epoch(epoch),
                event_type=event_type,
                value=value,
                code=code,
                meta=meta or {},
            )
        )

    def sample(self, target: list[SignalSample], epoch: int, value: float, signal: SignalType) -> None:
        target.append(SignalSample(time=utc_from_epoch(epoch), value=value, signal=signal))


def _decode_entry(
    out: _StreamCollector, code: int, size: int, payload: bytes, epoch: int
) -> None:
    """Translate one (code, payload) entry into events and samples."""
    if code in ELAPSED_EVENT_CODES:
        event_type, index, min_size = ELAPSED_EVENT_CODES[code]
        if size >= min_size and len(payload) > index:
            elapsed = payload[index]
            out.event(_clamp_epoch(epoch - elapsed), event_type, float(elapsed), code)
        return

    if code == EventCode.PRESSURE_PULSE:
        if size >= 3 and payload:
            out.event(_clamp_epoch(epoch), EventType.PRESSURE_PULSE, float(payload[0]), code)
    elif code == EventCode.VIBRATORY_SNORE:
        if size == 2:
            out.event(_clamp_epoch(epoch), EventType.VIBRATORY_SNORE, 1.0, code)
    elif code == EventCode.SNORES_AT_PRESSURE:
        if size >= 4 and len(payload) >= 4:
            mode, pressure_tenth = payload[0], payload[1]
            count = u16_at(payload, 2)
            when = _clamp_epoch(epoch)
            if count > 0:
                out.event(when, EventType.SNORE, float(count), code)
            out.event(
                when,
                EventType.SNORES_AT_PRESSURE,
                float(count),
                code,
                meta={"mode": mode, "pressure_tenth": pressure_tenth},
            )
    elif code == EventCode.PRESSURE_SET:
        if size >= 3 and payload:
            out.sample(out.pressure, epoch, payload[0] / 10.0, SignalType.PRESSURE)
    elif code == EventCode.BILEVEL_PRESSURE_SET:
        if size >= 4 and len(payload) >= 2:
            out.sample(out.pressure, epoch, payload[1] / 10.0, SignalType.PRESSURE)
    elif code == EventCode.STATISTICS:
        if len(payload) >= 2:
            if len(payload) >= 3 and payload[1] > 0:
                out.event(_clamp_epoch(epoch), EventType.SNORE, float(payload[1]), code)
            out.sample(out.leak, epoch, float(payload[0]), SignalType.LEAK)
            out.sample(
                out.exhale,
                epoch,
                _pick_flex_tenth(payload) / 10.0,
                SignalType.EXHALE_PRESSURE,
            )


def walk_event_stream(
    data: bytes,
    start: int,
    end: int,
    sizes: dict[int, int],
    epoch: int,
) -> EventStreamResult:
    """
    Walk an event stream of (code, payload) entries.

    Each entry is a code byte followed by ``sizes[code]`` bytes; that size
    includes a u16 delta-time prefix (absent for snores-at-pressure) which
    advances the running epoch.

    On an unknown code the walk scans at most 24 bytes ahead for a known code
    and continues from there; if none is found the stream ends. An entry whose
    payload would run past ``end`` also ends the stream.

    Args:
        data: Whole file buffer
        start: First entry offset
        end: Exclusive end of the stream (chunk end)
        sizes: Code -> payload size table from the header-data block
        epoch: Chunk timestamp (Unix seconds)

    Returns:
        EventStreamResult, PARTIAL_OK when a resync happened
    """
    end = min(end, len(data))
    out = _StreamCollector()
    first_unknown: int | None = None
    running = epoch
    p = start

    while p < end:
        code = data[p]
        p += 1

        if code not in sizes:
            if first_unknown is None:
                first_unknown = code
                logger.debug(f"Unknown event code 0x{code:02x} at offset {p - 1}, resyncing")
            next_pos = _resync(data, p, end, sizes)
            if next_pos is None:
                break
            p = next_pos
            continue

        size = sizes[code]
        if p + size > end:
            break

        payload_start = p
        if code not in CF.NO_DELTA_CODES:
            if p + 2 > end:
                break
            running += u16_at(data, p)
            p += 2

        payload = data[p : payload_start + size] if payload_start + size > p else b""
        _decode_entry(out, code, size, payload, running)
        p = payload_start + size

    status = EventStreamStatus.PARTIAL_OK if first_unknown is not None else EventStreamStatus.OK
    return EventStreamResult(
        status=status,
        events=tuple(out.events),
        pressure_samples=tuple(out.pressure),
        exhale_pressure_samples=tuple(out.exhale),
        leak_samples=tuple(out.leak),
        first_unknown_code=first_unknown,
        end_offset=min(p, end),
    )


def collect_pressure_candidates(
    data: bytes, start: int, end: int, sizes: dict[int, int]
) -> list[float]:
    """
    Scan a settings stream for half-cmH2O pressure values.

    Payload bytes between 8 and 40 are read as raw / 2 cmH2O. The walk stops
    at the first unknown code.
    """
    end = min(end, len(data))
    candidates: list[float] = []
    p = start
    while p < end:
        code = data[p]
        p += 1
        if code not in sizes:
            break
        size = sizes[code]
        if p + size > end:
            break
        payload_start = p
        if code not in CF.NO_DELTA_CODES:
            if p + 2 > end:
                break
            p += 2
        for raw in data[p : payload_start + size]:
            if CF.SETTINGS_HALF_CM_MIN <= raw <= CF.SETTINGS_HALF_CM_MAX:
                candidates.append(raw / 2.0)
        p = payload_start + size
    return candidates


def median_setting(candidates: list[float]) -> float | None:
    """Upper median of the candidates (``sorted[n // 2]``)."""
    if not candidates:
        return None
    ordered = sorted(candidates)
    return ordered[len(ordered) // 2]


def calibrate_therapy_pressure(
    exhale_samples: list[SignalSample], min_setting: float | None
) -> list[SignalSample]:
    """
    Derive therapy-pressure samples from exhale (flex) pressure averages.

    The exhale series is shifted so its minimum matches the configured
    minimum pressure, or ``round((epap_min + 2) * 2) / 2`` without one.
    """
    if not exhale_samples:
        return []
    epap_min = min(s.value for s in exhale_samples)
    if min_setting is not None:
        baseline = min_setting
    else:
        baseline = round((epap_min + CF.BASELINE_EPAP_OFFSET) * 2) / 2.0
    offset = baseline - epap_min
    return [
        SignalSample(time=s.time, value=s.value + offset, signal=SignalType.PRESSURE)
        for s in exhale_samples
    ]


def _by_time(item: Event | SignalSample) -> datetime:
    return item.time


@dataclass
class _SessionAccumulator:
    """Mutable per-session state while chunks are being read."""

    session_id: int
    first_epoch: int | None = None
    last_epoch: int | None = None
    usage_seconds: int = 0
    events: list[Event] = field(default_factory=list)
    pressure: list[SignalSample] = field(default_factory=list)
    exhale: list[SignalSample] = field(default_factory=list)
    leak: list[SignalSample] = field(default_factory=list)
    flow_parts: list[np.ndarray] = field(default_factory=list)
    flow_start_epoch: int | None = None
    flow_rate_hz: float | None = None
    pressure_candidates: list[float] = field(default_factory=list)

    def touch(self, epoch: int) -> None:
        if self.first_epoch is None or epoch < self.first_epoch:
            self.first_epoch = epoch
        if self.last_epoch is None or epoch > self.last_epoch:
            self.last_epoch = epoch

    def absorb(self, stream: EventStreamResult) -> None:
        self.events.extend(stream.events)
        self.pressure.extend(stream.pressure_samples)
        self.exhale.extend(stream.exhale_pressure_samples)
        self.leak.extend(stream.leak_samples)

    def build(self, source: str | None) -> Session | None:
        if self.first_epoch is None or self.last_epoch is None:
            return None

        events = sorted(self.events, key=_by_time)
        exhale = sorted(self.exhale, key=_by_time)
        leak = sorted(self.leak, key=_by_time)
        setpoints = sorted(self.pressure, key=_by_time)

        min_setting = median_setting(self.pressure_candidates)
        therapy = setpoints if setpoints else calibrate_therapy_pressure(exhale, min_setting)

        start = utc_from_epoch(self.first_epoch)
        if self.usage_seconds > 0:
            end = utc_from_epoch(self.first_epoch + self.usage_seconds)
        else:
            end = utc_from_epoch(self.last_epoch)

        flow_waveform = None
        if self.flow_parts and self.flow_rate_hz:
            flow_waveform = WaveformChannel(
                start=utc_from_epoch(self.flow_start_epoch or self.first_epoch),
                sample_rate_hz=self.flow_rate_hz,
                samples=np.concatenate(self.flow_parts),
                signal=SignalType.FLOW,
                unit="L/min",
                label="Flow",
            )

        return Session(
            start=start,
            end=end,
            events=tuple(events),
            pressure_samples=tuple(therapy),
            exhale_pressure_samples=tuple(exhale),
            leak_samples=tuple(leak),
            flow_waveform=flow_waveform,
            source=source,
            source_label="chunk",
            session_id=self.session_id,
            usage_seconds=self.usage_seconds or None,
            min_pressure_setting=min_setting,
        )


@dataclass(frozen=True)
class ChunkDecodeResult:
    """Sessions and diagnostics from one chunk container."""

    sessions: tuple[Session, ...]
    chunk_count: int
    partial: bool
    unknown_codes: tuple[int, ...] = ()
    crc_ok: int = 0
    crc_failed: int = 0


class ChunkDecoder:
    """Decode a chunk container buffer into sessions."""

    parser_id = "chunk"

    def decode(self, data: bytes, source: str | None = None) -> ChunkDecodeResult:
        """
        Decode every complete chunk in ``data``.

        Args:
            data: File contents
            source: Source path or label, used for provenance

        Returns:
            ChunkDecodeResult with sessions ordered latest-first
        """
        data = bytes(data)
        sessions: dict[int, _SessionAccumulator] = {}
        unknown_codes: list[int] = []
        chunk_count = 0
        crc_ok = crc_failed = 0
        partial = False
        pos = 0

        while pos + CF.COMMON_HEADER_SIZE <= len(data):
            header = ChunkHeader.parse(data, pos)
            if header.version not in CF.SUPPORTED_VERSIONS:
                logger.debug(f"Stopping at offset {pos}: unsupported version {header.version}")
                partial = True
                break
            if header.block_size < CF.MIN_CHUNK_SIZE:
                logger.debug(f"Stopping at offset {pos}: block size {header.block_size}")
                partial = True
                break
            if header.end > len(data):
                logger.debug(
                    f"Truncated tail at offset {pos}: block size {header.block_size}, "
                    f"{len(data) - pos} bytes left"
                )
                partial = True
                break

            chunk_count += 1
            acc = sessions.setdefault(header.session_id, _SessionAccumulator(header.session_id))
            acc.touch(header.timestamp)

            if header.version == 3 and header.block_size >= CF.MIN_CHUNK_SIZE + CF.CRC32_SIZE:
                crc_end = header.end - CF.CRC32_SIZE
                if verify_crc32(data[header.offset : crc_end], u32_at(data, crc_end)):
                    crc_ok += 1
                else:
                    crc_failed += 1

            if header.header_type == CF.HEADER_TYPE_INTERVAL:
                self._read_interval_chunk(data, header, acc)
            elif header.header_type == CF.HEADER_TYPE_EVENT:
                code = self._read_event_chunk(data, header, acc)
                if code is not None:
                    partial = True
                    unknown_codes.append(code)

            pos = header.end

        if pos < len(data) and not partial:
            logger.debug(f"{len(data) - pos} trailing bytes after last chunk")
            partial = True

        built = [acc.build(source) for acc in sessions.values()]
        result = sorted(
            (s for s in built if s is not None),
            key=lambda s: (s.start, s.session_id or 0),
            reverse=True,
        )

        logger.debug(
            f"Decoded {chunk_count} chunks into {len(result)} sessions from {source or '(memory)'}"
        )
        return ChunkDecodeResult(
            sessions=tuple(result),
            chunk_count=chunk_count,
            partial=partial,
            unknown_codes=tuple(unknown_codes),
            crc_ok=crc_ok,
            crc_failed=crc_failed,
        )

    def _read_event_chunk(
        self, data: bytes, header: ChunkHeader, acc: _SessionAccumulator
    ) -> int | None:
        """Read an event or settings record; returns the first unknown code, if any."""
        if header.ext not in (CF.EXT_EVENTS, CF.EXT_SETTINGS):
            return None

        parsed = parse_normal_header(data, header)
        if parsed is None:
            logger.debug(f"Chunk at {header.offset}: header-data block overruns chunk")
            return None
        data_start, sizes = parsed

        if header.ext == CF.EXT_SETTINGS:
            acc.pressure_candidates.extend(
                collect_pressure_candidates(data, data_start, header.end, sizes)
            )
            return None

        if header.family != CF.EVENT_FAMILY or header.family_version != CF.EVENT_FAMILY_VERSION:
            logger.debug(
                f"Chunk at {header.offset}: family {header.family}/{header.family_version} "
                "events not decoded"
            )
            return None

        stream = walk_event_stream(data, data_start, header.end, sizes, header.timestamp)
        acc.absorb(stream)
        return stream.first_unknown_code

    def _read_interval_chunk(
        self, data: bytes, header: ChunkHeader, acc: _SessionAccumulator
    ) -> None:
        """Read usage intervals and, for waveform records, the flow samples."""
        pos = header.offset
        if pos + CF.WAVEFORM_FIXED_HEADER_OFFSET > len(data):
            return

        interval_count = u16_at(data, pos + 15)
        interval_seconds = data[pos + 17]
        signal_count = data[pos + 18]

        duration = interval_count * interval_seconds
        if 0 < duration < CF.MAX_INTERVAL_SECONDS:
            acc.usage_seconds += duration

        if not (
            header.ext == CF.EXT_WAVEFORM
            and interval_count > 0
            and interval_seconds > 0
            and signal_count > 0
        ):
            return

        descriptor_size = (
            CF.WAVEFORM_DESCRIPTOR_SIZE_V3 if header.version == 3 else CF.WAVEFORM_DESCRIPTOR_SIZE_V2
        )
        p = pos + CF.WAVEFORM_FIXED_HEADER_OFFSET
        flow_interleave: int | None = None
        for _ in range(signal_count):
            if p + descriptor_size > len(data):
                break
            kind = data[p]
            interleave = u16_at(data, p + 1)
            p += descriptor_size
            if kind == 0 and flow_interleave is None:
                flow_interleave = interleave

        # always-zero byte, then the v3 header checksum
        if p + 1 <= len(data):
            p += 1
        if header.version == 3 and p + 1 <= len(data):
            p += 1

        if flow_interleave is None:
            if pos + 22 > len(data):
                return
            flow_interleave = u16_at(data, pos + 20)

        sample_count = interval_count * flow_interleave
        data_end = header.end
        if header.version == 3 and data_end - p >= CF.CRC32_SIZE:
            data_end -= CF.CRC32_SIZE

        logger.debug(
            f"Waveform chunk sid={header.session_id} v{header.version} "
            f"intervals={interval_count}x{interval_seconds}s signals={signal_count} "
            f"interleave={flow_interleave} samples={sample_count} data={data_end - p}"
        )

        if sample_count <= 0 or data_end - p < sample_count:
            return

        raw = np.frombuffer(data, dtype=np.int8, count=sample_count, offset=p)
        if acc.flow_start_epoch is None:
            acc.flow_start_epoch = header.timestamp
            acc.flow_rate_hz = flow_interleave / interval_seconds
        acc.flow_parts.append(raw.astype(np.float32) * np.float32(CF.FLOW_SCALE_LPM_PER_COUNT))
