"""
EDF / EDF+ session decoder.

Reads the fixed 256-byte header, the per-signal headers and the int16 data
records, and turns the flow, pressure, leak and flex channels into one
Session carrying native-rate waveforms plus 1 Hz averaged signal samples.
Only the channels recognised by label are decoded; annotations are ignored.
"""

import logging

from datetime import datetime, timedelta, timezone, tzinfo

import numpy as np

from pydantic import BaseModel, Field

from snorecard.constants import EDFConstants
from snorecard.models.events import SignalSample, SignalType, to_epoch, utc_from_epoch
from snorecard.models.session import Session, WaveformChannel
from snorecard.parsers.base import ParserError
from snorecard.parsers.byte_reader import LittleEndianReader

logger = logging.getLogger(__name__)


class EDFHeader(BaseModel):
    """EDF file header information."""

    version: str = Field(description="EDF version")
    patient_info: str = Field(default="", description="Patient identification")
    recording_info: str = Field(default="", description="Recording identification")
    start_datetime: datetime = Field(description="Recording start time (UTC)")
    header_bytes: int = Field(ge=EDFConstants.MIN_HEADER_BYTES, description="Header size in bytes")
    num_data_records: int = Field(ge=-1, description="Number of data records (-1 = unknown)")
    record_duration: float = Field(ge=0, description="Record duration (seconds)")
    num_signals: int = Field(ge=0, description="Number of signals")
    is_edf_plus: bool = Field(default=False, description="EDF+ format flag")


class EDFSignalInfo(BaseModel):
    """Information about a single EDF signal/channel."""

    label: str = Field(description="Signal name")
    physical_dimension: str = Field(default="", description="Units (e.g., 'cmH2O', 'L/min')")
    physical_min: float = Field(description="Physical minimum value")
    physical_max: float = Field(description="Physical maximum value")
    digital_min: int = Field(description="Digital minimum value")
    digital_max: int = Field(description="Digital maximum value")
    samples_per_record: int = Field(ge=0, description="Samples per data record")
    signal_index: int = Field(ge=0, description="Signal index in EDF file")

    def digital_to_physical(self, digital: np.ndarray) -> np.ndarray:
        """Convert digital values to physical units."""
        digital_range = self.digital_max - self.digital_min
        if digital_range == 0:
            return digital.astype(np.float64)
        physical_range = self.physical_max - self.physical_min
        return (digital.astype(np.float64) - self.digital_min) * (
            physical_range / digital_range
        ) + self.physical_min


# Label substring -> signal, checked in order
LABEL_RULES: tuple[tuple[tuple[str, ...], SignalType], ...] = (
    (("flow",), SignalType.FLOW),
    (("press",), SignalType.PRESSURE),
    (("leak",), SignalType.LEAK),
    (("flex", "epr", "exp", "exhale"), SignalType.FLEX_ACTIVE),
)

UNITS_BY_SIGNAL = {
    SignalType.FLOW: "L/min",
    SignalType.PRESSURE: "cmH2O",
    SignalType.LEAK: "L/min",
    SignalType.FLEX_ACTIVE: "",
}


def classify_label(label: str) -> SignalType | None:
    """Map an EDF signal label to the channel it carries, if any."""
    lowered = label.lower()
    for needles, signal in LABEL_RULES:
        if any(needle in lowered for needle in needles):
            return signal
    return None


def _parse_int(text: str) -> int | None:
    try:
        return int(text.strip())
    except ValueError:
        return None


def _parse_float(text: str) -> float | None:
    try:
        return float(text.strip().replace(",", "."))
    except ValueError:
        return None


def looks_like_edf(data: bytes) -> bool:
    """
    Check whether a buffer starts with a plausible EDF header.

    Requires 256 bytes, a non-empty version field, a header size in
    256..16384 and a record count in -1..1,000,000.
    """
    if len(data) < EDFConstants.FIXED_HEADER_SIZE:
        return False
    if not data[0:8].decode("latin-1").strip():
        return False
    header_bytes = _parse_int(data[184:192].decode("latin-1"))
    if header_bytes is None or not (
        EDFConstants.MIN_HEADER_BYTES <= header_bytes <= EDFConstants.MAX_HEADER_BYTES
    ):
        return False
    records = _parse_int(data[236:244].decode("latin-1"))
    return records is not None and -1 <= records <= EDFConstants.MAX_RECORDS


def parse_edf_datetime(date: str, time: str, tz: tzinfo | None = None) -> datetime | None:
    """
    Parse EDF ``dd.mm.yy`` / ``hh.mm.ss`` fields into an aware UTC datetime.

    Two-digit years 00-79 map to 2000-2079, 80-99 to 1980-1999. The fields
    are wall-clock time in ``tz`` (system local zone when None).
    """
    d = date.strip().split(".")
    t = time.strip().split(".")
    if len(d) != 3 or len(t) < 2:
        return None
    day, month, year = (_parse_int(x) for x in d)
    if day is None or month is None or year is None:
        return None
    year += 2000 if year <= EDFConstants.TWO_DIGIT_YEAR_PIVOT else 1900
    hour = _parse_int(t[0]) or 0
    minute = _parse_int(t[1]) or 0
    second = (_parse_int(t[2]) if len(t) >= 3 else 0) or 0
    try:
        if tz is None:
            local = datetime(year, month, day, hour, minute, second).astimezone()
        else:
            local = datetime(year, month, day, hour, minute, second, tzinfo=tz)
    except (ValueError, OverflowError):
        return None
    return local.astimezone(timezone.utc)


def parse_edf_header(data: bytes, tz: tzinfo | None = None) -> EDFHeader | None:
    """Parse the fixed header; None if it is not a usable EDF header."""
    if not looks_like_edf(data):
        return None
    reader = LittleEndianReader(data)
    version = reader.read_ascii(8)
    patient = reader.read_ascii(80)
    recording = reader.read_ascii(80)
    start_date = reader.read_ascii(8)
    start_time = reader.read_ascii(8)
    header_bytes = _parse_int(reader.read_ascii(8))
    reserved = reader.read_ascii(44)
    records = _parse_int(reader.read_ascii(8))
    duration = _parse_float(reader.read_ascii(8))
    num_signals = _parse_int(reader.read_ascii(4))

    if header_bytes is None or header_bytes > len(data):
        return None
    start = parse_edf_datetime(start_date, start_time, tz)
    if start is None:
        logger.debug(f"EDF start date/time not parseable: {start_date!r} {start_time!r}")
        return None

    return EDFHeader(
        version=version,
        patient_info=patient,
        recording_info=recording,
        start_datetime=start,
        header_bytes=header_bytes,
        num_data_records=records if records is not None else -1,
        record_duration=duration if duration is not None and duration > 0 else 0.0,
        num_signals=num_signals if num_signals is not None and num_signals > 0 else 0,
        is_edf_plus=reserved.startswith("EDF+"),
    )


def parse_signal_headers(data: bytes, header: EDFHeader) -> list[EDFSignalInfo]:
    """
    Parse the per-signal header block.

    Fields are stored column-wise: all labels, then all transducers, and so on.
    """
    ns = header.num_signals
    if ns == 0 or EDFConstants.FIXED_HEADER_SIZE + ns * EDFConstants.SIGNAL_HEADER_SIZE > len(data):
        return []

    reader = LittleEndianReader(data, EDFConstants.FIXED_HEADER_SIZE)

    def column(width: int) -> list[str]:
        return [reader.read_ascii(width) for _ in range(ns)]

    labels = column(16)
    reader.skip(ns * 80)  # transducer type
    units = column(8)
    phys_min = column(8)
    phys_max = column(8)
    dig_min = column(8)
    dig_max = column(8)
    reader.skip(ns * 80)  # prefiltering
    samples = column(8)

    signals = []
    for i in range(ns):
        signals.append(
            EDFSignalInfo(
                label=labels[i],
                physical_dimension=units[i],
                physical_min=_parse_float(phys_min[i]) or 0.0,
                physical_max=_parse_float(phys_max[i]) or 0.0,
                digital_min=_parse_int(dig_min[i]) or 0,
                digital_max=_parse_int(dig_max[i]) or 0,
                samples_per_record=max(_parse_int(samples[i]) or 0, 0),
                signal_index=i,
            )
        )
    return signals


def bin_to_seconds(
    values: np.ndarray, start_epoch: int, sample_rate_hz: float, boolean: bool = False
) -> tuple[np.ndarray, np.ndarray]:
    """
    Average native-rate samples into whole-second bins.

    Sample j falls in second ``start_epoch + floor(j / rate)``. For boolean
    channels each sample is thresholded at 0.5 before and after averaging.

    Returns:
        (epoch seconds, bin means)
    """
    if values.size == 0:
        return np.empty(0, dtype=np.int64), np.empty(0, dtype=np.float64)
    if boolean:
        values = (values >= EDFConstants.FLEX_ON_THRESHOLD).astype(np.float64)
    seconds = start_epoch + np.floor(np.arange(values.size) / sample_rate_hz).astype(np.int64)
    unique, inverse = np.unique(seconds, return_inverse=True)
    sums = np.bincount(inverse, weights=values)
    counts = np.bincount(inverse)
    means = sums / counts
    if boolean:
        means = (means >= EDFConstants.FLEX_ON_THRESHOLD).astype(np.float64)
    return unique, means


class EDFDecoder:
    """Decode an EDF/EDF+ blob into a Session."""

    parser_id = "edf"

    def __init__(self, tz: tzinfo | None = None):
        """
        Initialize the decoder.

        Args:
            tz: Zone the header's wall-clock start time is in (None = system local)
        """
        self.tz = tz

    def decode(self, data: bytes, source: str | None = None) -> Session:
        """
        Decode one EDF file.

        Args:
            data: File contents
            source: Source path or label

        Returns:
            Session spanning the decoded records

        Raises:
            ParserError: If the fixed header is not usable
        """
        header = parse_edf_header(data, self.tz)
        if header is None:
            raise ParserError("EDF header not usable", parser=self.parser_id)

        signals = parse_signal_headers(data, header)
        record_count = self._effective_record_count(data, header, signals)
        total_seconds = record_count * header.record_duration
        start = header.start_datetime
        end = start + timedelta(seconds=total_seconds)

        logger.debug(
            f"EDF header: start={start.isoformat()} header_bytes={header.header_bytes} "
            f"signals={header.num_signals} records={header.num_data_records} "
            f"(decoding {record_count}) record_duration={header.record_duration}"
        )

        channels: dict[SignalType, WaveformChannel] = {}
        binned: dict[SignalType, list[SignalSample]] = {}
        if record_count > 0 and header.record_duration > 0 and signals:
            channels, binned = self._decode_signals(data, header, signals, record_count)

        return Session(
            start=start,
            end=end,
            pressure_samples=tuple(binned.get(SignalType.PRESSURE, ())),
            leak_samples=tuple(binned.get(SignalType.LEAK, ())),
            flow_samples=tuple(binned.get(SignalType.FLOW, ())),
            flex_samples=tuple(binned.get(SignalType.FLEX_ACTIVE, ())),
            flow_waveform=channels.get(SignalType.FLOW),
            pressure_waveform=channels.get(SignalType.PRESSURE),
            leak_waveform=channels.get(SignalType.LEAK),
            flex_waveform=channels.get(SignalType.FLEX_ACTIVE),
            source=source,
            source_label="edf",
            usage_seconds=int(round(total_seconds)) or None,
        )

    def _effective_record_count(
        self, data: bytes, header: EDFHeader, signals: list[EDFSignalInfo]
    ) -> int:
        """Record count limited to what the buffer actually holds."""
        record_bytes = sum(s.samples_per_record for s in signals) * 2
        if record_bytes == 0:
            return 0
        available = max(len(data) - header.header_bytes, 0) // record_bytes
        if header.num_data_records < 0:
            return available
        if available < header.num_data_records:
            logger.warning(
                f"EDF data truncated: header says {header.num_data_records} records, "
                f"buffer holds {available}"
            )
        return min(header.num_data_records, available)

    def _decode_signals(
        self,
        data: bytes,
        header: EDFHeader,
        signals: list[EDFSignalInfo],
        record_count: int,
    ) -> tuple[dict[SignalType, WaveformChannel], dict[SignalType, list[SignalSample]]]:
        per_record = sum(s.samples_per_record for s in signals)
        records = np.frombuffer(
            data, dtype="<i2", count=record_count * per_record, offset=header.header_bytes
        ).reshape(record_count, per_record)

        start_epoch = int(to_epoch(header.start_datetime))
        channels: dict[SignalType, WaveformChannel] = {}
        binned: dict[SignalType, list[SignalSample]] = {}

        column = 0
        for info in signals:
            width = info.samples_per_record
            first_column = column
            column += width
            signal = classify_label(info.label)
            if signal is None or width == 0 or signal in channels:
                continue

            digital = records[:, first_column : first_column + width].reshape(-1)
            physical = info.digital_to_physical(digital)
            rate = width / header.record_duration

            channels[signal] = WaveformChannel(
                start=header.start_datetime,
                sample_rate_hz=rate,
                samples=physical,
                signal=signal,
                unit=info.physical_dimension or UNITS_BY_SIGNAL[signal],
                label=info.label,
            )
            seconds, means = bin_to_seconds(
                physical, start_epoch, rate, boolean=signal is SignalType.FLEX_ACTIVE
            )
            binned[signal] = [
                SignalSample(time=utc_from_epoch(int(sec)), value=float(val), signal=signal)
                for sec, val in zip(seconds, means)
            ]

        logger.debug(
            "EDF signals decoded: "
            + " ".join(f"{sig.value}={len(samples)}" for sig, samples in binned.items())
        )
        return channels, binned
