"""
Unit tests for the EDF decoder.

Tests header sniffing, date handling, channel classification, 1 Hz binning
and truncated data records.
"""

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import numpy as np
import pytest

from snorecard.models.events import SignalType
from snorecard.parsers.base import ParserError
from snorecard.parsers.edf import (
    EDFDecoder,
    bin_to_seconds,
    classify_label,
    looks_like_edf,
    parse_edf_datetime,
)
from snorecard.parsers.loader import decode_file
from snorecard.parsers.types import FileKind
from tests.helpers.synthetic_data import NIGHT_START, EdfSignal, build_edf, generate_breathing

UTC = ZoneInfo("UTC")
WALL_START = datetime(2024, 3, 10, 22, 0, 0)


def _night_edf(records: int = 60, declared_records: int | None = None) -> bytes:
    flow = np.round(generate_breathing(n_breaths=records // 4, sample_rate=25.0)).astype(np.int16)
    signals = [
        EdfSignal(label="Flow.40ms", samples_per_record=25, digital=flow, unit="L/min"),
        EdfSignal(
            label="Press.2s",
            samples_per_record=1,
            digital=np.full(records, 100),
            unit="cmH2O",
            physical_min=0,
            physical_max=40,
            digital_min=0,
            digital_max=400,
        ),
        EdfSignal(label="Leak.2s", samples_per_record=1, digital=np.full(records, 12)),
        EdfSignal(label="EPR", samples_per_record=1, digital=np.array([0, 1] * (records // 2))),
        EdfSignal(label="Crc16", samples_per_record=1, digital=np.zeros(records)),
    ]
    return build_edf(WALL_START, signals, declared_records=declared_records)


class TestEDFSniffing:
    """Test EDF header detection."""

    def test_detects_edf_header(self):
        assert looks_like_edf(_night_edf())

    def test_rejects_short_buffer(self):
        assert not looks_like_edf(b"0" * 100)

    def test_rejects_bad_header_size(self):
        data = bytearray(_night_edf())
        data[184:192] = b"99      "
        assert not looks_like_edf(bytes(data))

    def test_rejects_blank_version(self):
        data = bytearray(_night_edf())
        data[0:8] = b"        "
        assert not looks_like_edf(bytes(data))


class TestEDFDates:
    """Test EDF start date parsing."""

    def test_two_digit_year_pivot(self):
        assert parse_edf_datetime("01.02.24", "03.04.05", UTC) == datetime(
            2024, 2, 1, 3, 4, 5, tzinfo=timezone.utc
        )
        assert parse_edf_datetime("01.02.85", "03.04.05", UTC).year == 1985

    def test_wall_clock_zone_is_applied(self):
        start = parse_edf_datetime("15.01.24", "23.00.00", ZoneInfo("Europe/Paris"))

        assert start == datetime(2024, 1, 15, 22, 0, 0, tzinfo=timezone.utc)

    def test_unparseable_date(self):
        assert parse_edf_datetime("xx.yy", "00.00.00", UTC) is None
        assert parse_edf_datetime("31.02.24", "00.00.00", UTC) is None


class TestChannelClassification:
    """Test label-based channel mapping."""

    @pytest.mark.parametrize(
        "label, expected",
        [
            ("Flow.40ms", SignalType.FLOW),
            ("Press.2s", SignalType.PRESSURE),
            ("MaskPress.2s", SignalType.PRESSURE),
            ("Leak.2s", SignalType.LEAK),
            ("EPR", SignalType.FLEX_ACTIVE),
            ("Crc16", None),
            ("EDF Annotations", None),
        ],
    )
    def test_classify_label(self, label, expected):
        assert classify_label(label) is expected


class TestBinning:
    """Test native-rate to 1 Hz averaging."""

    def test_means_per_second(self):
        seconds, means = bin_to_seconds(np.array([1.0, 2.0, 3.0, 4.0]), 100, 2.0)

        assert seconds.tolist() == [100, 101]
        assert means.tolist() == [1.5, 3.5]

    def test_boolean_channel_thresholds(self):
        _, means = bin_to_seconds(np.array([0.2, 0.9, 0.6, 0.1]), 0, 2.0, boolean=True)

        assert means.tolist() == [1.0, 1.0]

    def test_empty(self):
        seconds, means = bin_to_seconds(np.array([]), 0, 1.0)

        assert seconds.size == 0
        assert means.size == 0


class TestEDFDecoder:
    """Test full EDF decoding."""

    def test_session_span(self):
        session = EDFDecoder(UTC).decode(_night_edf(), source="night.edf")

        assert session.start == NIGHT_START
        assert session.duration_seconds == 60
        assert session.usage_seconds == 60
        assert session.source == "night.edf"

    def test_flow_waveform_at_native_rate(self):
        session = EDFDecoder(UTC).decode(_night_edf())

        flow = session.flow_waveform
        assert flow is not None
        assert flow.sample_rate_hz == 25.0
        assert flow.sample_count == 1500
        assert flow.unit == "L/min"
        assert len(session.flow_samples) == 60

    def test_physical_conversion(self):
        session = EDFDecoder(UTC).decode(_night_edf())

        assert len(session.pressure_samples) == 60
        assert session.pressure_samples[0].value == pytest.approx(10.0)
        assert session.leak_samples[0].value == pytest.approx(12.0)

    def test_flex_channel_is_boolean(self):
        session = EDFDecoder(UTC).decode(_night_edf())

        assert {s.value for s in session.flex_samples} == {0.0, 1.0}

    def test_unrecognised_channels_are_skipped(self):
        session = EDFDecoder(UTC).decode(_night_edf())

        assert session.waveform(SignalType.FLOW) is not None
        assert session.exhale_pressure_samples == ()

    def test_truncated_records(self):
        """A header that over-declares records decodes only what is present."""
        session = EDFDecoder(UTC).decode(_night_edf(declared_records=100))

        assert session.duration_seconds == 60

    def test_unknown_record_count(self):
        session = EDFDecoder(UTC).decode(_night_edf(declared_records=-1))

        assert session.duration_seconds == 60

    def test_unusable_header_raises(self):
        with pytest.raises(ParserError):
            EDFDecoder(UTC).decode(b"not an edf file")

    def test_decode_file_reports_error(self):
        result = decode_file(b"garbage" * 10, source="broken.edf", tz=UTC)

        assert result.kind is FileKind.EDF
        assert not result.ok
        assert result.sessions == ()
