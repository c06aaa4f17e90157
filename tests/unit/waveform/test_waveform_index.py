"""
Unit tests for the multi-resolution waveform index.

Tests pyramid reduction, segment joining and the bounded-size envelope
query over long recordings.
"""

from datetime import timedelta

import numpy as np
import pytest

from snorecard.models.events import SignalType, to_epoch_ms
from snorecard.waveform.index import WaveformIndex, _segments_for, reduce_level
from tests.helpers.synthetic_data import NIGHT_START, make_flow_channel, make_session

START_MS = to_epoch_ms(NIGHT_START)
DAY_MS = 24 * 3600 * 1000


@pytest.fixture(scope="module")
def day_of_flow():
    """24 hours of 10 Hz flow in one session."""
    n = 24 * 3600 * 10
    samples = (30.0 * np.sin(np.arange(n) / 25.0)).astype(np.float32)
    samples[n // 2] = 95.0
    flow = make_flow_channel(samples, sample_rate=10.0)
    session = make_session(hours=24, flow_waveform=flow)
    return WaveformIndex.build([session]), flow


class TestReduceLevel:
    """Test min/max group reduction."""

    def test_short_last_group(self):
        values = np.array([1.0, 5.0, 2.0, 8.0, 3.0])

        mins, maxs = reduce_level(values, values, 4)

        assert mins.tolist() == [1.0, 3.0]
        assert maxs.tolist() == [8.0, 3.0]

    def test_exact_groups(self):
        mins, maxs = reduce_level(np.arange(8.0), np.arange(8.0), 2)

        assert mins.tolist() == [0.0, 2.0, 4.0, 6.0]
        assert maxs.tolist() == [1.0, 3.0, 5.0, 7.0]


class TestSegments:
    """Test ordering, trimming and joining of channels."""

    def _channel(self, offset_seconds, n=100):
        return make_flow_channel(
            np.full(n, float(offset_seconds)),
            start=NIGHT_START + timedelta(seconds=offset_seconds),
            sample_rate=10.0,
        )

    def test_small_gap_is_joined(self):
        segments = _segments_for([self._channel(11), self._channel(0)])

        assert len(segments) == 1
        assert segments[0].samples.size == 200

    def test_large_gap_starts_new_segment(self):
        segments = _segments_for([self._channel(0), self._channel(30)])

        assert len(segments) == 2
        assert segments[1].start_ms == START_MS + 30_000

    def test_overlap_is_trimmed(self):
        segments = _segments_for([self._channel(0), self._channel(5)])

        assert len(segments) == 1
        assert segments[0].samples.size == 150
        assert segments[0].samples[120] == 5.0

    def test_fully_covered_channel_is_dropped(self):
        segments = _segments_for([self._channel(0), self._channel(2, n=10)])

        assert segments[0].samples.size == 100

    def test_pyramid_levels(self):
        (segment,) = _segments_for([self._channel(0)])

        assert [lvl[0].size for lvl in segment.levels] == [100, 25, 7, 2, 1]


class TestIndexBuild:
    """Test per-signal index construction."""

    def test_signals_with_waveforms(self):
        session = make_session(flow_waveform=make_flow_channel(np.zeros(50)))

        index = WaveformIndex.build([session])

        assert index.signals == [SignalType.FLOW]
        assert index.span_ms(SignalType.FLOW) == (START_MS, START_MS + 2000)
        assert index.span_ms(SignalType.PRESSURE) is None

    def test_signal_filter(self):
        session = make_session(flow_waveform=make_flow_channel(np.zeros(50)))

        assert WaveformIndex.build([session], signals=[SignalType.LEAK]).signals == []


class TestQuery:
    """Test envelope queries."""

    def test_bucket_cap_over_a_day(self, day_of_flow):
        index, _ = day_of_flow

        points = index.query(SignalType.FLOW, START_MS, START_MS + DAY_MS, max_buckets=500)

        assert 0 < len(points) <= 500
        assert all(START_MS <= p.t_ms < START_MS + DAY_MS for p in points)
        assert [p.t_ms for p in points] == sorted(p.t_ms for p in points)
        assert all(p.min <= p.max for p in points)

    def test_envelope_keeps_extremes(self, day_of_flow):
        index, flow = day_of_flow

        points = index.query(SignalType.FLOW, START_MS, START_MS + DAY_MS, max_buckets=300)

        assert max(p.max for p in points) == pytest.approx(95.0)
        assert min(p.min for p in points) == pytest.approx(float(flow.samples.min()))

    def test_values_outside_range_are_excluded(self, day_of_flow):
        index, _ = day_of_flow
        spike_ms = START_MS + DAY_MS // 2

        before = index.query(SignalType.FLOW, START_MS, spike_ms, max_buckets=200)
        after = index.query(SignalType.FLOW, spike_ms + 100, START_MS + DAY_MS, max_buckets=200)

        assert max(p.max for p in before) < 95.0
        assert max(p.max for p in after) < 95.0

    def test_fine_range_matches_raw_samples(self, day_of_flow):
        index, flow = day_of_flow
        start = START_MS + 3_600_000
        raw = flow.samples[36_000:36_010]

        points = index.query(SignalType.FLOW, start, start + 1000, max_buckets=100)

        assert [p.min for p in points] == pytest.approx(raw.tolist())
        assert [p.t_ms for p in points] == [start + 100 * i for i in range(10)]

    def test_range_cap_for_every_zoom(self, day_of_flow):
        index, _ = day_of_flow
        for span_ms in (1_000, 60_000, 3_600_000, 6 * 3_600_000):
            for cap in (1, 7, 64, 999):
                points = index.query(SignalType.FLOW, START_MS + 5, START_MS + 5 + span_ms, cap)
                assert len(points) <= cap
                assert all(START_MS + 5 <= p.t_ms < START_MS + 5 + span_ms for p in points)

    def test_empty_queries(self, day_of_flow):
        index, _ = day_of_flow

        assert index.query(SignalType.FLOW, START_MS + 10, START_MS, 100) == []
        assert index.query(SignalType.FLOW, START_MS - 10_000, START_MS, 100) == []
        assert index.query(SignalType.PRESSURE, START_MS, START_MS + 1000, 100) == []
        assert index.query(SignalType.FLOW, START_MS, START_MS + 1000, 0) == []
