"""Unit tests for flow-limitation scoring and its minute series."""

from dataclasses import replace
from datetime import timedelta

import numpy as np
import pytest

from snorecard.analysis.breath_segmenter import BreathSegmenter
from snorecard.analysis.flow_limitation import (
    ema_series,
    minute_median_series,
    score_breath,
    severity_band,
    severity_bands,
    smooth_flow,
)
from snorecard.models.events import TimePoint
from tests.helpers.synthetic_data import NIGHT_START, generate_breathing, make_flow_channel


def _mean_score(flatness: float | None) -> float:
    flow = make_flow_channel(generate_breathing(n_breaths=8, flatness=flatness))
    breaths = BreathSegmenter().segment(flow)
    return float(np.mean([b.flow_limitation for b in breaths]))


class TestSmoothing:
    """Test the 3-point moving average."""

    def test_edges_repeat(self):
        smoothed = smooth_flow(np.array([3.0, 0.0, 0.0, 0.0, 3.0]))

        assert smoothed.tolist() == pytest.approx([2.0, 1.0, 0.0, 1.0, 2.0])

    def test_constant_is_unchanged(self):
        assert smooth_flow(np.full(5, 7.0)).tolist() == pytest.approx([7.0] * 5)


class TestBreathScore:
    """Test inspiratory flattening scores."""

    def test_flat_topped_scores_higher(self):
        rounded = _mean_score(None)
        flat = _mean_score(0.6)

        assert flat > 0.9
        assert rounded < 0.6
        assert flat > rounded

    def test_short_inspiration_has_no_score(self):
        flow = make_flow_channel(generate_breathing(n_breaths=4))
        breath = BreathSegmenter().segment(flow)[0]

        assert score_breath(flow, replace(breath, inspiratory_time=0.04)) is None

    def test_breath_outside_waveform(self):
        flow = make_flow_channel(generate_breathing(n_breaths=4))
        breath = BreathSegmenter().segment(flow)[0]
        late = replace(breath, start=NIGHT_START + timedelta(hours=2))

        assert score_breath(flow, late) is None


class TestMinuteSeries:
    """Test the per-minute median and its smoothing."""

    def test_median_per_minute(self):
        points = [
            TimePoint(NIGHT_START + timedelta(seconds=5), 0.1),
            TimePoint(NIGHT_START + timedelta(seconds=20), 0.5),
            TimePoint(NIGHT_START + timedelta(seconds=40), 0.3),
            TimePoint(NIGHT_START + timedelta(seconds=70), None),
            TimePoint(NIGHT_START + timedelta(seconds=130), 0.8),
        ]

        series = minute_median_series(points, NIGHT_START, minutes=4)

        assert [p.value for p in series] == [0.3, None, 0.8, None]
        assert series[3].time == NIGHT_START + timedelta(minutes=3)

    def test_full_day_by_default(self):
        series = minute_median_series([], NIGHT_START)

        assert len(series) == 1440
        assert all(p.value is None for p in series)

    def test_ema_skips_gaps(self):
        series = [
            TimePoint(NIGHT_START, 1.0),
            TimePoint(NIGHT_START + timedelta(minutes=1), None),
            TimePoint(NIGHT_START + timedelta(minutes=2), 0.0),
        ]

        assert [p.value for p in ema_series(series, 1)] == [1.0, None, 0.0]
        assert [p.value for p in ema_series(series, 3)] == [1.0, None, 0.5]


class TestSeverityBands:
    """Test band classification."""

    @pytest.mark.parametrize(
        "value, band",
        [(None, -1), (0.0, 0), (0.099, 0), (0.1, 1), (0.29, 1), (0.3, 2), (1.0, 2)],
    )
    def test_severity_band(self, value, band):
        assert severity_band(value) == band

    def test_series(self):
        series = [TimePoint(NIGHT_START, 0.5), TimePoint(NIGHT_START, None)]

        assert severity_bands(series) == [2, -1]
