"""Unit tests for the intentional-leak model."""

from datetime import timedelta

import pytest

from snorecard.analysis.leak_model import (
    LeakModel,
    fit_leak_model,
    pair_with_pressure,
    unintentional_leak,
)
from snorecard.models.events import SignalType
from tests.helpers.synthetic_data import NIGHT_START, samples_every


def _pressure(levels):
    return samples_every(NIGHT_START, levels, signal=SignalType.PRESSURE)


class TestPairing:
    """Test leak/pressure alignment."""

    def test_latest_pressure_at_or_before(self):
        pressure = samples_every(
            NIGHT_START + timedelta(seconds=1),
            [6.0, 8.0],
            step_seconds=2,
            signal=SignalType.PRESSURE,
        )
        leak = samples_every(NIGHT_START, [1.0, 2.0, 3.0, 4.0])

        pairs = pair_with_pressure(leak, pressure)

        assert pairs == [(None, 1.0), (6.0, 2.0), (6.0, 3.0), (8.0, 4.0)]


class TestFitLeakModel:
    """Test lower-envelope regression."""

    def test_linear_envelope(self):
        pressure = _pressure([6.0] * 50 + [8.0] * 50 + [10.0] * 50)
        leak = samples_every(NIGHT_START, [22.0] * 50 + [26.0] * 50 + [30.0] * 50)

        model = fit_leak_model(leak, pressure)

        assert model.bins_used == 3
        assert not model.is_flat
        assert model.slope == pytest.approx(2.0)
        assert model.intercept == pytest.approx(9.0)
        assert model.expected(6.0) == pytest.approx(21.0)

    def test_single_bin_is_flat(self):
        pressure = _pressure([9.0] * 10)
        leak = samples_every(NIGHT_START, [float(v) for v in range(10, 20)])

        model = fit_leak_model(leak, pressure)

        assert model.is_flat
        assert model.slope == 0.0
        assert model.intercept == pytest.approx(11.8)

    def test_sparse_bins_are_ignored(self):
        """Bins with fewer than three samples do not count towards the fit."""
        pressure = _pressure([6.0] * 10 + [12.0] * 2)
        leak = samples_every(NIGHT_START, [20.0] * 12)

        model = fit_leak_model(leak, pressure)

        assert model.is_flat
        assert model.bins_used == 1

    def test_no_leak_data(self):
        assert fit_leak_model([], _pressure([8.0])) is None

    def test_no_pressure_data(self):
        model = fit_leak_model(samples_every(NIGHT_START, [5.0] * 5), [])

        assert model.is_flat
        assert model.expected(None) == pytest.approx(5.0)


class TestUnintentionalLeak:
    """Test leak above the model."""

    def test_clamped_at_zero(self):
        leak = samples_every(NIGHT_START, [25.0, 15.0])

        out = unintentional_leak(leak, _pressure([8.0, 8.0]), LeakModel(intercept=20.0))

        assert [s.value for s in out] == [5.0, 0.0]
        assert all(s.signal is SignalType.LEAK for s in out)
        assert [s.time for s in out] == [s.time for s in leak]

    def test_fits_model_when_missing(self):
        pressure = _pressure([6.0] * 50 + [8.0] * 50)
        leak = samples_every(NIGHT_START, [22.0] * 50 + [26.0] * 49 + [40.0])

        out = unintentional_leak(leak, pressure)

        assert out[0].value == pytest.approx(1.0)
        assert out[-1].value == pytest.approx(40.0 - 25.0)

    def test_without_leak(self):
        assert unintentional_leak([], _pressure([8.0])) == []
