"""
Intentional-leak model.

Mask vent flow rises with pressure, so the night's lower leak envelope is
fitted against pressure: leak samples are paired with the pressure in
effect at the same instant, grouped into 1 cmH2O bins, and a line is fitted
through each bin's 20th-percentile leak. Leak above that line is
unintentional.
"""

import logging

from bisect import bisect_right
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from scipy.stats import linregress

from snorecard.constants import LeakModelConstants
from snorecard.models.events import SignalSample, SignalType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LeakModel:
    """Baseline leak = intercept + slope * pressure."""

    intercept: float
    slope: float = 0.0
    bins_used: int = 0

    @property
    def is_flat(self) -> bool:
        return self.bins_used < LeakModelConstants.MIN_BINS_FOR_FIT

    def expected(self, pressure: float | None) -> float:
        if pressure is None:
            return self.intercept
        return self.intercept + self.slope * pressure


def pair_with_pressure(
    leak: Sequence[SignalSample], pressure: Sequence[SignalSample]
) -> list[tuple[float | None, float]]:
    """
    Pair each leak sample with the latest pressure at or before it.

    Leak samples before the first pressure sample pair with None.
    """
    ordered = sorted(pressure, key=lambda s: s.time)
    epochs = [s.epoch for s in ordered]
    out = []
    for sample in leak:
        i = bisect_right(epochs, sample.epoch) - 1
        out.append((ordered[i].value if i >= 0 else None, sample.value))
    return out


def fit_leak_model(
    leak: Sequence[SignalSample], pressure: Sequence[SignalSample]
) -> LeakModel | None:
    """
    Fit the lower-envelope leak model.

    Args:
        leak: Total leak samples (L/min)
        pressure: Therapy pressure samples (cmH2O)

    Returns:
        The fitted model, a flat model at the overall 20th percentile when
        fewer than two pressure bins are populated, or None without leak data
    """
    pairs = [(p, v) for p, v in pair_with_pressure(leak, pressure) if np.isfinite(v)]
    if not pairs:
        return None

    percentile = LeakModelConstants.ENVELOPE_PERCENTILE
    width = LeakModelConstants.PRESSURE_BIN_WIDTH
    bins: dict[int, list[float]] = {}
    for p, v in pairs:
        if p is not None and np.isfinite(p):
            bins.setdefault(int(np.floor(p / width)), []).append(v)

    populated = sorted(
        (key, values)
        for key, values in bins.items()
        if len(values) >= LeakModelConstants.MIN_BIN_SAMPLES
    )
    if len(populated) < LeakModelConstants.MIN_BINS_FOR_FIT:
        floor = float(np.percentile([v for _, v in pairs], percentile))
        logger.debug(f"Leak model: {len(populated)} usable bins, flat at {floor:.2f} L/min")
        return LeakModel(intercept=floor, bins_used=len(populated))

    centres = np.array([(key + 0.5) * width for key, _ in populated])
    envelope = np.array([np.percentile(values, percentile) for _, values in populated])
    fit = linregress(centres, envelope)
    logger.debug(
        f"Leak model: {len(populated)} bins, intercept={fit.intercept:.2f}, slope={fit.slope:.3f}"
    )
    return LeakModel(
        intercept=float(fit.intercept), slope=float(fit.slope), bins_used=len(populated)
    )


def unintentional_leak(
    leak: Sequence[SignalSample],
    pressure: Sequence[SignalSample],
    model: LeakModel | None = None,
) -> list[SignalSample]:
    """
    Leak above the model, clamped at zero, at the leak sample instants.

    The model is fitted from the same samples when not given.
    """
    if model is None:
        model = fit_leak_model(leak, pressure)
    if model is None:
        return []
    out = []
    for sample, (p, v) in zip(leak, pair_with_pressure(leak, pressure)):
        if not np.isfinite(v):
            continue
        out.append(
            SignalSample(
                time=sample.time,
                value=max(0.0, v - model.expected(p)),
                signal=SignalType.LEAK,
            )
        )
    return out
