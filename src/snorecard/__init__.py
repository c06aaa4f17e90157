"""
snorecard: CPAP data-card decoding and therapy statistics

Decodes raw device card files into sessions and aggregates them into
nightly, weekly and monthly statistics.
"""

from typing import Any

__all__ = [
    "AggregationConfig",
    "DailyAggregator",
    "WaveformIndex",
    "decode_file",
    "merge_sessions",
    "run_pipeline",
]


def __getattr__(name: str) -> Any:
    """Lazy load the public entry points to keep ``import snorecard`` cheap."""
    if name == "decode_file":
        from snorecard.parsers.loader import decode_file

        return decode_file
    if name == "merge_sessions":
        from snorecard.aggregation.merger import merge_sessions

        return merge_sessions
    if name == "DailyAggregator":
        from snorecard.aggregation.daily import DailyAggregator

        return DailyAggregator
    if name == "AggregationConfig":
        from snorecard.aggregation.types import AggregationConfig

        return AggregationConfig
    if name == "run_pipeline":
        from snorecard.pipeline import run_pipeline

        return run_pipeline
    if name == "WaveformIndex":
        from snorecard.waveform.index import WaveformIndex

        return WaveformIndex
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
