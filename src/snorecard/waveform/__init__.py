"""Waveform indexing and viewport queries."""

from .index import EnvelopePoint, WaveformIndex
from .viewport import ViewportApi, ViewportRequest, ViewportResult

__all__ = ["EnvelopePoint", "ViewportApi", "ViewportRequest", "ViewportResult", "WaveformIndex"]
