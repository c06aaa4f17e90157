"""
Session merger.

One therapy run is spread over several card files that share an
eight-hex-digit file stem (``0000001A.001`` summary, ``.002`` events,
``.005`` waveform). Sessions decoded from those files are fused into one
logical session per stem.
"""

import logging
import re

from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import replace

from snorecard.constants import SESSION_KEY_PATTERN
from snorecard.models.events import Event, SignalSample
from snorecard.models.session import Breath, Session, WaveformChannel

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(SESSION_KEY_PATTERN)

_SAMPLE_CHANNELS = (
    "pressure_samples",
    "exhale_pressure_samples",
    "leak_samples",
    "flow_samples",
    "flex_samples",
)
_WAVEFORM_CHANNELS = ("flow_waveform", "pressure_waveform", "leak_waveform", "flex_waveform")


def session_key(source: str | None) -> str | None:
    """Lower-case eight-hex-digit stem of a card file name, if present."""
    if not source:
        return None
    match = _KEY_RE.search(source.lower())
    return match.group(1) if match else None


def richness(session: Session) -> tuple:
    """
    Sort key ranking how much data a session carries.

    Ties fall through to provenance and start time so the order is total.
    """
    return (
        session.waveform_sample_count(),
        len(session.events),
        session.sample_count(),
        len(session.source or ""),
        session.source or "",
        session.start,
    )


def _event_order(event: Event) -> tuple:
    value = event.value if event.value is not None else float("-inf")
    return (event.time, event.event_type.value, value, event.code or 0)


def _sample_order(sample: SignalSample) -> tuple:
    return (sample.time, sample.value)


def _larger(a: WaveformChannel | None, b: WaveformChannel | None) -> WaveformChannel | None:
    if a is None:
        return b
    if b is None:
        return a
    return b if b.sample_count > a.sample_count else a


def _first(a, b):
    return a if a is not None else b


def _breaths(a: Session, b: Session) -> tuple[Breath, ...]:
    """Breaths of the side whose flow waveform is kept."""
    flow = _larger(a.flow_waveform, b.flow_waveform)
    if flow is None:
        return a.breaths if len(a.breaths) >= len(b.breaths) else b.breaths
    return a.breaths if flow is a.flow_waveform else b.breaths


def fuse(a: Session, b: Session) -> Session:
    """
    Fuse two sessions of the same run.

    ``a`` wins ties, so pass the richer session first.
    """
    fields = {
        "start": min(a.start, b.start),
        "end": max(a.end, b.end),
        "events": tuple(sorted(a.events + b.events, key=_event_order)),
        "breaths": _breaths(a, b),
        "source": a.source if len(a.source or "") >= len(b.source or "") else b.source,
        "source_label": _first(a.source_label, b.source_label),
        "session_id": _first(a.session_id, b.session_id),
        "min_pressure_setting": _first(a.min_pressure_setting, b.min_pressure_setting),
        "usage_seconds": max(
            (u for u in (a.usage_seconds, b.usage_seconds) if u is not None), default=None
        ),
    }
    for name in _SAMPLE_CHANNELS:
        fields[name] = tuple(sorted(getattr(a, name) + getattr(b, name), key=_sample_order))
    for name in _WAVEFORM_CHANNELS:
        fields[name] = _larger(getattr(a, name), getattr(b, name))
    return replace(a, **fields)


def merge_group(sessions: Sequence[Session]) -> Session:
    """Fuse sessions sharing a key; the result does not depend on input order."""
    ordered = sorted(sessions, key=richness, reverse=True)
    merged = ordered[0]
    for other in ordered[1:]:
        merged = fuse(merged, other)
    return merged


def merge_sessions(sessions: Iterable[Session]) -> list[Session]:
    """
    Merge sessions decoded from files of the same run.

    Args:
        sessions: Sessions from any number of files

    Returns:
        Merged keyed sessions (latest start first), then sessions without a
        key in their input order
    """
    groups: dict[str, list[Session]] = defaultdict(list)
    passthrough: list[Session] = []
    for session in sessions:
        key = session_key(session.source)
        if key is None:
            passthrough.append(session)
        else:
            groups[key].append(session)

    merged = []
    for key, group in groups.items():
        result = merge_group(group)
        if len(group) > 1:
            logger.debug(f"Merged {len(group)} sessions for key {key}")
        merged.append(result)

    merged.sort(key=lambda s: (s.start, s.source or ""), reverse=True)
    logger.debug(
        f"Session merge: {len(merged)} keyed sessions, {len(passthrough)} passed through"
    )
    return merged + passthrough

