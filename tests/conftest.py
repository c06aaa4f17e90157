"""Pytest configuration and fixtures for snorecard tests."""

from pathlib import Path

import pytest

from snorecard.aggregation.types import AggregationConfig
from tests.helpers.synthetic_data import (
    NIGHT_START,
    build_event_chunk,
    build_waveform_chunk,
    event_entry,
    flow_counts,
)


def pytest_configure(config):
    """Register custom test markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests that do not require external dependencies"
    )
    config.addinivalue_line("markers", "parser: Tests for card file decoders")
    config.addinivalue_line(
        "markers", "business_logic: Tests for core business logic and algorithms"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests combining multiple components"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take significant time (>5 seconds)"
    )


# Directory fragment -> marker applied to every test below it
_DIRECTORY_MARKERS = (
    ("/unit/", pytest.mark.unit),
    ("/unit/parsers/", pytest.mark.parser),
    ("/unit/analysis/", pytest.mark.business_logic),
    ("/unit/aggregation/", pytest.mark.business_logic),
    ("/integration/", pytest.mark.integration),
)


def pytest_collection_modifyitems(items):
    """Apply markers by test directory."""
    for item in items:
        path = str(item.fspath)
        for fragment, marker in _DIRECTORY_MARKERS:
            if fragment in path:
                item.add_marker(marker)


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point the config file at a per-test temporary path."""
    config_path = tmp_path / "config" / "config.toml"
    monkeypatch.setattr("snorecard.config.get_config_path", lambda: config_path)
    monkeypatch.setattr("snorecard.cli.get_config_path", lambda: config_path)
    return config_path


@pytest.fixture
def utc_config():
    """Aggregation config that buckets days in UTC."""
    return AggregationConfig(timezone="UTC")


@pytest.fixture
def night_start():
    """Start instant shared by the synthetic nights."""
    return NIGHT_START


@pytest.fixture
def card_dir(tmp_path) -> Path:
    """Empty card folder."""
    path = tmp_path / "card"
    path.mkdir()
    return path


@pytest.fixture(autouse=True)
def isolated_log_dir(tmp_path, monkeypatch):
    """Keep CLI log files out of the home directory."""
    log_dir = tmp_path / "logs"
    monkeypatch.setattr("snorecard.logging_config.DEFAULT_LOG_DIR", log_dir)
    return log_dir


@pytest.fixture
def populated_card(card_dir) -> Path:
    """
    Card folder with one night split across an event and a waveform file.

    Also holds an unrecognised numbered file, a broken EDF and a non-card file.
    """
    t0 = int(NIGHT_START.timestamp())
    night = card_dir / "DATALOG" / "20240310"
    night.mkdir(parents=True)
    (night / "0000001A.002").write_bytes(
        build_event_chunk(
            [
                event_entry(0x06, 30, [10]),
                event_entry(0x0A, 5, [10]),
                event_entry(0x11, 5, [30, 2, 80]),
            ],
            session_id=0x1A,
            timestamp=t0,
        )
    )
    (night / "0000001A.005").write_bytes(
        build_waveform_chunk(flow_counts(), session_id=0x1A, timestamp=t0)
    )
    (night / "0000001A.003").write_bytes(bytes(64))
    (card_dir / "broken.edf").write_bytes(b"garbage" * 10)
    (card_dir / "notes.txt").write_text("not a card file")
    return card_dir
