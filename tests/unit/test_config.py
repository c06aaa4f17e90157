"""Unit tests for the TOML configuration layer."""

import pytest

from snorecard.aggregation.types import AggregationConfig
from snorecard.config import (
    get_aggregation_config,
    load_config,
    save_config,
    set_value,
    unset_value,
)
from snorecard.constants import AggregationDefaults


class TestLoadAndSave:
    """Test reading and writing the config file."""

    def test_missing_file_is_empty(self, isolated_config):
        assert not isolated_config.exists()
        assert load_config() == {}

    def test_round_trip_creates_directory(self, isolated_config):
        save_config({"aggregation": {"timezone": "UTC"}})

        assert isolated_config.exists()
        assert load_config() == {"aggregation": {"timezone": "UTC"}}
        assert not isolated_config.with_suffix(".toml.tmp").exists()

    def test_corrupt_file_is_empty(self, isolated_config):
        isolated_config.parent.mkdir(parents=True)
        isolated_config.write_text("this is [not toml")

        assert load_config() == {}


class TestDottedKeys:
    """Test set and unset of section.name keys."""

    def test_set_value(self):
        set_value("aggregation.leak_over_threshold", 30.0)

        assert load_config()["aggregation"]["leak_over_threshold"] == 30.0

    def test_unset_removes_file_when_empty(self, isolated_config):
        set_value("aggregation.timezone", "UTC")

        assert unset_value("aggregation.timezone") is True
        assert not isolated_config.exists()

    def test_unset_keeps_other_keys(self):
        set_value("aggregation.timezone", "UTC")
        set_value("aggregation.leak_over_threshold", 20.0)

        unset_value("aggregation.timezone")

        assert load_config() == {"aggregation": {"leak_over_threshold": 20.0}}

    def test_unset_missing_key(self):
        assert unset_value("aggregation.timezone") is False

    @pytest.mark.parametrize("key", ["timezone", ".timezone", "aggregation."])
    def test_malformed_key(self, key):
        with pytest.raises(ValueError):
            set_value(key, "UTC")


class TestAggregationConfig:
    """Test building the aggregation config from file and overrides."""

    def test_defaults(self):
        config = get_aggregation_config()

        assert config == AggregationConfig()
        assert config.leak_over_threshold == AggregationDefaults.LEAK_OVER_THRESHOLD

    def test_file_values(self):
        set_value("aggregation.timezone", "Europe/Paris")
        set_value("aggregation.leak_over_threshold", 30.0)

        config = get_aggregation_config()

        assert config.timezone == "Europe/Paris"
        assert config.leak_over_threshold == 30.0

    def test_overrides_win(self):
        set_value("aggregation.timezone", "Europe/Paris")

        config = get_aggregation_config({"timezone": "UTC", "leak_over_threshold": None})

        assert config.timezone == "UTC"
        assert config.leak_over_threshold == AggregationDefaults.LEAK_OVER_THRESHOLD

    def test_unknown_keys_are_ignored(self, caplog):
        set_value("aggregation.colour", "blue")

        config = get_aggregation_config()

        assert config == AggregationConfig()
        assert "colour" in caplog.text

    def test_invalid_values_fall_back(self, caplog):
        set_value("aggregation.timezone", "Not/A_Zone")

        config = get_aggregation_config({"leak_over_threshold": 12.0})

        assert config.timezone is None
        assert config.leak_over_threshold == 12.0
        assert "Invalid aggregation settings" in caplog.text

    def test_unknown_zone_is_rejected(self):
        with pytest.raises(ValueError):
            AggregationConfig(timezone="Not/A_Zone")
