"""Configuration management for snorecard."""

import logging
import os
import tomllib

from pathlib import Path
from typing import Any

import tomli_w

from pydantic import ValidationError

from snorecard.aggregation.types import AggregationConfig
from snorecard.constants import APP_DIR

logger = logging.getLogger(__name__)

AGGREGATION_SECTION = "aggregation"


def get_config_path() -> Path:
    """
    Get the path to the configuration file.

    Returns:
        Path to ~/.snorecard/config.toml
    """
    return APP_DIR / "config.toml"


def load_config() -> dict[str, Any]:
    """
    Load configuration from TOML file.

    Returns:
        Configuration dictionary. Returns empty dict if file doesn't exist
        or is corrupted.
    """
    config_path = get_config_path()

    if not config_path.exists():
        return {}

    try:
        with open(config_path, "rb") as f:
            return tomllib.load(f)
    except Exception as e:
        logger.warning(f"Failed to load config from {config_path}: {e}")
        logger.warning("Treating config as empty. Fix or delete the file to resolve.")
        return {}


def save_config(config: dict[str, Any]) -> None:
    """
    Save configuration to TOML file using atomic write.

    Creates the parent directory if it doesn't exist.
    Uses temp file + rename for atomic operation.

    Args:
        config: Configuration dictionary to save

    Raises:
        PermissionError: If directory cannot be created or file cannot be written
    """
    config_path = get_config_path()

    config_dir = config_path.parent
    try:
        os.makedirs(config_dir, exist_ok=True)
    except PermissionError as e:
        raise PermissionError(
            f"Cannot create config directory {config_dir}: {e}"
        ) from e

    temp_path = config_path.with_suffix(".toml.tmp")

    try:
        with open(temp_path, "wb") as f:
            tomli_w.dump(config, f)

        os.replace(temp_path, config_path)

    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise


def _split_key(key: str) -> tuple[str, str]:
    section, _, name = key.partition(".")
    if not section or not name:
        raise ValueError(f"Config key must look like 'section.name', got {key!r}")
    return section, name


def set_value(key: str, value: Any) -> None:
    """
    Set a dotted config key (e.g. ``aggregation.leak_over_threshold``).

    Args:
        key: Dotted key of the form ``section.name``
        value: Value to store
    """
    section, name = _split_key(key)
    config = load_config()
    config.setdefault(section, {})[name] = value
    save_config(config)


def unset_value(key: str) -> bool:
    """
    Remove a dotted config key.

    Empty sections are dropped, and an empty config deletes the file.

    Returns:
        True if the key existed
    """
    section, name = _split_key(key)
    config = load_config()

    if section not in config or name not in config[section]:
        return False

    del config[section][name]
    if not config[section]:
        del config[section]

    if not config:
        config_path = get_config_path()
        if config_path.exists():
            config_path.unlink()
    else:
        save_config(config)
    return True


def get_aggregation_config(overrides: dict[str, Any] | None = None) -> AggregationConfig:
    """
    Build the aggregation config from the ``[aggregation]`` table.

    Precedence: explicit overrides > config file > model defaults. Invalid
    file values are logged and ignored.

    Args:
        overrides: Values that take precedence over the config file (None values skipped)

    Returns:
        Validated AggregationConfig
    """
    file_values = load_config().get(AGGREGATION_SECTION, {})
    if not isinstance(file_values, dict):
        logger.warning(f"Ignoring non-table [{AGGREGATION_SECTION}] config section")
        file_values = {}

    known = set(AggregationConfig.model_fields)
    merged = {k: v for k, v in file_values.items() if k in known}
    unknown = sorted(set(file_values) - known)
    if unknown:
        logger.warning(f"Ignoring unknown aggregation settings: {', '.join(unknown)}")

    if overrides:
        merged.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return AggregationConfig(**merged)
    except ValidationError as e:
        logger.warning(f"Invalid aggregation settings, using defaults: {e}")
        return AggregationConfig(
            **{k: v for k, v in (overrides or {}).items() if v is not None}
        )
