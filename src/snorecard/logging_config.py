"""
Logging setup for the snorecard command line.

Library modules only emit records. The CLI entry point calls
``setup_logging`` once: terse level-prefixed lines on stderr, plus a
rotating file log under ``~/.snorecard/logs`` that the ``[logging]`` table
of the config file can tune or switch off.
"""

import logging
import logging.config
import sys

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from snorecard.constants import (
    DEFAULT_LOG_BACKUP_COUNT,
    DEFAULT_LOG_DIR,
    DEFAULT_LOG_FILE,
    DEFAULT_LOG_MAX_BYTES,
)

CONSOLE_FORMAT = "%(levelname)s: %(message)s"
FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_logging_configured = False


@dataclass(frozen=True)
class FileLogSettings:
    """File handler settings from the ``[logging]`` config table."""

    enabled: bool = True
    level: str = "DEBUG"
    max_bytes: int = DEFAULT_LOG_MAX_BYTES
    backup_count: int = DEFAULT_LOG_BACKUP_COUNT

    @classmethod
    def from_table(cls, table: Mapping[str, Any]) -> "FileLogSettings":
        """
        Read settings, keeping the default for any key that is missing.

        ``max_size_mb`` is given in megabytes; a level name that ``logging``
        does not know raises ValueError.
        """
        level = str(table.get("level", cls.level)).upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {level}")
        max_size_mb = table.get("max_size_mb")
        return cls(
            enabled=bool(table.get("enabled", True)),
            level=level,
            max_bytes=int(max_size_mb) * 1024 * 1024 if max_size_mb else DEFAULT_LOG_MAX_BYTES,
            backup_count=int(table.get("backup_count", DEFAULT_LOG_BACKUP_COUNT)),
        )


def get_log_path() -> Path:
    """Active log file, creating its directory if needed."""
    DEFAULT_LOG_DIR.mkdir(mode=0o700, parents=True, exist_ok=True)
    return DEFAULT_LOG_DIR / DEFAULT_LOG_FILE


def build_logging_config(
    settings: FileLogSettings, verbose: bool = False, log_path: Path | None = None
) -> dict[str, Any]:
    """dictConfig mapping for a stderr handler and, when enabled, a rotating file."""
    config: dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": {"format": CONSOLE_FORMAT},
            "file": {"format": FILE_FORMAT},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": "DEBUG" if verbose else "INFO",
                "formatter": "console",
                "stream": "ext://sys.stderr",
            },
        },
        "root": {"level": "DEBUG", "handlers": ["console"]},
    }

    if settings.enabled:
        config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": settings.level,
            "formatter": "file",
            "filename": str(log_path or get_log_path()),
            "maxBytes": settings.max_bytes,
            "backupCount": settings.backup_count,
            "encoding": "utf-8",
        }
        config["root"]["handlers"].append("file")

    return config


def setup_logging(*, verbose: bool = False) -> None:
    """Configure the root logger once per process."""
    global _logging_configured

    if _logging_configured:
        return

    from snorecard.config import load_config

    try:
        table = load_config().get("logging", {})
        settings = FileLogSettings.from_table(table if isinstance(table, dict) else {})
        logging.config.dictConfig(build_logging_config(settings, verbose=verbose))
    except (OSError, ValueError, TypeError) as e:
        sys.stderr.write(f"WARNING: Failed to configure logging: {e}\n")
        logging.basicConfig(
            level=logging.DEBUG if verbose else logging.INFO, format=CONSOLE_FORMAT
        )

    _logging_configured = True
