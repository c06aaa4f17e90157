"""
Card import orchestration.

Reads card files, decodes each one independently, then merges and
aggregates the sessions. A file that fails to decode is counted and logged;
it never stops the rest of the import.
"""

import logging
import re

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import tzinfo
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from snorecard.aggregation.daily import DailyAggregator
from snorecard.aggregation.merger import merge_sessions
from snorecard.aggregation.types import AggregationConfig, DailyBucket
from snorecard.constants import IMPORT_MAX_SEARCH_DEPTH
from snorecard.models.session import Session
from snorecard.parsers.loader import decode_file
from snorecard.parsers.types import FileKind

logger = logging.getLogger(__name__)

_CARD_FILE = re.compile(r"\.(\d{3}|edf)$", re.IGNORECASE)


class ImportReport(BaseModel):
    """Outcome of decoding a set of card files."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    files_seen: int = Field(default=0, description="Files offered for decoding")
    files_decoded: int = Field(default=0, description="Files that produced sessions")
    failed_files: list[str] = Field(default_factory=list, description="Files that raised or errored")
    unknown_files: list[str] = Field(default_factory=list, description="Files of no known kind")
    partial_files: list[str] = Field(
        default_factory=list, description="Files decoded only up to a malformed point"
    )
    sessions: list[Session] = Field(default_factory=list, description="Decoded, unmerged sessions")


@dataclass(frozen=True)
class PipelineResult:
    report: ImportReport
    sessions: tuple[Session, ...]
    buckets: tuple[DailyBucket, ...]


def find_card_files(root: Path, max_depth: int = IMPORT_MAX_SEARCH_DEPTH) -> list[Path]:
    """
    Find card files (``.000``-style or ``.edf``) under ``root``.

    Args:
        root: Card folder, or a single file
        max_depth: Deepest directory level searched below ``root``

    Returns:
        Sorted file paths
    """
    if root.is_file():
        return [root]

    found = []
    try:
        for path in root.rglob("*"):
            if len(path.relative_to(root).parts) > max_depth + 1:
                continue
            if path.is_file() and _CARD_FILE.search(path.name):
                found.append(path)
    except (PermissionError, OSError) as e:
        logger.warning(f"Stopped scanning {root}: {e}")
    return sorted(found)


def import_files(paths: Iterable[Path], tz: tzinfo | None = None) -> ImportReport:
    """
    Decode every file in ``paths``.

    Args:
        paths: Files to decode
        tz: Zone of EDF wall-clock times (None = system local)

    Returns:
        ImportReport with all sessions recovered
    """
    report = ImportReport()
    for path in paths:
        report.files_seen += 1
        name = str(path)
        try:
            result = decode_file(path.read_bytes(), source=name, tz=tz)
        except Exception as e:
            logger.warning(f"Failed to import {name}: {e}", exc_info=True)
            report.failed_files.append(name)
            continue

        if not result.ok:
            report.failed_files.append(name)
            continue
        if result.kind is FileKind.UNKNOWN:
            report.unknown_files.append(name)
            continue
        if result.partial:
            report.partial_files.append(name)
        if result.sessions:
            report.files_decoded += 1
            report.sessions.extend(result.sessions)

    logger.info(
        f"Decoded {report.files_decoded}/{report.files_seen} files into "
        f"{len(report.sessions)} sessions ({len(report.failed_files)} failed, "
        f"{len(report.unknown_files)} unknown, {len(report.partial_files)} partial)"
    )
    return report


def import_directory(
    root: Path, tz: tzinfo | None = None, max_depth: int = IMPORT_MAX_SEARCH_DEPTH
) -> ImportReport:
    """Find and decode the card files under ``root``."""
    paths = find_card_files(root, max_depth)
    logger.info(f"Found {len(paths)} card files under {root}")
    return import_files(paths, tz=tz)


def run_pipeline(root: Path, config: AggregationConfig | None = None) -> PipelineResult:
    """Import, merge and aggregate a card folder."""
    config = config or AggregationConfig()
    report = import_directory(root, tz=config.zone())
    sessions = merge_sessions(report.sessions)
    buckets = DailyAggregator(config).build(sessions)
    return PipelineResult(report=report, sessions=tuple(sessions), buckets=tuple(buckets))
