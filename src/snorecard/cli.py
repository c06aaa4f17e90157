"""
Command-line interface for snorecard.

Provides commands for decoding card files, daily and trend reports,
waveform viewport queries and config management.
"""

import json
import logging
import sys
import tomllib

from datetime import date, datetime, timezone
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_version
from pathlib import Path
from typing import Any

import click

from pydantic import BaseModel, Field, ValidationError

from snorecard.aggregation.trends import MONTH, WEEK, monthly, weekly
from snorecard.aggregation.types import DailyBucket
from snorecard.config import (
    get_aggregation_config,
    get_config_path,
    load_config,
    set_value,
    unset_value,
)
from snorecard.logging_config import setup_logging
from snorecard.models.events import EventType, SignalType, to_epoch_ms
from snorecard.parsers.loader import decode_file
from snorecard.pipeline import PipelineResult, run_pipeline
from snorecard.waveform import ViewportApi, ViewportRequest, WaveformIndex

logger = logging.getLogger(__name__)

try:
    __version__ = get_version("snorecard")
except PackageNotFoundError:
    __version__ = "dev"


class DaySummary(BaseModel):
    """Headline numbers of one daily bucket."""

    day: date = Field(description="Local calendar day")
    sessions: int = Field(description="Sessions starting on this day")
    usage_hours: float = Field(description="Total usage")
    ahi: float | None = Field(description="Apnea-hypopnea index (events/hour)")
    event_counts: dict[str, int] = Field(description="Event counts by type code")
    snore_count: float = Field(description="Total snores")
    pressure_median: float | None = Field(description="Weighted median pressure (cmH2O)")
    pressure_p95: float | None = Field(description="Weighted P95 pressure (cmH2O)")
    leak_median: float | None = Field(description="Weighted median leak (L/min)")
    leak_p95: float | None = Field(description="Weighted P95 leak (L/min)")
    leak_percent_over_threshold: float | None = Field(
        description="Fraction of time above the large-leak threshold"
    )
    breaths: int = Field(description="Breaths segmented from the flow waveform")
    flow_limitation_median: float | None = Field(description="Weighted median FL score")
    snore_episodes: int = Field(description="Snore episodes")
    leak_episodes: int = Field(description="Leak-over-threshold episodes")

    @classmethod
    def from_bucket(cls, bucket: DailyBucket) -> "DaySummary":
        return cls(
            day=bucket.day,
            sessions=len(bucket.slices),
            usage_hours=round(bucket.usage_hours, 3),
            ahi=bucket.ahi,
            event_counts={t.value: n for t, n in bucket.event_counts.items()},
            snore_count=bucket.snore_count,
            pressure_median=bucket.pressure.median if bucket.pressure else None,
            pressure_p95=bucket.pressure.p95 if bucket.pressure else None,
            leak_median=bucket.leak.median if bucket.leak else None,
            leak_p95=bucket.leak.p95 if bucket.leak else None,
            leak_percent_over_threshold=bucket.leak_percent_over_threshold,
            breaths=len(bucket.breaths),
            flow_limitation_median=(
                bucket.flow_limitation.median if bucket.flow_limitation else None
            ),
            snore_episodes=len(bucket.snore_episodes),
            leak_episodes=len(bucket.leak_episodes),
        )


def _fmt(value: float | None, digits: int = 1) -> str:
    return "-" if value is None else f"{value:.{digits}f}"


def _parse_config_value(raw: str) -> Any:
    """Interpret a CLI value as a TOML literal, falling back to a string."""
    try:
        return tomllib.loads(f"value = {raw}")["value"]
    except tomllib.TOMLDecodeError:
        return raw


def _aggregation_overrides(
    tz_name: str | None, leak_threshold: float | None
) -> dict[str, Any]:
    return {"timezone": tz_name, "leak_over_threshold": leak_threshold}


def _load_days(
    path: Path,
    tz_name: str | None,
    leak_threshold: float | None,
    quiet: bool = False,
) -> PipelineResult:
    config = get_aggregation_config(_aggregation_overrides(tz_name, leak_threshold))
    result = run_pipeline(path, config)
    report = result.report
    if quiet:
        return result
    click.echo(
        f"✓ Decoded {report.files_decoded}/{report.files_seen} files "
        f"({len(result.sessions)} sessions, {len(result.buckets)} days)",
        err=True,
    )
    if report.failed_files:
        click.echo(f"⚠ {len(report.failed_files)} files failed to decode", err=True)
    return result


def version_callback(ctx: click.Context, param: click.Parameter, value: bool) -> None:
    """Show version."""
    if not value or ctx.resilient_parsing:
        return
    click.echo(f"snorecard, version {__version__}")
    ctx.exit()


@click.group()
@click.option(
    "--version",
    is_flag=True,
    callback=version_callback,
    expose_value=False,
    is_eager=True,
    help="Show version",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def cli(verbose: bool) -> None:
    """snorecard: CPAP data-card decoder and therapy statistics"""
    setup_logging(verbose=verbose)


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--timezone", "tz_name", help="IANA zone of EDF header times")
def decode(file: Path, tz_name: str | None) -> None:
    """Decode one card file and describe its sessions."""
    config = get_aggregation_config({"timezone": tz_name})
    result = decode_file(file.read_bytes(), source=str(file), tz=config.zone())

    click.echo(f"File:     {file}")
    click.echo(f"Kind:     {result.kind.value}")
    click.echo(f"Magic:    {result.magic or '-'}")
    click.echo(f"Header:   {result.debug_header.first16}")
    if result.chunk_count:
        click.echo(
            f"Chunks:   {result.chunk_count} "
            f"(CRC ok {result.crc_ok}, failed {result.crc_failed})"
        )
    if result.partial:
        unknown = ", ".join(f"0x{c:02X}" for c in result.unknown_codes) or "-"
        click.echo(f"⚠ Partial decode (unknown codes: {unknown})")
    if result.error:
        click.echo(f"❌ Error: {result.error}", err=True)
        sys.exit(1)

    click.echo(f"Sessions: {len(result.sessions)}")
    for session in result.sessions:
        line = (
            f"  • {session.start:%Y-%m-%d %H:%M:%S} → {session.end:%H:%M:%S} UTC  "
            f"{len(session.events)} events, {session.sample_count()} samples"
        )
        waveform = session.flow_waveform
        if waveform is not None:
            line += f", flow {waveform.sample_count} @ {waveform.sample_rate_hz:g} Hz"
        click.echo(line)


@cli.command()
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.option("--days", "-n", type=int, help="Only show the most recent N days")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table")
@click.option("--timezone", "tz_name", help="IANA zone for day bucketing")
@click.option("--leak-threshold", type=float, help="Fallback large-leak threshold (L/min)")
def daily(
    path: Path,
    days: int | None,
    as_json: bool,
    tz_name: str | None,
    leak_threshold: float | None,
) -> None:
    """Show per-night statistics for a card folder."""
    result = _load_days(path, tz_name, leak_threshold, quiet=as_json)
    buckets = list(result.buckets)
    if days:
        buckets = buckets[-days:]

    summaries = [DaySummary.from_bucket(b) for b in buckets]
    if as_json:
        click.echo(json.dumps([s.model_dump(mode="json") for s in summaries], indent=2))
        return

    if not summaries:
        click.echo("No therapy days found")
        return

    click.echo(
        f"{'Day':<12}{'Hours':>7}{'AHI':>7}{'OA':>5}{'CA':>5}{'H':>5}"
        f"{'P50':>7}{'P95':>7}{'Leak50':>8}{'Snores':>8}"
    )
    for s in summaries:
        counts = s.event_counts
        click.echo(
            f"{s.day.isoformat():<12}{s.usage_hours:>7.2f}{_fmt(s.ahi):>7}"
            f"{counts.get(EventType.OBSTRUCTIVE_APNEA.value, 0):>5}"
            f"{counts.get(EventType.CLEAR_AIRWAY.value, 0):>5}"
            f"{counts.get(EventType.HYPOPNEA.value, 0):>5}"
            f"{_fmt(s.pressure_median):>7}{_fmt(s.pressure_p95):>7}"
            f"{_fmt(s.leak_median):>8}{s.snore_count:>8.0f}"
        )


@cli.command()
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.option(
    "--period",
    type=click.Choice([WEEK, MONTH]),
    default=WEEK,
    show_default=True,
    help="Rollup period",
)
@click.option("--timezone", "tz_name", help="IANA zone for day bucketing")
def trends(path: Path, period: str, tz_name: str | None) -> None:
    """Show weekly or monthly rollups for a card folder."""
    result = _load_days(path, tz_name, None)
    rollups = weekly(result.buckets) if period == WEEK else monthly(result.buckets)
    if not rollups:
        click.echo("No therapy days found")
        return

    click.echo(
        f"{'Start':<12}{'Nights':>7}{'Hours':>8}{'AHI':>7}"
        f"{'P50':>7}{'Leak50':>8}{'TV50':>7}"
    )
    for r in rollups:
        click.echo(
            f"{r.start.isoformat():<12}{r.nights_used:>7}{r.usage_seconds / 3600:>8.1f}"
            f"{_fmt(r.ahi):>7}{_fmt(r.pressure_median):>7}{_fmt(r.leak_median):>8}"
            f"{_fmt(r.tidal_volume_median, 3):>7}"
        )


@cli.command()
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.option(
    "--signal",
    type=click.Choice([s.value for s in SignalType]),
    default=SignalType.FLOW.value,
    show_default=True,
)
@click.option("--start", type=click.DateTime(), required=True, help="Range start (UTC)")
@click.option("--end", type=click.DateTime(), required=True, help="Range end (UTC, exclusive)")
@click.option("--buckets", type=int, default=500, show_default=True, help="Maximum points")
def viewport(path: Path, signal: str, start: datetime, end: datetime, buckets: int) -> None:
    """Print the min/max envelope of a waveform over a time range."""
    try:
        request = ViewportRequest(
            signal=SignalType(signal),
            start_ms=to_epoch_ms(start),
            end_ms=to_epoch_ms(end),
            max_buckets=buckets,
        )
    except ValidationError as e:
        raise click.BadParameter(str(e)) from e

    result = _load_days(path, None, None)
    api = ViewportApi(WaveformIndex.build(result.sessions))
    points = api.waveform(request.signal, request.start_ms, request.end_ms, request.max_buckets)
    click.echo(f"{len(points)} points")
    for bucket in result.buckets:
        view = api.from_daily_bucket(
            bucket, request.start_ms, request.end_ms, request.max_buckets, signals=()
        )
        if view.events or view.snore_episodes or view.leak_episodes:
            click.echo(
                f"{bucket.day}: {len(view.events)} events, "
                f"{len(view.snore_episodes)} snore episodes, "
                f"{len(view.leak_episodes)} leak episodes"
            )
    for point in points:
        t = datetime.fromtimestamp(point.t_ms / 1000, tz=timezone.utc)
        click.echo(f"{t:%Y-%m-%d %H:%M:%S.%f}"[:-3] + f"  {point.min:8.2f} {point.max:8.2f}")


@cli.group()
def config() -> None:
    """Configuration management commands."""
    pass


@config.command("show")
def show_config_cmd() -> None:
    """Show all configuration settings."""
    config_path = get_config_path()
    if not config_path.exists():
        click.echo(f"No config file: {config_path}")
        return

    click.echo(f"Config file: {config_path}\n")
    config_data = load_config()
    if not config_data:
        click.echo("Configuration is empty.")
        return

    click.echo("Settings:")
    for section, values in config_data.items():
        click.echo(f"  [{section}]")
        if isinstance(values, dict):
            for key, value in values.items():
                click.echo(f"    {key} = {value!r}")


@config.command("set")
@click.argument("key")
@click.argument("value")
def set_config_cmd(key: str, value: str) -> None:
    """Set KEY (section.name) to VALUE."""
    try:
        set_value(key, _parse_config_value(value))
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="KEY") from e
    click.echo(f"✓ {key} = {value}")
    click.echo(f"  Config: {get_config_path()}")


@config.command("unset")
@click.argument("key")
def unset_config_cmd(key: str) -> None:
    """Remove KEY (section.name)."""
    try:
        removed = unset_value(key)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="KEY") from e
    if removed:
        click.echo(f"✓ Removed {key}")
    else:
        click.echo(f"{key} was not set.")


if __name__ == "__main__":
    cli()
