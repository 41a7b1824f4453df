"""CLI commands for schedule configuration and the scheduler service."""

import asyncio
import json
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any

import click

from ..scheduling.config import ConfigLoadError, load_configuration
from ..scheduling.models import ScheduleConfigurationError
from ..scheduling.segments import SegmentFinder
from ..scheduling.service import SchedulingService, ServiceConfig
from ..scheduling.validation import RangeValidator


def _load_or_exit(config_path: str):
    try:
        return load_configuration(config_path)
    except ConfigLoadError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)


def _parse_instant(value: Optional[str]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)

    try:
        instant = datetime.fromisoformat(value)
    except ValueError:
        raise click.BadParameter(f"'{value}' is not an ISO 8601 timestamp", param_hint="--at")

    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant


@click.command()
@click.argument('config_path', metavar='CONFIG', type=click.Path(exists=True, dir_okay=False))
def validate(config_path: str):
    """Validate the ranges and entity references of every schedule."""
    config = _load_or_exit(config_path)

    try:
        directory = config.populate_directory()
    except ScheduleConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)

    validator = RangeValidator()
    now = datetime.now(timezone.utc)
    failures = 0

    async def _check_entities() -> Dict[str, str]:
        errors = {}
        for schedule in config.schedules:
            try:
                await directory.require(schedule.entity_key)
            except ScheduleConfigurationError as e:
                errors[schedule.name] = str(e)
        return errors

    entity_errors = asyncio.run(_check_entities())

    for schedule in config.schedules:
        result = validator.validate(schedule.ranges, reference=now, timezone_str=schedule.timezone)
        if not result:
            click.echo(f"FAIL {schedule.name}: {result.error}")
            failures += 1
        elif schedule.name in entity_errors:
            click.echo(f"FAIL {schedule.name}: {entity_errors[schedule.name]}")
            failures += 1
        else:
            click.echo(f"OK   {schedule.name}")

    click.echo(f"{len(config.schedules) - failures}/{len(config.schedules)} schedules valid")
    if failures:
        sys.exit(1)


@click.command()
@click.argument('config_path', metavar='CONFIG', type=click.Path(exists=True, dir_okay=False))
@click.option('--at', 'at', help='Reference instant (ISO 8601, default: now)')
@click.option('--count', '-n', type=click.IntRange(min=1), default=3, help='Windows to show per schedule')
@click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table', help='Output format')
def preview(config_path: str, at: Optional[str], count: int, output_format: str):
    """Show the upcoming maintenance windows of every schedule."""
    config = _load_or_exit(config_path)
    reference = _parse_instant(at)
    finder = SegmentFinder()

    previews: List[Dict[str, Any]] = []
    for schedule in config.schedules:
        windows = []
        instant = reference
        for _ in range(count):
            segment = finder.find_next_segment(schedule.ranges, reference=instant, timezone_str=schedule.timezone)
            if not segment:
                break
            windows.append({"begin": segment.begin.isoformat(), "end": segment.end.isoformat()})
            # The next record is resolved once the current one has started
            instant = segment.begin + timedelta(seconds=1)

        previews.append({"schedule": schedule.name, "timezone": schedule.timezone, "windows": windows})

    if output_format == 'json':
        click.echo(json.dumps(previews, indent=2))
        return

    for entry in previews:
        click.echo(f"{entry['schedule']} ({entry['timezone']})")
        if not entry['windows']:
            click.echo("  no upcoming window")
        for window in entry['windows']:
            click.echo(f"  {window['begin']} -> {window['end']}")


@click.command()
@click.argument('config_path', metavar='CONFIG', type=click.Path(exists=True, dir_okay=False))
@click.option('--redis-url', help='Redis URL for distributed locking')
def run(config_path: str, redis_url: Optional[str]):
    """Run the scheduler until interrupted."""
    service_config = ServiceConfig(
        concurrency_backend_type="redis" if redis_url else "memory",
        redis_url=redis_url,
        schedule_config_paths=[config_path]
    )

    async def _run_service():
        service = SchedulingService(service_config)
        await service.start()

        health = service.get_health()
        click.echo(f"Scheduling service started ({health.schedules_active}/{health.schedules_total} schedules active)")

        try:
            while True:
                await asyncio.sleep(1)
        finally:
            await service.stop()
            click.echo("Service stopped")

    try:
        asyncio.run(_run_service())
    except KeyboardInterrupt:
        pass
    except ConfigLoadError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)
