"""Click CLI commands for running and inspecting the scheduler."""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import click

from task_scheduler.config import get_settings
from task_scheduler.database import close_database, open_database
from task_scheduler.services.job_processor import JobProcessor
from task_scheduler.services.logging_service import configure_logging
from task_scheduler.services.occurrence_service import describe as describe_rule
from task_scheduler.services.occurrence_service import is_valid, next_occurrence
from task_scheduler.services.pattern_service import PatternService
from task_scheduler.services.redis_service import close_redis, get_redis
from task_scheduler.services.scheduler_service import SchedulerDriver


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL for this command.")
def cli(log_level: str | None) -> None:
    """Recurring task scheduler: materialize instances and deliver notifications."""
    configure_logging(log_level or get_settings().log_level)


def _run_connected(operation: Callable[[], Awaitable[Any]]) -> Any:
    """Run an async operation with the database and Redis connected."""

    async def runner() -> Any:
        await open_database(get_settings())
        try:
            await get_redis()
            return await operation()
        finally:
            await close_database()
            await close_redis()

    return asyncio.run(runner())


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@cli.command()
def run() -> None:
    """Run the scheduler until SIGTERM/SIGINT."""
    driver = SchedulerDriver()
    try:
        asyncio.run(driver.run_forever())
    except Exception as e:
        click.echo(f"Scheduler failed to start: {e}", err=True)
        sys.exit(1)


@cli.command()
def tick() -> None:
    """Run a single processing tick and print its summary."""
    processor = JobProcessor()
    try:
        summary = _run_connected(processor.process_jobs)
    except Exception as e:
        click.echo(f"Tick failed: {e}", err=True)
        sys.exit(1)
    click.echo(summary.model_dump_json(indent=2))


@cli.command()
def health() -> None:
    """Run the health check (including the retry-queue sweep)."""
    processor = JobProcessor()
    try:
        report = _run_connected(processor.health_check)
    except Exception as e:
        click.echo(f"Health check failed: {e}", err=True)
        sys.exit(1)
    _echo_json(report)
    if not report.get("healthy"):
        sys.exit(1)


@cli.command()
def stats() -> None:
    """Print task, notification, pattern and queue counts."""
    processor = JobProcessor()
    try:
        report = _run_connected(processor.get_processing_stats)
    except Exception as e:
        click.echo(f"Stats failed: {e}", err=True)
        sys.exit(1)
    _echo_json(report)


@cli.command("backfill-patterns")
def backfill_patterns() -> None:
    """Create recurring patterns for templates that have none."""
    service = PatternService()
    try:
        result = _run_connected(service.backfill_patterns)
    except Exception as e:
        click.echo(f"Backfill failed: {e}", err=True)
        sys.exit(1)
    _echo_json(result)


@cli.command()
@click.argument("rule")
@click.option("--count", default=5, show_default=True, help="Number of upcoming occurrences to list.")
@click.option(
    "--after",
    default=None,
    help="ISO-8601 reference instant (default: now, UTC).",
)
def describe(rule: str, count: int, after: str | None) -> None:
    """Describe RULE and list its next occurrences."""
    if not is_valid(rule):
        click.echo(f"Invalid recurrence rule: {rule}", err=True)
        sys.exit(2)

    if after:
        try:
            reference = datetime.fromisoformat(after)
        except ValueError:
            click.echo(f"Invalid --after value: {after}", err=True)
            sys.exit(2)
        if reference.tzinfo is None:
            reference = reference.replace(tzinfo=timezone.utc)
    else:
        reference = datetime.now(timezone.utc)

    click.echo(describe_rule(rule))

    anchor = reference
    current = reference
    for _ in range(count):
        current = next_occurrence(rule, current, dtstart=anchor)
        if current is None:
            click.echo("  (no further occurrences)")
            break
        click.echo(f"  {current.isoformat()}")
