"""CLI entry point for the scheduler.

Usage:
    python -m task_scheduler <command> [OPTIONS]

Commands:
    run                Run the scheduler until SIGTERM/SIGINT
    tick               Run one processing tick
    health             Health check with retry-queue sweep
    stats              Task, notification, pattern and queue counts
    backfill-patterns  Create patterns for templates that have none
    describe           Describe a recurrence rule and list occurrences
"""

from dotenv import load_dotenv

from task_scheduler.cli import cli


def main() -> None:
    """Entry point for ``python -m task_scheduler``."""
    load_dotenv()
    cli()


if __name__ == "__main__":
    main()
