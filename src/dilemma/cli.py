"""
CLI entry point for the dilemma scheduler.

Commands:
    run         Run the scheduler workers until interrupted
    stats       Show job counts per state
    upcoming    List jobs that have not run yet
    failed      List terminally failed jobs
    schedule    Schedule (or reschedule) an item
    unschedule  Remove an item's jobs
    cleanup     Prune old completed and failed jobs
"""

import argparse
import json
import logging
import signal
import sys
import threading
from datetime import datetime, timedelta
from typing import List, Optional

from dotenv import load_dotenv

from .infra.cache import build_cache
from .infra.config import SchedulerSettings
from .infra.logging_config import setup_logging
from .infra.repository import SqliteItemRepository, reveal_time_for
from .scheduler.clock import ensure_utc
from .scheduler.errors import InvalidOperationError, SchedulerError
from .scheduler.service import SchedulerService


logger = logging.getLogger(__name__)


EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_INVALID_INPUT = 2


def build_service(settings: SchedulerSettings) -> SchedulerService:
    """Create the scheduler service with the configured cache and repository."""
    return SchedulerService.create(
        settings=settings,
        cache=build_cache(settings.cache_backend, settings.redis_url),
        repository=SqliteItemRepository(settings.items_db_path),
    )


def wait_for_shutdown_signal() -> None:
    """Block until SIGINT or SIGTERM."""
    stop = threading.Event()

    def _handle(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)

    while not stop.is_set():
        stop.wait(1.0)


def parse_datetime(value: str) -> datetime:
    """
    Parse an ISO 8601 timestamp; naive values are read as UTC.

    Raises:
        argparse.ArgumentTypeError: If the value is not ISO 8601
    """
    try:
        return ensure_utc(datetime.fromisoformat(value))
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid ISO 8601 datetime: {value}")


# =============================================================================
# Commands
# =============================================================================


def cmd_run(args: argparse.Namespace, settings: SchedulerSettings) -> int:
    """
    Run the scheduler until interrupted.

    Returns:
        Exit code
    """
    service = build_service(settings)

    try:
        stats = service.start(run_recovery=not args.no_recovery)
        if stats:
            logger.info(f"Startup recovery: {stats}")

        wait_for_shutdown_signal()
    finally:
        service.close()

    return EXIT_SUCCESS


def cmd_stats(args: argparse.Namespace, settings: SchedulerSettings) -> int:
    service = build_service(settings)

    try:
        stats = service.get_queue_stats()
    finally:
        service.close()

    if args.json:
        print(json.dumps(stats))
        return EXIT_SUCCESS

    print("Queue statistics:")
    for key in ("pending", "active", "completed", "failed", "delayed", "total"):
        print(f"  {key:<10} {stats[key]}")

    return EXIT_SUCCESS


def cmd_upcoming(args: argparse.Namespace, settings: SchedulerSettings) -> int:
    service = build_service(settings)

    try:
        jobs = service.list_upcoming_jobs(args.limit)
    finally:
        service.close()

    if not jobs:
        print("No upcoming jobs")
        return EXIT_SUCCESS

    print(f"Upcoming jobs (showing {len(jobs)}):")
    for job in jobs:
        print(f"  {job.scheduled_for.isoformat()}  {job.job_type.value:<16} {job.job_id}")

    return EXIT_SUCCESS


def cmd_failed(args: argparse.Namespace, settings: SchedulerSettings) -> int:
    service = build_service(settings)

    try:
        jobs = service.list_failed_jobs(args.limit)
    finally:
        service.close()

    if not jobs:
        print("No failed jobs")
        return EXIT_SUCCESS

    print(f"Failed jobs (showing {len(jobs)}):")
    for job in jobs:
        finished = job.finished_at.isoformat() if job.finished_at else "?"
        print(f"  {finished}  {job.job_id}  [{job.attempts}/{job.max_attempts}]  {job.last_error}")

    return EXIT_SUCCESS


def cmd_schedule(args: argparse.Namespace, settings: SchedulerSettings) -> int:
    """
    Schedule (or reschedule) an item.

    Returns:
        Exit code
    """
    publish_at = args.publish_at
    reveal_at = args.reveal_at or reveal_time_for(publish_at, settings.timezone)

    if reveal_at < publish_at:
        print("Error: reveal time is before publish time", file=sys.stderr)
        return EXIT_INVALID_INPUT

    service = build_service(settings)

    try:
        jobs = service.reschedule_item(args.item_id, publish_at, reveal_at)
    except InvalidOperationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID_INPUT
    finally:
        service.close()

    if not jobs:
        print(f"Nothing scheduled for {args.item_id}: both times are in the past")
        return EXIT_SUCCESS

    for job in jobs:
        print(f"Scheduled {job.job_id} at {job.not_before.isoformat()}")

    return EXIT_SUCCESS


def cmd_unschedule(args: argparse.Namespace, settings: SchedulerSettings) -> int:
    service = build_service(settings)

    try:
        removed = service.unschedule_item(args.item_id)
    finally:
        service.close()

    print(f"Removed {removed} jobs for {args.item_id}")
    return EXIT_SUCCESS


def cmd_cleanup(args: argparse.Namespace, settings: SchedulerSettings) -> int:
    completed_retention = None
    if args.completed_days is not None:
        completed_retention = timedelta(days=args.completed_days)

    failed_retention = None
    if args.failed_days is not None:
        failed_retention = timedelta(days=args.failed_days)

    service = build_service(settings)

    try:
        result = service.cleanup(completed_retention, failed_retention)
    finally:
        service.close()

    print(
        f"Removed {result['completed_removed']} completed and "
        f"{result['failed_removed']} failed jobs"
    )
    return EXIT_SUCCESS


COMMANDS = {
    "run": cmd_run,
    "stats": cmd_stats,
    "upcoming": cmd_upcoming,
    "failed": cmd_failed,
    "schedule": cmd_schedule,
    "unschedule": cmd_unschedule,
    "cleanup": cmd_cleanup,
}


def create_parser() -> argparse.ArgumentParser:
    """
    Create argument parser.

    Returns:
        Configured ArgumentParser
    """
    parser = argparse.ArgumentParser(
        prog="dilemma",
        description="Dilemma scheduler - publish daily dilemmas and reveal their results",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # run command
    run_parser = subparsers.add_parser("run", help="Run the scheduler workers until interrupted")
    run_parser.add_argument(
        "--no-recovery",
        action="store_true",
        help="Skip startup recovery"
    )

    # stats command
    stats_parser = subparsers.add_parser("stats", help="Show job counts per state")
    stats_parser.add_argument(
        "--json",
        action="store_true",
        help="Print as JSON"
    )

    # upcoming command
    upcoming_parser = subparsers.add_parser("upcoming", help="List jobs that have not run yet")
    upcoming_parser.add_argument(
        "-n", "--limit",
        type=int,
        default=10,
        help="Maximum number of jobs to show (default: 10)"
    )

    # failed command
    failed_parser = subparsers.add_parser("failed", help="List terminally failed jobs")
    failed_parser.add_argument(
        "-n", "--limit",
        type=int,
        default=20,
        help="Maximum number of jobs to show (default: 20)"
    )

    # schedule command
    schedule_parser = subparsers.add_parser("schedule", help="Schedule or reschedule an item")
    schedule_parser.add_argument("item_id", help="Item (dilemma) ID")
    schedule_parser.add_argument(
        "--publish-at",
        type=parse_datetime,
        required=True,
        help="Publication time, ISO 8601 (naive = UTC)"
    )
    schedule_parser.add_argument(
        "--reveal-at",
        type=parse_datetime,
        default=None,
        help="Reveal time, ISO 8601 (default: 20:00 local on the publish date)"
    )

    # unschedule command
    unschedule_parser = subparsers.add_parser("unschedule", help="Remove an item's jobs")
    unschedule_parser.add_argument("item_id", help="Item (dilemma) ID")

    # cleanup command
    cleanup_parser = subparsers.add_parser("cleanup", help="Prune old completed and failed jobs")
    cleanup_parser.add_argument(
        "--completed-days",
        type=int,
        default=None,
        help="Keep completed jobs this many days (default: configured retention)"
    )
    cleanup_parser.add_argument(
        "--failed-days",
        type=int,
        default=None,
        help="Keep failed jobs this many days (default: configured retention)"
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    load_dotenv()

    parser = create_parser()
    args = parser.parse_args(argv)

    settings = SchedulerSettings.from_env()
    log_level = "DEBUG" if args.verbose else settings.log_level
    setup_logging(log_level, settings.log_dir)

    command = COMMANDS.get(args.command)
    if command is None:
        parser.print_help()
        return EXIT_SUCCESS

    try:
        return command(args, settings)
    except SchedulerError as e:
        logger.error(f"Command {args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
