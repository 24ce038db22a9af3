#!/usr/bin/env python3
"""
Main orchestration module for the Course Watcher pipeline.

This module coordinates one synchronization cycle:
fetch → parse → sync → filter → notify → ledger

and exposes the command line interface:
- check: run a single cycle
- start: run cycles at a fixed interval until interrupted
- runs: show the run ledger
- changes: show the course change log
- courses: show the courses currently stored
- test-notify: send a sample report through the configured notifiers
"""

import argparse
import logging
import sys
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from course_watcher import __version__
from course_watcher.compare import sync_courses
from course_watcher.config import DEFAULT_INTERVAL, Config, validate_interval
from course_watcher.fetch import FetchError, fetch_courses_page
from course_watcher.filter import PointsFilter, filter_changes
from course_watcher.ledger import DEFAULT_LIST_LIMIT, build_run_record, format_run_record, recent_runs, record_run
from course_watcher.models import Course, Delta, SyncResult
from course_watcher.notify import (
    ConsoleNotifier,
    DeliveryResult,
    EmailNotifier,
    NotifierChain,
    SmsNotifier,
    WebhookNotifier,
    any_succeeded,
    format_course_line,
)
from course_watcher.parse import parse_courses
from course_watcher.storage import Database, StorageError
from course_watcher.utils import ConfigError, get_logger, setup_logging


# Exit codes
EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_ENV_ERROR = 2

# Commands that only read the database and need no notifier settings
READ_ONLY_COMMANDS = ("runs", "changes", "courses")


@dataclass
class CycleOutcome:
    """
    Result of one completed synchronization cycle.

    Attributes:
        sequence: Cycle number within this process (starting at 1).
        sync_result: Unfiltered synchronization result.
        filtered: Changes left after the points filter.
        deliveries: One result per notifier; empty when nothing was sent.
        notification_sent: True if at least one notifier delivered.
        run_id: Ledger id of the cycle, None if the ledger write failed.
        duration_ms: Cycle duration in milliseconds.
    """
    sequence: int
    sync_result: SyncResult
    filtered: Delta
    deliveries: List[DeliveryResult] = field(default_factory=list)
    notification_sent: bool = False
    run_id: Optional[int] = None
    duration_ms: int = 0


def run_cycle(
    sequence: int,
    config: Config,
    database: Database,
    points_filter: PointsFilter,
    notifiers: NotifierChain,
    logger: logging.Logger,
    fetcher: Callable[[str], str] = fetch_courses_page
) -> CycleOutcome:
    """
    Execute one synchronization cycle.

    Pipeline stages:
    1. Fetch the course availability page
    2. Parse courses from the page
    3. Synchronize the course store (one transaction)
    4. Filter the changes by points
    5. Notify, unless this was the bootstrap run or nothing matched
    6. Record the cycle in the run ledger

    Args:
        sequence: Cycle number, used in log messages.
        config: Runtime configuration.
        database: Open database providing the stores and the ledger.
        points_filter: Active points filter.
        notifiers: Notification channels.
        logger: Logger for cycle progress.
        fetcher: Callable returning the page body for a URL.

    Returns:
        CycleOutcome describing the completed cycle.

    Raises:
        FetchError: If the page could not be fetched.
        StorageError: If synchronization failed; nothing was committed.
    """
    started = time.monotonic()
    logger.info(f"[Cycle {sequence}] Starting scrape cycle")

    # Stage 1: Fetch
    html = fetcher(config.url)

    # Stage 2: Parse
    courses = parse_courses(html)
    logger.info(f"[Cycle {sequence}] Parsed {len(courses)} course(s)")

    # Stage 3: Sync
    sync_result = sync_courses(courses, database.courses, database.changes)

    # Stage 4: Filter
    filtered = filter_changes(sync_result, points_filter)

    # Stage 5: Notify
    deliveries: List[DeliveryResult] = []
    if sync_result.is_first_run:
        logger.info(f"[Cycle {sequence}] First run, database initialized with {len(courses)} course(s)")
    elif not sync_result.has_changes():
        logger.info(f"[Cycle {sequence}] No changes detected")
    elif filtered.is_empty():
        logger.info(f"[Cycle {sequence}] No changes match the filter ({points_filter.description()})")
    else:
        logger.info(
            f"[Cycle {sequence}] Notifying: {len(filtered.added)} added, "
            f"{len(filtered.removed)} removed"
        )
        deliveries = notifiers.deliver_all(filtered)

    notification_sent = any_succeeded(deliveries)
    duration_ms = int((time.monotonic() - started) * 1000)

    # Stage 6: Ledger
    record = build_run_record(sync_result, filtered, points_filter, notification_sent, duration_ms)
    run_id = record_run(database.runs, record)

    logger.info(f"[Cycle {sequence}] Completed in {duration_ms} ms")

    return CycleOutcome(
        sequence=sequence,
        sync_result=sync_result,
        filtered=filtered,
        deliveries=deliveries,
        notification_sent=notification_sent,
        run_id=run_id,
        duration_ms=duration_ms,
    )


def build_notifiers(config: Config) -> NotifierChain:
    """
    Build the notifier chain for a configuration.

    The console notifier is always present; email, SMS and webhook
    notifiers are added when configured.

    Args:
        config: Validated configuration.

    Returns:
        NotifierChain in delivery order.
    """
    logger = get_logger("main")
    chain = NotifierChain([ConsoleNotifier()])

    if config.email_enabled():
        recipients = config.email_recipients()
        chain.add(EmailNotifier(
            smtp_host=config.smtp_host,
            smtp_port=config.smtp_port,
            smtp_user=config.smtp_user or "",
            smtp_password=config.smtp_password or "",
            email_from=config.email_from,
            recipients=recipients,
            dry_run=config.dry_run,
        ))
        logger.info(f"Email notifications: enabled ({len(recipients)} recipient(s)), from {config.email_from}")
    else:
        logger.info("Email notifications: disabled")

    if config.sms_enabled():
        recipients = config.sms_recipients()
        chain.add(SmsNotifier(
            account_sid=config.twilio_account_sid,
            auth_token=config.twilio_auth_token,
            from_number=config.sms_from,
            recipients=recipients,
            dry_run=config.dry_run,
        ))
        logger.info(f"SMS notifications: enabled ({len(recipients)} recipient(s))")
    else:
        logger.info("SMS notifications: disabled")

    if config.webhook_enabled():
        chain.add(WebhookNotifier(config.webhook_url, dry_run=config.dry_run))
        logger.info(f"Webhook notifications: enabled ({config.webhook_url})")

    return chain


def run_forever(
    config: Config,
    database: Database,
    points_filter: PointsFilter,
    notifiers: NotifierChain,
    interval: int,
    fetcher: Callable[[str], str] = fetch_courses_page,
    sleep: Callable[[float], None] = time.sleep,
    max_cycles: Optional[int] = None
) -> int:
    """
    Run cycles at a fixed interval.

    A failed cycle is logged and the loop waits for the next tick.

    Args:
        config: Runtime configuration.
        database: Open database.
        points_filter: Active points filter.
        notifiers: Notification channels.
        interval: Seconds between cycle starts.
        fetcher: Callable returning the page body for a URL.
        sleep: Sleep function.
        max_cycles: Stop after this many cycles (None runs until interrupted).

    Returns:
        Exit code.
    """
    logger = get_logger("main")
    logger.info(f"Starting watch loop, interval {interval}s")

    sequence = 0
    while max_cycles is None or sequence < max_cycles:
        sequence += 1
        started = time.monotonic()

        try:
            run_cycle(sequence, config, database, points_filter, notifiers, logger, fetcher=fetcher)
        except (FetchError, StorageError) as e:
            logger.error(f"[Cycle {sequence}] Failed: {e}")

        if max_cycles is not None and sequence >= max_cycles:
            break

        elapsed = time.monotonic() - started
        sleep(max(0.0, interval - elapsed))

    return EXIT_SUCCESS


def show_runs(database: Database, limit: int = DEFAULT_LIST_LIMIT, run_id: Optional[int] = None) -> int:
    """
    Print run ledger entries to stdout.

    Args:
        database: Open database.
        limit: Maximum number of records to list.
        run_id: Show only this record.

    Returns:
        Exit code (EXIT_FAILURE if run_id does not exist).
    """
    if run_id is not None:
        record = database.runs.get(run_id)
        if record is None:
            print(f"Run #{run_id} not found")
            return EXIT_FAILURE
        print(format_run_record(record))
        if record.added_codes:
            print(f"  added: {', '.join(record.added_codes)}")
        if record.removed_codes:
            print(f"  removed: {', '.join(record.removed_codes)}")
        return EXIT_SUCCESS

    records = recent_runs(database.runs, limit)
    if not records:
        print("No runs recorded")
        return EXIT_SUCCESS

    for record in records:
        print(format_run_record(record))
    return EXIT_SUCCESS


def show_changes(database: Database, limit: int = DEFAULT_LIST_LIMIT) -> int:
    """Print the most recent change log entries to stdout, newest first."""
    entries = database.recent_changes(limit)
    if not entries:
        print("No changes recorded")
        return EXIT_SUCCESS

    for entry in entries:
        print(f"{entry['timestamp']} {entry['change_type']:<7} {format_course_line(entry['course'])}")
    return EXIT_SUCCESS


def show_courses(database: Database) -> int:
    """Print every stored course with the time it was first seen."""
    stored = database.list_courses()
    if not stored:
        print("No courses stored")
        return EXIT_SUCCESS

    for entry in stored:
        print(f"{format_course_line(entry.course)} first seen {entry.first_seen_at}")
    print(f"{len(stored)} course(s)")
    return EXIT_SUCCESS


def sample_delta() -> Delta:
    """Placeholder changes used by the test-notify command."""
    return Delta(
        added=[
            Course(
                code="TEST1000",
                name="Test Course - Notification Check",
                points=10.0,
                url="https://www.uio.no/studier/emner/",
                faculty="Course Watcher",
            )
        ],
        removed=[],
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--url", help="Course availability page to watch")
    common.add_argument("--db", dest="db_path", help="SQLite database path")
    common.add_argument("--points-filter", dest="points_filter_expr", metavar="FILTER",
                        help="Points filter expression, e.g. '10', '>=5', '5+', '<=10', '10-', '5-10'")
    common.add_argument("--points-exact", type=float, metavar="POINTS", help="Only exactly this many points")
    common.add_argument("--points-min", type=float, metavar="POINTS", help="Minimum points (inclusive)")
    common.add_argument("--points-max", type=float, metavar="POINTS", help="Maximum points (inclusive)")
    common.add_argument("--email-to", metavar="EMAILS", help="Comma-separated email recipients")
    common.add_argument("--email-from", help="Email sender, 'Name <email>' or bare address")
    common.add_argument("--sms-to", metavar="PHONES", help="Comma-separated Norwegian phone numbers")
    common.add_argument("--sms-from", help="Twilio sender phone number")
    common.add_argument("--webhook-url", help="Endpoint receiving JSON change reports")
    common.add_argument("--dry-run", action="store_true", default=None, help="Log notifications instead of sending")
    common.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    parser = argparse.ArgumentParser(
        prog="course-watcher",
        description="Watch a course availability page and notify about changes.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("check", parents=[common], help="Run a single scrape cycle")

    start = subparsers.add_parser("start", parents=[common], help="Run scrape cycles continuously")
    start.add_argument("-i", "--interval", type=int, default=DEFAULT_INTERVAL,
                       help=f"Seconds between cycles (minimum 10, default {DEFAULT_INTERVAL})")

    runs = subparsers.add_parser("runs", parents=[common], help="Show the run ledger")
    runs.add_argument("-n", "--limit", type=int, default=DEFAULT_LIST_LIMIT, help="Number of runs to list")
    runs.add_argument("--id", dest="run_id", type=int, help="Show a single run")

    changes = subparsers.add_parser("changes", parents=[common], help="Show detected course additions and removals")
    changes.add_argument("-n", "--limit", type=int, default=DEFAULT_LIST_LIMIT, help="Number of changes to list")

    subparsers.add_parser("courses", parents=[common], help="Show the courses currently listed")

    subparsers.add_parser("test-notify", parents=[common],
                          help="Send a sample report through the configured notifiers")

    return parser


OVERRIDABLE = (
    "url", "db_path", "points_filter_expr", "points_exact", "points_min", "points_max",
    "email_to", "email_from", "sms_to", "sms_from", "webhook_url", "dry_run",
)


def apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    """Override configuration values with the flags given on the command line."""
    for name in OVERRIDABLE:
        value = getattr(args, name, None)
        if value is not None:
            setattr(config, name, value)
    return config


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the Course Watcher command line.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:]).

    Returns:
        Exit code for the process.
    """
    args = build_parser().parse_args(argv)

    try:
        config = apply_overrides(Config.from_env(), args)
    except ConfigError as e:
        setup_logging("INFO")
        get_logger("main").error(f"Configuration error: {e}")
        return EXIT_ENV_ERROR

    setup_logging("DEBUG" if args.verbose else config.log_level)
    logger = get_logger("main")

    if config.dry_run:
        logger.info("Running in DRY RUN mode - notifications will only be logged")

    try:
        if args.command not in READ_ONLY_COMMANDS:
            config.validate()
        if args.command == "start":
            validate_interval(args.interval)
        points_filter = config.points_filter()
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_ENV_ERROR

    if args.command == "test-notify":
        results = build_notifiers(config).deliver_all(sample_delta())
        for result in results:
            status = "ok" if result.success else f"failed: {result.error}"
            logger.info(f"Notifier '{result.name}': {status}")
        return EXIT_SUCCESS if all(r.success for r in results) else EXIT_FAILURE

    try:
        database = Database(config.db_path)
    except StorageError as e:
        logger.error(f"Could not open database: {e}")
        return EXIT_FAILURE

    try:
        with database:
            if args.command == "runs":
                return show_runs(database, limit=args.limit, run_id=args.run_id)
            if args.command == "changes":
                return show_changes(database, limit=args.limit)
            if args.command == "courses":
                return show_courses(database)

            logger.info("=" * 60)
            logger.info(f"Course Watcher {__version__}")
            logger.info(f"URL: {config.url}")
            logger.info(f"Database: {config.db_path}")
            logger.info(f"Filter: {points_filter.description()}")
            logger.info("=" * 60)

            notifiers = build_notifiers(config)

            if args.command == "start":
                return run_forever(config, database, points_filter, notifiers, args.interval)

            try:
                run_cycle(1, config, database, points_filter, notifiers, logger)
            except (FetchError, StorageError) as e:
                logger.error(f"Scrape cycle failed: {e}")
                return EXIT_FAILURE

            return EXIT_SUCCESS

    except KeyboardInterrupt:
        logger.warning("Interrupted by user, shutting down")
        return EXIT_SUCCESS if args.command == "start" else EXIT_FAILURE

    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
