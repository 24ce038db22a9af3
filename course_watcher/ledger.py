"""
Run ledger for the Course Watcher pipeline.

Every completed synchronization cycle leaves one RunRecord in the ledger:
how many courses were fetched, what changed before and after filtering,
which filter was active and whether a notification went out.

The ledger is an audit trail only. Failing to write it is logged and
never fails the cycle.
"""

from datetime import datetime
from typing import List, Optional

from course_watcher.filter import PointsFilter
from course_watcher.models import Delta, RunRecord, SyncResult
from course_watcher.storage import RunLedger, StorageError
from course_watcher.utils import get_logger, utc_now


# Module logger
logger = get_logger("ledger")

DEFAULT_LIST_LIMIT = 50


def build_run_record(
    sync_result: SyncResult,
    filtered: Delta,
    points_filter: PointsFilter,
    notification_sent: bool,
    duration_ms: int,
    timestamp: Optional[datetime] = None
) -> RunRecord:
    """
    Assemble the audit record for one cycle.

    Args:
        sync_result: Unfiltered synchronization result.
        filtered: Delta after applying the points filter.
        points_filter: Filter that was applied.
        notification_sent: True if at least one notifier delivered.
        duration_ms: Cycle duration in milliseconds.
        timestamp: Completion time. Defaults to current UTC time.

    Returns:
        RunRecord ready to append (without an id).
    """
    timestamp = timestamp or utc_now()

    return RunRecord(
        timestamp=timestamp.isoformat(),
        total_fetched=sync_result.total_courses,
        raw_added_count=len(sync_result.added),
        raw_removed_count=len(sync_result.removed),
        filtered_added_count=len(filtered.added),
        filtered_removed_count=len(filtered.removed),
        filter_used=points_filter.description(),
        notification_sent=notification_sent,
        is_first_run=sync_result.is_first_run,
        added_codes=[course.code for course in filtered.added],
        removed_codes=[course.code for course in filtered.removed],
        duration_ms=duration_ms,
    )


def record_run(ledger: RunLedger, record: RunRecord) -> Optional[int]:
    """
    Append a run record, swallowing storage failures.

    Args:
        ledger: Run ledger to write to.
        record: Record to append.

    Returns:
        The new record id, or None if the write failed.
    """
    try:
        run_id = ledger.append(record)
    except StorageError as e:
        logger.error(f"Failed to write run record to ledger: {e}")
        return None

    record.id = run_id
    logger.info(
        f"Run #{run_id} logged: {record.total_fetched} fetched, "
        f"raw +{record.raw_added_count}/-{record.raw_removed_count}, "
        f"filtered +{record.filtered_added_count}/-{record.filtered_removed_count} "
        f"({record.filter_used}), notified={record.notification_sent}, "
        f"first_run={record.is_first_run}, {record.duration_ms} ms"
    )
    return run_id


def recent_runs(ledger: RunLedger, limit: int = DEFAULT_LIST_LIMIT) -> List[RunRecord]:
    """Most recent run records, newest first."""
    if limit <= 0:
        return []
    return ledger.list(limit)


def format_run_record(record: RunRecord) -> str:
    """
    Render a run record as a single summary line.

    Args:
        record: Record to render.

    Returns:
        Summary line such as
        "#12 2026-01-01T10:00:00+00:00 fetched=120 added=1/2 removed=0/0 ...".
    """
    flags = []
    if record.is_first_run:
        flags.append("first-run")
    if record.notification_sent:
        flags.append("notified")

    line = (
        f"#{record.id} {record.timestamp} fetched={record.total_fetched} "
        f"added={record.filtered_added_count}/{record.raw_added_count} "
        f"removed={record.filtered_removed_count}/{record.raw_removed_count} "
        f"filter='{record.filter_used}' {record.duration_ms}ms"
    )
    if flags:
        line += f" [{', '.join(flags)}]"
    return line
