"""
Compare module for the Course Watcher pipeline.

This module reconciles the freshly parsed course list with the persisted
course store, detects added and removed courses, and updates the store so
it mirrors the new snapshot exactly.

Courses are identified by code only. The first synchronization against an
empty store (the bootstrap run) populates the store without reporting any
changes.
"""

from datetime import datetime
from typing import List, Optional, Set

from course_watcher.models import ChangeType, Course, Delta, SyncResult
from course_watcher.storage import ChangeLog, CourseStore
from course_watcher.utils import get_logger, utc_now


# Module logger
logger = get_logger("compare")


def build_code_set(courses: List[Course]) -> Set[str]:
    """
    Build a set of course codes from a list of courses.

    Args:
        courses: List of courses.

    Returns:
        Set of code strings.
    """
    return {course.code for course in courses if course.code}


def sync_courses(
    courses: List[Course],
    store: CourseStore,
    change_log: Optional[ChangeLog] = None,
    now: Optional[datetime] = None
) -> SyncResult:
    """
    Synchronize the course store with a freshly parsed snapshot.

    This is the main comparison function that:
    1. Reads the persisted courses
    2. Upserts every incoming course, collecting the new ones
    3. Removes every persisted course missing from the snapshot
    4. Records each change in the change log (except on the bootstrap run)

    The input is not deduplicated: when a code occurs twice, the last
    occurrence is what ends up stored.

    Everything runs inside one store transaction, so a storage failure
    leaves the store as it was and propagates to the caller.

    Args:
        courses: Courses parsed from the page, in page order.
        store: Persistent course store.
        change_log: Optional change log to record additions and removals.
        now: Timestamp for first/last seen fields. Defaults to current UTC time.

    Returns:
        SyncResult with the unfiltered delta.

    Raises:
        StorageError: If the store fails; no change is committed.
    """
    now = now or utc_now()

    with store.transaction():
        is_first_run = store.count() == 0
        existing = store.get_all()
        current_codes = build_code_set(courses)

        logger.info(
            f"Starting sync: {len(existing)} stored, {len(courses)} incoming"
            f"{' (first run)' if is_first_run else ''}"
        )

        added: List[Course] = []
        removed: List[Course] = []
        updated_count = 0

        for course in courses:
            is_new = store.upsert(course, now)
            if not is_new:
                updated_count += 1
                continue

            if is_first_run:
                continue

            logger.debug(f"New course detected: {course.code} - {course.name} ({course.points:g} pts)")
            added.append(course)
            if change_log is not None:
                change_log.record(course.code, ChangeType.ADDED, course, now)

        codes_to_remove = [code for code in existing if code not in current_codes]
        logger.debug(f"Checking {len(codes_to_remove)} course(s) for removal: {codes_to_remove}")

        for code in codes_to_remove:
            course = store.remove(code)
            if course is None or is_first_run:
                continue

            logger.debug(f"Course no longer available: {course.code} - {course.name} ({course.points:g} pts)")
            removed.append(course)
            if change_log is not None:
                change_log.record(course.code, ChangeType.REMOVED, course, now)

    if is_first_run:
        logger.info(f"First run completed, store initialized with {len(courses)} course(s)")
    else:
        logger.info(
            f"Sync complete: {len(added)} added, {len(removed)} removed, "
            f"{updated_count} updated, {len(courses)} total"
        )
        if added or removed:
            logger.info(
                f"Added codes: {[c.code for c in added]}, "
                f"removed codes: {[c.code for c in removed]}"
            )

    return SyncResult(
        delta=Delta(added=added, removed=removed),
        is_first_run=is_first_run,
        total_courses=len(courses),
    )
