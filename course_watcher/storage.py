"""
Storage module for the Course Watcher pipeline.

This module defines the storage interfaces the pipeline depends on and a
SQLite implementation of all of them:

- CourseStore: the current course snapshot, keyed by course code
- ChangeLog: one entry per added/removed course
- RunLedger: one append-only audit record per synchronization cycle

All three share one connection owned by Database, so a synchronization
cycle can run inside a single transaction.
"""

import json
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from course_watcher.models import ChangeType, Course, RunRecord, StoredCourse
from course_watcher.utils import get_logger


# Module logger
logger = get_logger("storage")

DEFAULT_DB_PATH = "data/course_watcher.db"
IN_MEMORY = ":memory:"

SCHEMA_VERSION = 2


class StorageError(Exception):
    """Raised when the underlying database fails."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error


# =============================================================================
# Storage interfaces
# =============================================================================


class CourseStore(ABC):
    """Durable set of courses keyed by code."""

    @abstractmethod
    def get_all(self) -> Dict[str, Course]:
        """Return every persisted course keyed by code."""

    @abstractmethod
    def upsert(self, course: Course, now: datetime) -> bool:
        """Insert or update a course. Returns True if the code was new."""

    @abstractmethod
    def remove(self, code: str) -> Optional[Course]:
        """Delete a course and return it, or None if the code is unknown."""

    @abstractmethod
    def count(self) -> int:
        """Number of persisted courses."""

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group several operations so they commit or fail together."""
        yield


class ChangeLog(ABC):
    """Append-only log of course additions and removals."""

    @abstractmethod
    def record(self, code: str, change_type: ChangeType, course: Course, timestamp: datetime) -> None:
        """Record one change with a snapshot of the course."""


class RunLedger(ABC):
    """Append-only audit trail of synchronization cycles."""

    @abstractmethod
    def append(self, record: RunRecord) -> int:
        """Store a run record and return its identifier."""

    @abstractmethod
    def list(self, limit: int = 50) -> List[RunRecord]:
        """Most recent records, newest first."""

    @abstractmethod
    def get(self, run_id: int) -> Optional[RunRecord]:
        """Fetch one record by identifier, or None if it does not exist."""


# =============================================================================
# SQLite implementation
# =============================================================================


class Database:
    """
    SQLite database holding courses, the change log and the run ledger.

    Use ":memory:" as path for a throwaway database.
    """

    def __init__(self, path: str = DEFAULT_DB_PATH):
        self.path = str(path)
        self._transaction_depth = 0

        logger.info(f"Opening SQLite database: {self.path}")

        try:
            if self.path != IN_MEMORY:
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            # Autocommit mode; transactions are opened explicitly
            self.conn = sqlite3.connect(self.path, isolation_level=None)
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Failed to open database {self.path}: {e}", e) from e

        self.conn.row_factory = sqlite3.Row
        self.run_migrations()

        self.courses = SqliteCourseStore(self)
        self.changes = SqliteChangeLog(self)
        self.runs = SqliteRunLedger(self)

        logger.info(
            f"Database ready: {self.path} "
            f"(schema v{SCHEMA_VERSION}, {self.courses.count()} existing course(s))"
        )

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.conn.close()

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        """
        Execute one SQL statement.

        Raises:
            StorageError: If SQLite reports an error.
        """
        try:
            return self.conn.execute(sql, params)
        except sqlite3.Error as e:
            raise StorageError(f"Database error: {e}", e) from e

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Run the enclosed statements in one transaction.

        Nested calls join the outermost transaction. On any exception the
        whole transaction is rolled back and the exception propagates.
        """
        if self._transaction_depth > 0:
            self._transaction_depth += 1
            try:
                yield
            finally:
                self._transaction_depth -= 1
            return

        self.execute("BEGIN")
        self._transaction_depth = 1
        try:
            yield
        except BaseException:
            self._transaction_depth = 0
            self._rollback("Transaction rolled back")
            raise

        self._transaction_depth = 0
        try:
            self.execute("COMMIT")
        except StorageError:
            # A failed COMMIT leaves the connection inside the transaction
            self._rollback("Commit failed, transaction rolled back")
            raise

    def _rollback(self, reason: str) -> None:
        try:
            self.conn.rollback()
        except sqlite3.Error as e:
            logger.error(f"Rollback failed: {e}")
        logger.warning(reason)

    # -------------------------------------------------------------------------
    # Migrations
    # -------------------------------------------------------------------------

    def schema_version(self) -> int:
        row = self.execute("SELECT COALESCE(MAX(version), 0) FROM schema_version").fetchone()
        return int(row[0])

    def run_migrations(self) -> None:
        """Create or upgrade the schema to SCHEMA_VERSION."""
        self.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)")

        current = self.schema_version()
        logger.debug(f"Schema version {current}, target {SCHEMA_VERSION}")

        if current < 1:
            logger.info("Running migration 1: create courses and change_log tables")
            with self.transaction():
                self._migrate_v1()

        if current < 2:
            logger.info("Running migration 2: create run_log table")
            with self.transaction():
                self._migrate_v2()

    def _migrate_v1(self) -> None:
        self.execute(
            """
            CREATE TABLE IF NOT EXISTS courses (
                code TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                points REAL NOT NULL,
                url TEXT NOT NULL,
                faculty TEXT NOT NULL,
                first_seen_at TEXT NOT NULL,
                last_seen_at TEXT NOT NULL
            )
            """
        )
        self.execute(
            """
            CREATE TABLE IF NOT EXISTS change_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                course_code TEXT NOT NULL,
                change_type TEXT NOT NULL,
                course_data TEXT NOT NULL,
                timestamp TEXT NOT NULL
            )
            """
        )
        self.execute("CREATE INDEX IF NOT EXISTS idx_change_log_timestamp ON change_log(timestamp)")
        self.execute("CREATE INDEX IF NOT EXISTS idx_change_log_course_code ON change_log(course_code)")
        self.execute("INSERT INTO schema_version (version) VALUES (1)")

    def _migrate_v2(self) -> None:
        self.execute(
            """
            CREATE TABLE IF NOT EXISTS run_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                total_courses_fetched INTEGER NOT NULL,
                raw_added_count INTEGER NOT NULL,
                raw_removed_count INTEGER NOT NULL,
                filtered_added_count INTEGER NOT NULL,
                filtered_removed_count INTEGER NOT NULL,
                filter_used TEXT NOT NULL,
                notification_sent INTEGER NOT NULL,
                is_first_run INTEGER NOT NULL,
                added_courses TEXT NOT NULL,
                removed_courses TEXT NOT NULL,
                duration_ms INTEGER NOT NULL
            )
            """
        )
        self.execute("CREATE INDEX IF NOT EXISTS idx_run_log_timestamp ON run_log(timestamp)")
        self.execute("INSERT INTO schema_version (version) VALUES (2)")

    # -------------------------------------------------------------------------
    # Read helpers
    # -------------------------------------------------------------------------

    def list_courses(self) -> List[StoredCourse]:
        """All persisted courses with their timestamps, ordered by code."""
        rows = self.execute(
            "SELECT code, name, points, url, faculty, first_seen_at, last_seen_at "
            "FROM courses ORDER BY code"
        ).fetchall()

        return [
            StoredCourse(
                course=_row_to_course(row),
                first_seen_at=row["first_seen_at"],
                last_seen_at=row["last_seen_at"],
            )
            for row in rows
        ]

    def recent_changes(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent change log entries, newest first."""
        rows = self.execute(
            "SELECT id, course_code, change_type, course_data, timestamp "
            "FROM change_log ORDER BY id DESC LIMIT ?",
            (limit,)
        ).fetchall()

        return [
            {
                "id": row["id"],
                "code": row["course_code"],
                "change_type": row["change_type"],
                "course": Course.from_dict(json.loads(row["course_data"])),
                "timestamp": row["timestamp"],
            }
            for row in rows
        ]


def _row_to_course(row: sqlite3.Row) -> Course:
    return Course(
        code=row["code"],
        name=row["name"],
        points=float(row["points"]),
        url=row["url"],
        faculty=row["faculty"],
    )


class SqliteCourseStore(CourseStore):
    """CourseStore backed by the courses table."""

    def __init__(self, db: Database):
        self.db = db

    def get_all(self) -> Dict[str, Course]:
        rows = self.db.execute(
            "SELECT code, name, points, url, faculty FROM courses ORDER BY code"
        ).fetchall()
        return {row["code"]: _row_to_course(row) for row in rows}

    def upsert(self, course: Course, now: datetime) -> bool:
        now_str = now.isoformat()

        exists = self.db.execute(
            "SELECT 1 FROM courses WHERE code = ?", (course.code,)
        ).fetchone() is not None

        if exists:
            self.db.execute(
                "UPDATE courses SET name = ?, points = ?, url = ?, faculty = ?, last_seen_at = ? "
                "WHERE code = ?",
                (course.name, course.points, course.url, course.faculty, now_str, course.code)
            )
            return False

        self.db.execute(
            "INSERT INTO courses (code, name, points, url, faculty, first_seen_at, last_seen_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (course.code, course.name, course.points, course.url, course.faculty, now_str, now_str)
        )
        return True

    def remove(self, code: str) -> Optional[Course]:
        row = self.db.execute(
            "SELECT code, name, points, url, faculty FROM courses WHERE code = ?", (code,)
        ).fetchone()

        if row is None:
            return None

        self.db.execute("DELETE FROM courses WHERE code = ?", (code,))
        return _row_to_course(row)

    def count(self) -> int:
        return int(self.db.execute("SELECT COUNT(*) FROM courses").fetchone()[0])

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self.db.transaction():
            yield


class SqliteChangeLog(ChangeLog):
    """ChangeLog backed by the change_log table."""

    def __init__(self, db: Database):
        self.db = db

    def record(self, code: str, change_type: ChangeType, course: Course, timestamp: datetime) -> None:
        change_type = ChangeType(change_type)
        self.db.execute(
            "INSERT INTO change_log (course_code, change_type, course_data, timestamp) "
            "VALUES (?, ?, ?, ?)",
            (code, change_type.value, json.dumps(course.to_dict(), ensure_ascii=False), timestamp.isoformat())
        )
        logger.info(f"Change logged: {change_type.value} {code} ({course.name}, {course.points:g} pts)")


def _decode_codes(raw: str) -> List[str]:
    try:
        codes = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return [str(code) for code in codes] if isinstance(codes, list) else []


def _row_to_run_record(row: sqlite3.Row) -> RunRecord:
    return RunRecord(
        id=row["id"],
        timestamp=row["timestamp"],
        total_fetched=row["total_courses_fetched"],
        raw_added_count=row["raw_added_count"],
        raw_removed_count=row["raw_removed_count"],
        filtered_added_count=row["filtered_added_count"],
        filtered_removed_count=row["filtered_removed_count"],
        filter_used=row["filter_used"],
        notification_sent=bool(row["notification_sent"]),
        is_first_run=bool(row["is_first_run"]),
        added_codes=_decode_codes(row["added_courses"]),
        removed_codes=_decode_codes(row["removed_courses"]),
        duration_ms=row["duration_ms"],
    )


_RUN_COLUMNS = (
    "id, timestamp, total_courses_fetched, raw_added_count, raw_removed_count, "
    "filtered_added_count, filtered_removed_count, filter_used, notification_sent, "
    "is_first_run, added_courses, removed_courses, duration_ms"
)


class SqliteRunLedger(RunLedger):
    """RunLedger backed by the run_log table."""

    def __init__(self, db: Database):
        self.db = db

    def append(self, record: RunRecord) -> int:
        cursor = self.db.execute(
            "INSERT INTO run_log ("
            "timestamp, total_courses_fetched, raw_added_count, raw_removed_count, "
            "filtered_added_count, filtered_removed_count, filter_used, notification_sent, "
            "is_first_run, added_courses, removed_courses, duration_ms"
            ") VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.timestamp,
                record.total_fetched,
                record.raw_added_count,
                record.raw_removed_count,
                record.filtered_added_count,
                record.filtered_removed_count,
                record.filter_used,
                1 if record.notification_sent else 0,
                1 if record.is_first_run else 0,
                json.dumps(record.added_codes),
                json.dumps(record.removed_codes),
                record.duration_ms,
            )
        )
        return int(cursor.lastrowid)

    def list(self, limit: int = 50) -> List[RunRecord]:
        rows = self.db.execute(
            f"SELECT {_RUN_COLUMNS} FROM run_log ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall()
        return [_row_to_run_record(row) for row in rows]

    def get(self, run_id: int) -> Optional[RunRecord]:
        row = self.db.execute(
            f"SELECT {_RUN_COLUMNS} FROM run_log WHERE id = ?", (run_id,)
        ).fetchone()
        return _row_to_run_record(row) if row is not None else None
