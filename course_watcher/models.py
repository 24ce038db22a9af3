"""
Data model for the Course Watcher pipeline.

A course is identified by its code alone; name, points, url and faculty
are mutable attributes of that identity.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


@dataclass
class Course:
    """
    One course availability record.

    Attributes:
        code: Unique, case-sensitive course code (never empty).
        name: Course name, empty if it could not be parsed.
        points: Credit points.
        url: Link to the course page, possibly relative, may be empty.
        faculty: Label of the faculty section the course was listed under.
    """
    code: str
    name: str
    points: float
    url: str
    faculty: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "code": self.code,
            "name": self.name,
            "points": self.points,
            "url": self.url,
            "faculty": self.faculty,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Course":
        """Build a course from the dictionary produced by to_dict()."""
        return cls(
            code=str(data["code"]),
            name=str(data.get("name", "")),
            points=float(data.get("points", 0.0)),
            url=str(data.get("url", "")),
            faculty=str(data.get("faculty", "")),
        )


@dataclass
class StoredCourse:
    """A persisted course together with its first/last seen timestamps."""
    course: Course
    first_seen_at: str
    last_seen_at: str


class ChangeType(str, Enum):
    """Kind of change recorded in the change log."""
    ADDED = "added"
    REMOVED = "removed"


@dataclass
class Delta:
    """
    Added and removed courses between two fetch cycles.

    A code appears in at most one of the two lists.
    """
    added: List[Course] = field(default_factory=list)
    removed: List[Course] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.added and not self.removed

    def total_changes(self) -> int:
        return len(self.added) + len(self.removed)


@dataclass
class SyncResult:
    """
    Outcome of synchronizing one snapshot against the course store.

    Attributes:
        delta: Unfiltered added/removed courses (empty on the bootstrap run).
        is_first_run: True if the store was empty before this cycle.
        total_courses: Number of incoming course records.
    """
    delta: Delta
    is_first_run: bool
    total_courses: int

    @property
    def added(self) -> List[Course]:
        return self.delta.added

    @property
    def removed(self) -> List[Course]:
        return self.delta.removed

    def has_changes(self) -> bool:
        return not self.delta.is_empty()


@dataclass
class RunRecord:
    """
    Audit record of one synchronization cycle.

    Attributes:
        timestamp: ISO-8601 UTC time the cycle finished.
        total_fetched: Number of courses extracted from the page.
        raw_added_count: Added courses before filtering.
        raw_removed_count: Removed courses before filtering.
        filtered_added_count: Added courses matching the points filter.
        filtered_removed_count: Removed courses matching the points filter.
        filter_used: Human-readable description of the points filter.
        notification_sent: True if at least one notifier delivered.
        is_first_run: True for the bootstrap run.
        added_codes: Codes of the filtered added courses.
        removed_codes: Codes of the filtered removed courses.
        duration_ms: Cycle duration in milliseconds.
        id: Ledger identifier, assigned on append.
    """
    timestamp: str
    total_fetched: int
    raw_added_count: int
    raw_removed_count: int
    filtered_added_count: int
    filtered_removed_count: int
    filter_used: str
    notification_sent: bool
    is_first_run: bool
    added_codes: List[str] = field(default_factory=list)
    removed_codes: List[str] = field(default_factory=list)
    duration_ms: int = 0
    id: Optional[int] = None
