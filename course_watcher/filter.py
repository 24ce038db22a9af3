"""
Filter module for the Course Watcher pipeline.

This module handles filtering course changes by credit points:
- PointsFilter: match all, an exact value, or an inclusive range
- Compact filter expressions such as "2.5", ">=5", "5+", "<=10", "10-", "5-10"
- Reducing a synchronization result to the changes worth notifying about
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from course_watcher.models import Course, Delta, SyncResult
from course_watcher.utils import ConfigError, format_points, get_logger


# Module logger
logger = get_logger("filter")

# Absolute tolerance for exact points matching
EXACT_EPSILON = 0.01


class FilterKind(str, Enum):
    """Variant tag of a PointsFilter."""
    NONE = "none"
    EXACT = "exact"
    RANGE = "range"


@dataclass(frozen=True)
class PointsFilter:
    """
    Immutable filter on course points.

    Build instances with PointsFilter.none(), PointsFilter.exact() or
    PointsFilter.range() rather than the constructor.

    Attributes:
        kind: Which variant this filter is.
        value: Target value for EXACT filters.
        min_points: Inclusive lower bound for RANGE filters, if any.
        max_points: Inclusive upper bound for RANGE filters, if any.
    """
    kind: FilterKind = FilterKind.NONE
    value: Optional[float] = None
    min_points: Optional[float] = None
    max_points: Optional[float] = None

    @classmethod
    def none(cls) -> "PointsFilter":
        return cls(kind=FilterKind.NONE)

    @classmethod
    def exact(cls, value: float) -> "PointsFilter":
        return cls(kind=FilterKind.EXACT, value=value)

    @classmethod
    def range(cls, min_points: Optional[float] = None, max_points: Optional[float] = None) -> "PointsFilter":
        return cls(kind=FilterKind.RANGE, min_points=min_points, max_points=max_points)

    def matches(self, points: float) -> bool:
        """
        Check whether a points value passes this filter.

        Args:
            points: Course points.

        Returns:
            True if the course should be kept.
        """
        if self.kind == FilterKind.EXACT:
            return abs(points - self.value) < EXACT_EPSILON

        if self.kind == FilterKind.RANGE:
            above_min = self.min_points is None or points >= self.min_points
            below_max = self.max_points is None or points <= self.max_points
            return above_min and below_max

        return True

    def description(self) -> str:
        """Human-readable description of the filter."""
        if self.kind == FilterKind.EXACT:
            return f"courses with exactly {format_points(self.value)} points"

        if self.kind == FilterKind.RANGE:
            low, high = self.min_points, self.max_points
            if low is not None and high is not None:
                return f"courses with {format_points(low)}-{format_points(high)} points"
            if low is not None:
                return f"courses with >= {format_points(low)} points"
            if high is not None:
                return f"courses with <= {format_points(high)} points"

        return "all courses"

    def __str__(self) -> str:
        return self.description()


def _parse_float(text: str) -> Optional[float]:
    try:
        return float(text.strip())
    except ValueError:
        return None


def parse_points_filter_expr(expr: str) -> Optional[PointsFilter]:
    """
    Parse a points filter expression.

    Supported formats (first match wins):
    - "" -> all courses
    - "5-10" -> range
    - ">=5", ">5", "5+" -> minimum
    - "<=10", "<10", "10-" -> maximum
    - "2.5" -> exact

    ">" and "<" are treated as ">=" and "<=": no strict-inequality offset
    is applied.

    Args:
        expr: Filter expression.

    Returns:
        The parsed PointsFilter, or None if the expression is not understood.
    """
    expr = expr.strip()

    if not expr:
        return PointsFilter.none()

    # Range "5-10": the first dash must not be a sign or a "10-" suffix
    dash_pos = expr.find("-")
    if 0 < dash_pos < len(expr) - 1:
        low = _parse_float(expr[:dash_pos])
        high = _parse_float(expr[dash_pos + 1:])
        if low is not None and high is not None:
            return PointsFilter.range(low, high)

    if expr.startswith(">="):
        value = _parse_float(expr[2:])
        if value is not None:
            return PointsFilter.range(min_points=value)
    elif expr.startswith(">"):
        value = _parse_float(expr[1:])
        if value is not None:
            return PointsFilter.range(min_points=value)

    if expr.endswith("+"):
        value = _parse_float(expr[:-1])
        if value is not None:
            return PointsFilter.range(min_points=value)

    if expr.startswith("<="):
        value = _parse_float(expr[2:])
        if value is not None:
            return PointsFilter.range(max_points=value)
    elif expr.startswith("<"):
        value = _parse_float(expr[1:])
        if value is not None:
            return PointsFilter.range(max_points=value)

    if expr.endswith("-") and len(expr) > 1:
        value = _parse_float(expr[:-1])
        if value is not None:
            return PointsFilter.range(max_points=value)

    value = _parse_float(expr)
    if value is not None:
        return PointsFilter.exact(value)

    return None


def resolve_points_filter(
    expr: Optional[str] = None,
    exact: Optional[float] = None,
    min_points: Optional[float] = None,
    max_points: Optional[float] = None
) -> PointsFilter:
    """
    Resolve the configured points filter.

    The expression takes precedence when it parses. Otherwise the
    individual numeric settings are used: exact first, then min/max.

    Args:
        expr: Optional filter expression.
        exact: Optional exact points value.
        min_points: Optional inclusive minimum.
        max_points: Optional inclusive maximum.

    Returns:
        The resolved PointsFilter.

    Raises:
        ConfigError: If the expression cannot be parsed and there is no
                     numeric fallback, if min > max, or if exact < 0.
    """
    has_numeric = exact is not None or min_points is not None or max_points is not None

    if expr is not None:
        parsed = parse_points_filter_expr(expr)
        if parsed is not None:
            _validate_filter(parsed)
            return parsed

        if not has_numeric:
            raise ConfigError(
                f"Invalid points filter expression '{expr}': expected a value like "
                f"'2.5', '>=5', '5+', '<=10', '10-' or '5-10'"
            )
        logger.warning(f"Could not parse points filter expression '{expr}', using numeric settings")

    if exact is not None:
        points_filter = PointsFilter.exact(exact)
    elif min_points is not None or max_points is not None:
        points_filter = PointsFilter.range(min_points, max_points)
    else:
        points_filter = PointsFilter.none()

    _validate_filter(points_filter)
    return points_filter


def _validate_filter(points_filter: PointsFilter) -> None:
    if points_filter.kind == FilterKind.EXACT and points_filter.value < 0:
        raise ConfigError(
            f"Invalid points filter: exact points ({format_points(points_filter.value)}) "
            f"cannot be negative"
        )

    low, high = points_filter.min_points, points_filter.max_points
    if low is not None and high is not None and low > high:
        raise ConfigError(
            f"Invalid points filter: minimum points ({format_points(low)}) "
            f"cannot be greater than maximum points ({format_points(high)})"
        )


def filter_courses(courses: List[Course], points_filter: PointsFilter, label: str = "course") -> List[Course]:
    """
    Keep the courses whose points match the filter.

    Args:
        courses: Courses to filter.
        points_filter: Filter to apply.
        label: Word used in debug logs for filtered-out courses.

    Returns:
        Matching courses in their original order.
    """
    kept = []

    for course in courses:
        if points_filter.matches(course.points):
            kept.append(course)
        else:
            logger.debug(
                f"Filtered out {label} {course.code} ({course.points:g} pts): "
                f"not {points_filter.description()}"
            )

    return kept


def filter_changes(result: SyncResult, points_filter: PointsFilter) -> Delta:
    """
    Reduce a synchronization result to the changes matching the filter.

    Args:
        result: Output of the synchronizer.
        points_filter: Filter to apply to both added and removed courses.

    Returns:
        Delta with only the matching added and removed courses.
    """
    added = filter_courses(result.added, points_filter, label="added course")
    removed = filter_courses(result.removed, points_filter, label="removed course")

    logger.info(
        f"Filter '{points_filter.description()}': "
        f"{len(added)}/{len(result.added)} added, "
        f"{len(removed)}/{len(result.removed)} removed passed"
    )

    return Delta(added=added, removed=removed)
