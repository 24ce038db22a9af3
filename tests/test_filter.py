"""
Tests for the filter module.

Tests cover:
- PointsFilter matching and descriptions
- Filter expression parsing
- Resolution of expression and numeric settings
- Filtering synchronization results
"""

import pytest

from course_watcher.filter import (
    FilterKind,
    PointsFilter,
    filter_changes,
    filter_courses,
    parse_points_filter_expr,
    resolve_points_filter,
)
from course_watcher.models import Course, Delta, SyncResult
from course_watcher.utils import ConfigError


def make_course(code: str, points: float) -> Course:
    return Course(code=code, name=f"{code} name", points=points, url="", faculty="F")


class TestPointsFilterMatches:
    """Tests for PointsFilter.matches."""

    def test_none_matches_everything(self):
        """Test that the none filter keeps all values."""
        points_filter = PointsFilter.none()

        assert points_filter.matches(0.0)
        assert points_filter.matches(2.5)
        assert points_filter.matches(60.0)

    def test_exact_tolerance(self):
        """Test exact matching with 0.01 tolerance."""
        points_filter = PointsFilter.exact(10.0)

        assert points_filter.matches(10.0)
        assert points_filter.matches(10.005)
        assert not points_filter.matches(10.02)
        assert not points_filter.matches(5.0)

    def test_range_inclusive(self):
        """Test that both range bounds are inclusive."""
        points_filter = PointsFilter.range(5.0, 10.0)

        assert points_filter.matches(5.0)
        assert points_filter.matches(7.5)
        assert points_filter.matches(10.0)
        assert not points_filter.matches(4.99)
        assert not points_filter.matches(10.01)

    def test_open_ended_ranges(self):
        """Test ranges with only one bound."""
        assert PointsFilter.range(min_points=5.0).matches(100.0)
        assert not PointsFilter.range(min_points=5.0).matches(2.5)
        assert PointsFilter.range(max_points=5.0).matches(0.0)
        assert not PointsFilter.range(max_points=5.0).matches(7.5)

    def test_unbounded_range_matches_everything(self):
        """Test a range with neither bound."""
        assert PointsFilter.range().matches(123.0)


class TestPointsFilterDescription:
    """Tests for human-readable descriptions."""

    @pytest.mark.parametrize("points_filter,expected", [
        (PointsFilter.none(), "all courses"),
        (PointsFilter.exact(10.0), "courses with exactly 10 points"),
        (PointsFilter.exact(2.5), "courses with exactly 2.5 points"),
        (PointsFilter.range(5.0, 10.0), "courses with 5-10 points"),
        (PointsFilter.range(min_points=5.0), "courses with >= 5 points"),
        (PointsFilter.range(max_points=10.0), "courses with <= 10 points"),
        (PointsFilter.range(), "all courses"),
    ])
    def test_descriptions(self, points_filter, expected):
        """Test the description of each filter shape."""
        assert points_filter.description() == expected
        assert str(points_filter) == expected


class TestParsePointsFilterExpr:
    """Tests for filter expression parsing."""

    @pytest.mark.parametrize("expr", ["", "   "])
    def test_empty_is_none_filter(self, expr):
        """Test that an empty expression disables filtering."""
        assert parse_points_filter_expr(expr) == PointsFilter.none()

    @pytest.mark.parametrize("expr,expected", [
        ("5-10", PointsFilter.range(5.0, 10.0)),
        ("5 - 10", PointsFilter.range(5.0, 10.0)),
        ("2.5-7.5", PointsFilter.range(2.5, 7.5)),
        (">=5", PointsFilter.range(min_points=5.0)),
        (">= 5", PointsFilter.range(min_points=5.0)),
        (">5", PointsFilter.range(min_points=5.0)),
        ("5+", PointsFilter.range(min_points=5.0)),
        ("<=10", PointsFilter.range(max_points=10.0)),
        ("<10", PointsFilter.range(max_points=10.0)),
        ("10-", PointsFilter.range(max_points=10.0)),
        ("2.5", PointsFilter.exact(2.5)),
        (" 10 ", PointsFilter.exact(10.0)),
    ])
    def test_valid_expressions(self, expr, expected):
        """Test every supported expression form."""
        assert parse_points_filter_expr(expr) == expected

    def test_leading_dash_is_negative_exact(self):
        """Test that a leading dash is a sign, not a range."""
        assert parse_points_filter_expr("-5") == PointsFilter.exact(-5.0)

    @pytest.mark.parametrize("expr", ["abc", "-", "5-abc", ">=x", "ten+", "<", "1-2-3"])
    def test_unparseable(self, expr):
        """Test that unknown expressions return None."""
        assert parse_points_filter_expr(expr) is None


class TestResolvePointsFilter:
    """Tests for combining expression and numeric settings."""

    def test_nothing_configured(self):
        """Test that no settings means no filtering."""
        assert resolve_points_filter() == PointsFilter.none()

    def test_expression_wins(self):
        """Test that a parseable expression overrides numeric settings."""
        result = resolve_points_filter(">=5", exact=10.0)

        assert result == PointsFilter.range(min_points=5.0)

    def test_exact_before_range(self):
        """Test that exact takes precedence over min/max."""
        result = resolve_points_filter(None, exact=10.0, min_points=1.0, max_points=2.0)

        assert result.kind == FilterKind.EXACT
        assert result.value == 10.0

    def test_min_max(self):
        """Test numeric range settings."""
        assert resolve_points_filter(None, min_points=5.0, max_points=10.0) == PointsFilter.range(5.0, 10.0)
        assert resolve_points_filter(None, max_points=10.0) == PointsFilter.range(max_points=10.0)

    def test_bad_expression_falls_back(self):
        """Test fallback to numeric settings when the expression is invalid."""
        assert resolve_points_filter("garbage", exact=10.0) == PointsFilter.exact(10.0)

    def test_bad_expression_without_fallback(self):
        """Test that an invalid expression alone is a configuration error."""
        with pytest.raises(ConfigError, match="garbage"):
            resolve_points_filter("garbage")

    def test_min_greater_than_max(self):
        """Test that an inverted range is rejected."""
        with pytest.raises(ConfigError, match="10"):
            resolve_points_filter(None, min_points=10.0, max_points=5.0)

    def test_inverted_range_expression(self):
        """Test that an inverted range expression is rejected."""
        with pytest.raises(ConfigError):
            resolve_points_filter("10-5")

    def test_negative_exact(self):
        """Test that a negative exact value is rejected."""
        with pytest.raises(ConfigError, match="negative"):
            resolve_points_filter(None, exact=-1.0)

    def test_config_error_is_value_error(self):
        """Test that ConfigError can be caught as ValueError."""
        with pytest.raises(ValueError):
            resolve_points_filter("-5")


class TestFilterChanges:
    """Tests for filtering synchronization results."""

    @pytest.fixture
    def sync_result(self):
        """Sync result with mixed points."""
        return SyncResult(
            delta=Delta(
                added=[make_course("A", 10.0), make_course("B", 5.0), make_course("C", 2.5)],
                removed=[make_course("D", 10.0), make_course("E", 7.5)],
            ),
            is_first_run=False,
            total_courses=3,
        )

    def test_exact_filter(self, sync_result):
        """Test that only matching added and removed courses are kept."""
        delta = filter_changes(sync_result, PointsFilter.exact(10.0))

        assert [c.code for c in delta.added] == ["A"]
        assert [c.code for c in delta.removed] == ["D"]

    def test_none_filter_keeps_everything(self, sync_result):
        """Test that the none filter is a pass-through."""
        delta = filter_changes(sync_result, PointsFilter.none())

        assert delta.total_changes() == 5

    def test_order_preserved(self, sync_result):
        """Test that filtering keeps the original order."""
        delta = filter_changes(sync_result, PointsFilter.range(max_points=5.0))

        assert [c.code for c in delta.added] == ["B", "C"]
        assert delta.removed == []

    def test_nothing_matches(self, sync_result):
        """Test an empty delta when nothing matches."""
        delta = filter_changes(sync_result, PointsFilter.exact(60.0))

        assert delta.is_empty()

    def test_filter_courses_helper(self):
        """Test filtering a plain course list."""
        courses = [make_course("A", 10.0), make_course("B", 20.0)]

        assert filter_courses(courses, PointsFilter.range(min_points=15.0)) == [courses[1]]
