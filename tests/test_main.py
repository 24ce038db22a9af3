"""
Tests for the main module.

Tests cover:
- One synchronization cycle end to end with a fake fetcher
- Notification gating (bootstrap, no changes, filtered out)
- Ledger records for every completed cycle
- Failure propagation without ledger writes
- The fixed-interval loop
- Command line exit codes
"""

import io
import logging
import os
import tempfile

import pytest
from unittest.mock import patch

from course_watcher.config import Config
from course_watcher.fetch import FetchError
from course_watcher.filter import PointsFilter
from course_watcher.main import (
    EXIT_ENV_ERROR,
    EXIT_FAILURE,
    EXIT_SUCCESS,
    build_notifiers,
    main,
    run_cycle,
    run_forever,
)
from course_watcher.notify import ConsoleNotifier, EmailNotifier, Notifier, NotifierChain, SmsNotifier
from course_watcher.storage import IN_MEMORY, Database, StorageError


LOGGER = logging.getLogger("course_watcher.test")


def make_page(courses):
    """Build a one-faculty page from (code, points) pairs."""
    rows = "".join(
        f'<tr><td><a href="/emner/{code}/">{code} - Course {code}</a></td><td>{points}</td></tr>'
        for code, points in courses
    )
    return f'<html><body><h2 id="f">Faculty</h2><table>{rows}</table></body></html>'


class RecordingNotifier(Notifier):
    name = "recording"

    def __init__(self):
        super().__init__()
        self.deltas = []

    def send(self, delta):
        self.deltas.append(delta)


class PageSequence:
    """Fetcher returning one page per call."""

    def __init__(self, *pages):
        self.pages = list(pages)
        self.urls = []

    def __call__(self, url):
        self.urls.append(url)
        page = self.pages.pop(0)
        if isinstance(page, Exception):
            raise page
        return page


@pytest.fixture
def db():
    """In-memory database."""
    database = Database(IN_MEMORY)
    yield database
    database.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


def _cycle(sequence, db, notifier, fetcher, points_filter=None):
    return run_cycle(
        sequence,
        Config(url="https://example.com/courses"),
        db,
        points_filter or PointsFilter.none(),
        NotifierChain([notifier]),
        LOGGER,
        fetcher=fetcher,
    )


class TestRunCycle:
    """Tests for a single cycle."""

    def test_bootstrap_then_changes(self, db, notifier):
        """Test A, B, C followed by B, C, D through the whole pipeline."""
        fetcher = PageSequence(
            make_page([("A", 10), ("B", 10), ("C", 10)]),
            make_page([("B", 10), ("C", 10), ("D", 10)]),
        )

        first = _cycle(1, db, notifier, fetcher)
        second = _cycle(2, db, notifier, fetcher)

        assert first.sync_result.is_first_run is True
        assert first.notification_sent is False
        assert [c.code for c in second.filtered.added] == ["D"]
        assert [c.code for c in second.filtered.removed] == ["A"]
        assert second.notification_sent is True
        assert len(notifier.deltas) == 1
        assert fetcher.urls == ["https://example.com/courses"] * 2

    def test_every_cycle_recorded(self, db, notifier):
        """Test that bootstrap and change cycles both reach the ledger."""
        fetcher = PageSequence(make_page([("A", 10)]), make_page([("B", 10)]))

        first = _cycle(1, db, notifier, fetcher)
        second = _cycle(2, db, notifier, fetcher)

        records = db.runs.list()
        assert [r.id for r in records] == [second.run_id, first.run_id]
        assert records[1].is_first_run is True
        assert records[0].added_codes == ["B"]
        assert records[0].removed_codes == ["A"]
        assert records[0].notification_sent is True

    def test_no_changes_no_notification(self, db, notifier):
        """Test that an unchanged page sends nothing."""
        page = make_page([("A", 10)])
        fetcher = PageSequence(page, page)

        _cycle(1, db, notifier, fetcher)
        outcome = _cycle(2, db, notifier, fetcher)

        assert outcome.deliveries == []
        assert notifier.deltas == []
        assert db.runs.get(outcome.run_id).notification_sent is False

    def test_filtered_out_changes(self, db, notifier):
        """Test that changes outside the filter are recorded but not sent."""
        fetcher = PageSequence(make_page([("A", 10)]), make_page([("A", 10), ("B", 5)]))

        _cycle(1, db, notifier, fetcher, PointsFilter.exact(10.0))
        outcome = _cycle(2, db, notifier, fetcher, PointsFilter.exact(10.0))

        assert notifier.deltas == []
        record = db.runs.get(outcome.run_id)
        assert record.raw_added_count == 1
        assert record.filtered_added_count == 0
        assert record.filter_used == "courses with exactly 10 points"

    def test_fetch_failure_propagates(self, db, notifier):
        """Test that a fetch failure leaves store and ledger untouched."""
        fetcher = PageSequence(FetchError("HTTP 503", status_code=503))

        with pytest.raises(FetchError):
            _cycle(1, db, notifier, fetcher)

        assert db.courses.count() == 0
        assert db.runs.list() == []

    def test_storage_failure_propagates(self, db, notifier, monkeypatch):
        """Test that a storage failure is not recorded as a run."""
        fetcher = PageSequence(make_page([("A", 10)]), make_page([("B", 10)]))
        _cycle(1, db, notifier, fetcher)

        def failing_remove(code):
            raise StorageError("disk full")

        monkeypatch.setattr(db.courses, "remove", failing_remove)

        with pytest.raises(StorageError):
            _cycle(2, db, notifier, fetcher)

        assert list(db.courses.get_all()) == ["A"]
        assert len(db.runs.list()) == 1


class TestRunForever:
    """Tests for the fixed-interval loop."""

    def test_continues_after_failure(self, db, notifier):
        """Test that a failed cycle does not stop the loop."""
        fetcher = PageSequence(
            make_page([("A", 10)]),
            FetchError("timeout"),
            make_page([("A", 10), ("B", 10)]),
        )
        sleeps = []

        exit_code = run_forever(
            Config(), db, PointsFilter.none(), NotifierChain([notifier]), 60,
            fetcher=fetcher, sleep=sleeps.append, max_cycles=3
        )

        assert exit_code == EXIT_SUCCESS
        assert len(sleeps) == 2
        assert all(0 <= s <= 60 for s in sleeps)
        assert len(db.runs.list()) == 2
        assert [c.code for c in notifier.deltas[0].added] == ["B"]

    def test_survives_unencodable_console(self, db):
        """Test that a console unable to print the report does not stop the loop."""
        stream = io.TextIOWrapper(io.BytesIO(), encoding="ascii")
        faculty_page = make_page([("A", 10), ("B", 10)]).replace(">Faculty<", ">Økonomi<")
        fetcher = PageSequence(
            make_page([("A", 10)]).replace(">Faculty<", ">Økonomi<"),
            faculty_page,
            faculty_page,
        )

        exit_code = run_forever(
            Config(), db, PointsFilter.none(), NotifierChain([ConsoleNotifier(stream=stream)]), 60,
            fetcher=fetcher, sleep=lambda seconds: None, max_cycles=3
        )

        records = db.runs.list()
        assert exit_code == EXIT_SUCCESS
        assert len(records) == 3
        assert records[1].added_codes == ["B"]
        assert records[1].notification_sent is False
        assert sorted(db.courses.get_all()) == ["A", "B"]



class TestBuildNotifiers:
    """Tests for notifier chain construction."""

    def test_console_only(self):
        """Test the default chain."""
        chain = build_notifiers(Config())

        assert [type(n) for n in chain.notifiers] == [ConsoleNotifier]

    def test_all_channels(self):
        """Test that configured channels are appended in order."""
        config = Config(
            email_to="a@example.com",
            email_from="w@example.com",
            smtp_host="smtp.example.com",
            sms_to="91234567",
            sms_from="+4798765432",
            twilio_account_sid="AC1",
            twilio_auth_token="t",
            webhook_url="https://hooks.example.com/x",
            dry_run=True,
        )

        chain = build_notifiers(config)

        assert chain.names() == ["console", "email", "sms", "webhook"]
        assert isinstance(chain.notifiers[1], EmailNotifier)
        assert isinstance(chain.notifiers[2], SmsNotifier)
        assert chain.notifiers[2].recipients == ["+4791234567"]
        assert all(n.dry_run for n in chain.notifiers[1:])


class TestMain:
    """Tests for the command line entry point."""

    @pytest.fixture
    def env(self):
        """Isolated environment with a temporary database path."""
        with tempfile.TemporaryDirectory() as tmpdir:
            values = {"COURSEWATCH_DB_PATH": os.path.join(tmpdir, "watch.db")}
            with patch.dict(os.environ, values, clear=True):
                yield values

    def test_interval_too_short(self, env):
        """Test that start rejects intervals below 10 seconds."""
        assert main(["start", "--interval", "5"]) == EXIT_ENV_ERROR

    def test_invalid_filter(self, env):
        """Test that an invalid filter is a configuration error."""
        assert main(["check", "--points-filter", "abc"]) == EXIT_ENV_ERROR

    def test_invalid_env_number(self, env):
        """Test that a malformed numeric variable is a configuration error."""
        with patch.dict(os.environ, {"COURSEWATCH_POINTS_MIN": "five"}):
            assert main(["check"]) == EXIT_ENV_ERROR

    def test_check_failure(self, env):
        """Test that a failed cycle exits with failure."""
        with patch("course_watcher.main.run_cycle", side_effect=FetchError("HTTP 500", 500)):
            assert main(["check"]) == EXIT_FAILURE

    def test_check_success(self, env):
        """Test a successful single cycle."""
        with patch("course_watcher.main.run_cycle") as mock_run_cycle:
            assert main(["check", "--points-filter", "5-10"]) == EXIT_SUCCESS

        args = mock_run_cycle.call_args.args
        assert args[0] == 1
        assert args[3] == PointsFilter.range(5.0, 10.0)

    def test_runs_empty(self, env, capsys):
        """Test listing an empty ledger."""
        assert main(["runs"]) == EXIT_SUCCESS
        assert "No runs recorded" in capsys.readouterr().out

    def test_runs_missing_id(self, env, capsys):
        """Test that an unknown run id is a failure."""
        assert main(["runs", "--id", "42"]) == EXIT_FAILURE
        assert "not found" in capsys.readouterr().out

    def test_runs_lists_records(self, env, capsys):
        """Test that recorded runs are printed newest first."""
        fetcher = PageSequence(make_page([("A", 10)]), make_page([("B", 10)]))
        with Database(env["COURSEWATCH_DB_PATH"]) as database:
            _cycle(1, database, RecordingNotifier(), fetcher)
            _cycle(2, database, RecordingNotifier(), fetcher)

        assert main(["runs", "--limit", "1"]) == EXIT_SUCCESS

        lines = [line for line in capsys.readouterr().out.splitlines() if line.startswith("#")]
        assert len(lines) == 1
        assert lines[0].startswith("#2 ")

    def test_changes_empty(self, env, capsys):
        """Test listing an empty change log."""
        assert main(["changes"]) == EXIT_SUCCESS
        assert "No changes recorded" in capsys.readouterr().out

    def test_changes_lists_entries(self, env, capsys):
        """Test that detected additions and removals are printed."""
        fetcher = PageSequence(make_page([("A", 10)]), make_page([("B", 7.5)]))
        with Database(env["COURSEWATCH_DB_PATH"]) as database:
            _cycle(1, database, RecordingNotifier(), fetcher)
            _cycle(2, database, RecordingNotifier(), fetcher)

        assert main(["changes", "--limit", "10"]) == EXIT_SUCCESS

        out = capsys.readouterr().out
        assert "added   B - Course B (7.5 points, Faculty)" in out
        assert "removed A - Course A (10 points, Faculty)" in out

    def test_changes_limit(self, env, capsys):
        """Test that the listing honours the limit."""
        fetcher = PageSequence(make_page([("A", 10)]), make_page([("B", 10)]))
        with Database(env["COURSEWATCH_DB_PATH"]) as database:
            _cycle(1, database, RecordingNotifier(), fetcher)
            _cycle(2, database, RecordingNotifier(), fetcher)

        assert main(["changes", "-n", "1"]) == EXIT_SUCCESS

        out = capsys.readouterr().out
        assert out.count(" - Course ") == 1

    def test_courses_lists_store(self, env, capsys):
        """Test that stored courses are printed in code order."""
        fetcher = PageSequence(make_page([("B", 10), ("A", 2.5)]))
        with Database(env["COURSEWATCH_DB_PATH"]) as database:
            _cycle(1, database, RecordingNotifier(), fetcher)

        assert main(["courses"]) == EXIT_SUCCESS

        out = capsys.readouterr().out
        assert out.index("A - Course A (2.5 points, Faculty)") < out.index("B - Course B (10 points, Faculty)")
        assert "2 course(s)" in out

    def test_courses_empty(self, env, capsys):
        """Test listing an empty store."""
        assert main(["courses"]) == EXIT_SUCCESS
        assert "No courses stored" in capsys.readouterr().out
