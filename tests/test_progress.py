"""
Unit tests for archive run progress tracking.
"""

import logging
import time

from archiver.progress import ContainerProgress, RunProgress, _format_duration


class TestFormatDuration:
    def test_seconds_only(self):
        assert _format_duration(45) == "45s"

    def test_zero(self):
        assert _format_duration(0) == "0s"

    def test_negative(self):
        assert _format_duration(-5) == "0s"

    def test_minutes_and_seconds(self):
        assert _format_duration(150) == "2m 30s"

    def test_exact_minutes(self):
        assert _format_duration(120) == "2m"

    def test_hours_and_minutes(self):
        assert _format_duration(4500) == "1h 15m"

    def test_exact_hours(self):
        assert _format_duration(3600) == "1h"

    def test_large_value(self):
        assert _format_duration(7260) == "2h 1m"


class TestContainerProgress:
    def test_initial_state(self):
        cp = ContainerProgress(1, 3, "releases")
        assert cp.fetched == 0
        assert cp.stored == 0
        assert cp.index == 1
        assert cp.total == 3

    def test_update_accumulates(self):
        cp = ContainerProgress(1, 3, "releases")
        cp.update(100, 95)
        cp.update(50, 0)
        assert cp.fetched == 150
        assert cp.stored == 95

    def test_rate(self):
        cp = ContainerProgress(1, 3, "releases")
        cp._start = time.monotonic() - 10.0
        cp.update(500, 500)
        assert 40.0 < cp.rate < 60.0

    def test_rate_nothing_fetched(self):
        assert ContainerProgress(1, 3, "releases").rate == 0.0

    def test_log_complete(self, caplog):
        cp = ContainerProgress(2, 3, "releases")
        cp.update(10, 4)
        with caplog.at_level(logging.INFO, logger="archiver.progress"):
            cp.log_complete()
        assert '[2/3] "releases": 10 fetched, 4 new' in caplog.text

    def test_log_failed_is_warning(self, caplog):
        cp = ContainerProgress(1, 1, "general")
        with caplog.at_level(logging.INFO, logger="archiver.progress"):
            cp.log_failed()
        assert caplog.records[-1].levelno == logging.WARNING


class TestRunProgress:
    def test_update_from_container(self):
        rp = RunProgress(total=2)

        a = ContainerProgress(1, 2, "a")
        a.update(300, 280)
        b = ContainerProgress(2, 2, "b")
        b.update(20, 0)

        rp.update_from_container(b, failed=True)
        rp.update_from_container(a)

        assert rp.fetched == 320
        assert rp.stored == 280
        assert rp.completed == 2
        assert rp.failed == 1

    def test_log_run_progress(self, caplog):
        rp = RunProgress(total=4)
        rp.completed = 3
        rp.failed = 1
        with caplog.at_level(logging.INFO, logger="archiver.progress"):
            rp.log_run_progress()
        assert "3/4 containers done (1 failed)" in caplog.text
