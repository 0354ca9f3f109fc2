"""
Sync progress tracking for journalctl output.

Provides ``ContainerProgress`` (one container pipeline) and
``RunProgress`` (one sync run) trackers that log human-readable lines
with fetch rates and totals.  Containers finish in arbitrary order when
pipelines run concurrently, so ``RunProgress`` only accumulates.
"""

from __future__ import annotations

import logging
import time

logger = logging.getLogger("archiver.progress")


def _format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples: ``"45s"``, ``"2m 30s"``, ``"1h 15m"``.
    """
    if seconds < 0:
        return "0s"
    total = int(seconds)
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        if secs:
            return f"{minutes}m {secs}s"
        return f"{minutes}m"
    hours, mins = divmod(minutes, 60)
    if mins:
        return f"{hours}h {mins}m"
    return f"{hours}h"


class ContainerProgress:
    """Tracks one container pipeline.

    Args:
        index: 1-based position of the container in the run.
        total: Number of containers in the run.
        name: Display name of the container.
    """

    def __init__(self, index: int, total: int, name: str) -> None:
        self.index = index
        self.total = total
        self.name = name
        self.fetched = 0
        self.stored = 0
        self._start = time.monotonic()

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._start

    @property
    def rate(self) -> float:
        """Records fetched per second."""
        elapsed = self.elapsed_seconds
        if elapsed <= 0:
            return 0.0
        return self.fetched / elapsed

    def update(self, fetched: int, stored: int) -> None:
        self.fetched += fetched
        self.stored += stored

    def log_complete(self) -> None:
        """Log a completion line for this container."""
        logger.info(
            '  [%d/%d] "%s": %d fetched, %d new in %s (%.1f rec/s)',
            self.index,
            self.total,
            self.name,
            self.fetched,
            self.stored,
            _format_duration(self.elapsed_seconds),
            self.rate,
        )

    def log_failed(self) -> None:
        logger.warning(
            '  [%d/%d] "%s": failed after %s (%d new stored before failure)',
            self.index,
            self.total,
            self.name,
            _format_duration(self.elapsed_seconds),
            self.stored,
        )


class RunProgress:
    """Tracks overall progress across the containers of one run.

    Args:
        total: Number of containers being synced.
    """

    def __init__(self, total: int) -> None:
        self.total = total
        self.fetched = 0
        self.stored = 0
        self.completed = 0
        self.failed = 0
        self._start = time.monotonic()

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._start

    def update_from_container(self, container: ContainerProgress, failed: bool = False) -> None:
        """Accumulate stats from a finished container pipeline."""
        self.fetched += container.fetched
        self.stored += container.stored
        self.completed += 1
        if failed:
            self.failed += 1

    def log_run_progress(self) -> None:
        logger.info(
            "  Run: %d/%d containers done (%d failed) | %d fetched, %d new | %s",
            self.completed,
            self.total,
            self.failed,
            self.fetched,
            self.stored,
            _format_duration(self.elapsed_seconds),
        )
