"""
Plans, per-file results, and the statistics of a sync run.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from lumisync.models.tree import File


class SyncAction(Enum):
    SKIP = "skip"
    CREATE = "create"
    OVERWRITE = "overwrite"


class SyncOutcome(Enum):
    CREATED = "created"
    OVERWRITTEN = "overwritten"
    SKIPPED = "skipped"
    FAILED = "failed"
    REJECTED = "rejected"


@dataclass(frozen=True)
class SyncTask:
    """What to do with one remote file. ``destination`` is absolute and under the root."""

    file: File
    destination: Path
    action: SyncAction
    # move the existing copy aside instead of replacing it
    keep_previous: bool = False


@dataclass(frozen=True)
class SyncResult:
    task: SyncTask
    outcome: SyncOutcome
    bytes_written: int = 0
    error_kind: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_problem(self) -> bool:
        return self.outcome in (SyncOutcome.FAILED, SyncOutcome.REJECTED)


@dataclass(frozen=True)
class DiscoveryFailure:
    """A folder whose subtree could not be listed."""

    path: str
    error_kind: str
    message: str


@dataclass
class RunSummary:
    """Tracks statistics for a sync run, including real-time speed."""

    created: int = 0
    overwritten: int = 0
    skipped: int = 0
    failed: int = 0
    rejected: int = 0
    total_bytes: int = 0
    dry_run: bool = False
    problems: list[SyncResult] = field(default_factory=list)
    discovery_failures: list[DiscoveryFailure] = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic)
    finished_at: Optional[float] = None

    # Real-time speed calculation fields
    # every byte received by any transfer, retries included
    bytes_transferred: int = 0
    current_speed_bps: float = 0.0
    peak_speed_bps: float = 0.0
    _speed_samples: list[float] = field(default_factory=list, repr=False)
    _last_progress_time: float = field(default=0.0, repr=False)
    _last_progress_bytes: int = field(default=0, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def __post_init__(self):
        self._last_progress_time = time.monotonic()

    def record(self, result: SyncResult) -> None:
        """Counts a finished task. Called from the event loop thread only."""
        outcome = result.outcome
        if outcome is SyncOutcome.CREATED:
            self.created += 1
        elif outcome is SyncOutcome.OVERWRITTEN:
            self.overwritten += 1
        elif outcome is SyncOutcome.SKIPPED:
            self.skipped += 1
        elif outcome is SyncOutcome.FAILED:
            self.failed += 1
        elif outcome is SyncOutcome.REJECTED:
            self.rejected += 1

        self.total_bytes += result.bytes_written
        if result.is_problem:
            self.problems.append(result)

    def record_rejected(self, count: int) -> None:
        """Counts entries dropped before planning, e.g. by path checks during discovery."""
        self.rejected += count

    @property
    def downloaded(self) -> int:
        return self.created + self.overwritten

    @property
    def total(self) -> int:
        return (
            self.created + self.overwritten + self.skipped + self.failed + self.rejected
        )

    @property
    def has_failures(self) -> bool:
        return bool(self.failed or self.rejected or self.discovery_failures)

    @property
    def elapsed(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return max(0.0, end - self.started_at)

    def finish(self) -> None:
        self.finished_at = time.monotonic()

    async def update_speed_stats(
        self, total_bytes_so_far: int, progress_manager=None
    ) -> None:
        """
        Updates the download speed based on progress.

        Args:
            total_bytes_so_far: The cumulative total of bytes downloaded in the run.
        """
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_progress_time

            # Update speed roughly twice per second
            if elapsed > 0.5:
                bytes_diff = total_bytes_so_far - self._last_progress_bytes
                if bytes_diff > 0:
                    self._speed_samples.append(bytes_diff / elapsed)
                    # Sliding window of the last 10 samples
                    if len(self._speed_samples) > 10:
                        self._speed_samples.pop(0)

                    self.current_speed_bps = sum(self._speed_samples) / len(
                        self._speed_samples
                    )
                    self.peak_speed_bps = max(
                        self.peak_speed_bps, self.current_speed_bps
                    )
                    if progress_manager:
                        progress_manager.update_speed_stats(
                            self.current_speed_bps, self.peak_speed_bps
                        )

                self._last_progress_time = now
                self._last_progress_bytes = total_bytes_so_far
