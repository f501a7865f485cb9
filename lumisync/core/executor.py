"""
Carries out a sync plan: downloads with bounded concurrency and records the
outcome of every task.
"""

import asyncio
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol

import aiohttp
from rich.markup import escape

from lumisync.cli.progress_manager import ProgressManager
from lumisync.exceptions import AuthError, LumiSyncError, PathSafetyError
from lumisync.models.sync import (
    RunSummary,
    SyncAction,
    SyncOutcome,
    SyncResult,
    SyncTask,
)
from lumisync.models.tree import File
from lumisync.utils.path import (
    TEMP_PREFIX,
    autorename_path,
    create_dir,
    ensure_within_root,
    temporary_path,
)
from lumisync.utils.tasks import gather_or_cancel

log = logging.getLogger(__name__)


class HandleResolver(Protocol):
    async def get_download_handle(self, file: File) -> str: ...


class FileFetcher(Protocol):
    async def download_file(
        self,
        url: str,
        destination_path: Path,
        total_size_estimate: int = 0,
        stats: Optional[RunSummary] = None,
        progress_manager: Optional[ProgressManager] = None,
        task_id=None,
    ) -> int: ...


class DownloadExecutor:
    """
    Runs ``SyncTask``s under a semaphore of ``max_workers``.

    A task never leaves a partial file at its destination: content is streamed
    into a ``~!`` sibling and only moved in place once complete. Per-task
    failures become FAILED results; ``AuthError`` cancels every task in flight
    and propagates.
    """

    def __init__(
        self,
        resolver: HandleResolver,
        fetcher: FileFetcher,
        root: Path,
        max_workers: int = 8,
        progress_manager: Optional[ProgressManager] = None,
        dry_run: bool = False,
    ):
        self.resolver = resolver
        self.fetcher = fetcher
        self.root = root
        self.max_workers = max_workers
        self.progress_manager = progress_manager
        self.dry_run = dry_run

    async def execute(
        self, tasks: list[SyncTask], summary: Optional[RunSummary] = None
    ) -> RunSummary:
        """Returns once every task has finished, successfully or not."""
        summary = summary or RunSummary(dry_run=self.dry_run)
        semaphore = asyncio.Semaphore(self.max_workers)

        pending = []
        for task in tasks:
            if task.action is SyncAction.SKIP:
                summary.record(SyncResult(task, SyncOutcome.SKIPPED))
            else:
                pending.append(task)

        if self.progress_manager:
            self.progress_manager.initialize_session(len(pending))
        try:
            await gather_or_cancel(
                [self._run(task, semaphore, summary) for task in pending]
            )
        finally:
            summary.finish()
        return summary

    async def _run(
        self, task: SyncTask, semaphore: asyncio.Semaphore, summary: RunSummary
    ) -> SyncResult:
        async with semaphore:
            result = await self._process(task, summary)
        summary.record(result)
        if self.progress_manager:
            self.progress_manager.record_result(result)
        return result

    async def _process(self, task: SyncTask, summary: RunSummary) -> SyncResult:
        try:
            destination = ensure_within_root(self.root, task.destination)
            if destination.name.startswith(TEMP_PREFIX):
                raise PathSafetyError(
                    f"Destination '{task.destination}' uses the name of a temporary download"
                )
        except PathSafetyError as e:
            log.warning(f"[yellow]{escape(str(e))}[/yellow]")
            return SyncResult(
                task, SyncOutcome.REJECTED, error_kind=e.kind, error=str(e)
            )

        outcome = (
            SyncOutcome.CREATED
            if task.action is SyncAction.CREATE
            else SyncOutcome.OVERWRITTEN
        )
        if self.dry_run:
            log.info(f"Would {task.action.value} {escape(self._display(destination))}")
            return SyncResult(task, outcome)

        temp = temporary_path(destination)
        task_id = None
        try:
            url = task.file.download_handle or await self.resolver.get_download_handle(
                task.file
            )
            await asyncio.to_thread(create_dir, destination.parent)

            if self.progress_manager:
                task_id = self.progress_manager.add_download_task(
                    destination.name, task.file.size or 0
                )
            written = await self.fetcher.download_file(
                url,
                temp,
                total_size_estimate=task.file.size or 0,
                stats=summary,
                progress_manager=self.progress_manager,
                task_id=task_id,
            )
            await asyncio.to_thread(self._install, task, temp, destination)
        except AuthError:
            raise
        except (LumiSyncError, OSError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            kind = _error_kind(e)
            log.error(
                f"[red]Failed to download {escape(self._display(destination))}: "
                f"{escape(str(e))}[/red]"
            )
            log.debug("Download failure details", exc_info=True)
            return SyncResult(task, SyncOutcome.FAILED, error_kind=kind, error=str(e))
        finally:
            if self.progress_manager and task_id is not None:
                self.progress_manager.remove_task(task_id)
            _remove_quietly(temp)

        verb = "Downloaded" if outcome is SyncOutcome.CREATED else "Updated"
        log.info(f"{verb} {escape(self._display(destination))}")
        return SyncResult(task, outcome, bytes_written=written)

    @staticmethod
    def _install(task: SyncTask, temp: Path, destination: Path) -> None:
        """Moves a finished download in place and mirrors the remote mtime."""
        if task.keep_previous and destination.exists():
            previous = datetime.fromtimestamp(destination.stat().st_mtime).date()
            renamed = autorename_path(destination, previous)
            os.replace(destination, renamed)
            log.info(f"Kept previous version as {renamed.name}")

        os.replace(temp, destination)
        timestamp = task.file.last_updated_timestamp
        if timestamp is not None:
            os.utime(destination, (timestamp, timestamp))

    def _display(self, destination: Path) -> str:
        try:
            return str(destination.relative_to(self.root.resolve()))
        except ValueError:
            return str(destination)


def _error_kind(error: BaseException) -> str:
    if isinstance(error, LumiSyncError):
        return error.kind
    if isinstance(error, (aiohttp.ClientError, asyncio.TimeoutError)):
        return "network"
    return "filesystem"


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        log.warning(f"[yellow]Could not remove temporary file {path}: {e}[/yellow]")
