"""
The main orchestrator: selects modules, discovers their files, plans and
executes the downloads.
"""

import logging
from pathlib import Path
from typing import Optional

from rich.markup import escape

from lumisync.api.client import LumiNUSClient
from lumisync.cli.progress_manager import ProgressManager
from lumisync.exceptions import ConfigurationError, PathSafetyError
from lumisync.models.config import SyncConfig
from lumisync.models.module import Module
from lumisync.models.sync import DiscoveryFailure, RunSummary
from lumisync.models.tree import DiscoveredFile
from lumisync.utils.path import join_under_root

from .discovery import DiscoveryResult, TreeDiscovery
from .executor import DownloadExecutor, FileFetcher
from .planner import FileSystemView, LocalFileSystem, plan

log = logging.getLogger(__name__)


class SyncManager:
    """Runs one sync of the configured modules into the destination folder."""

    def __init__(
        self,
        config: SyncConfig,
        client: LumiNUSClient,
        fetcher: FileFetcher,
        progress_manager: Optional[ProgressManager] = None,
        fs: Optional[FileSystemView] = None,
    ):
        self.config = config
        self.client = client
        self.fetcher = fetcher
        self.progress_manager = progress_manager
        self.fs = fs or LocalFileSystem()
        self.summary = RunSummary(dry_run=config.dry_run)

    async def select_modules(self) -> list[Module]:
        """Lists the term's modules, narrowed to ``config.modules`` when set."""
        modules = await self.client.list_modules(self.config.term or None)
        if not self.config.modules:
            return modules

        wanted = {code.upper() for code in self.config.modules}
        selected = [m for m in modules if m.code.upper() in wanted]
        missing = wanted - {m.code.upper() for m in selected}
        for code in sorted(missing):
            log.warning(f"[yellow]Module {escape(code)} not found, ignoring it[/yellow]")
        return selected

    async def discover(self, modules: list[Module]) -> DiscoveryResult:
        discovery = TreeDiscovery(
            self.client,
            max_concurrency=self.config.discovery_workers,
            include_uploadable=lambda m: self.config.includes_uploadable_for(m.is_teaching),
        )
        return await discovery.discover(modules)

    async def list_files(self) -> DiscoveryResult:
        """Discovery only, for listing what a sync would consider."""
        return await self.discover(await self.select_modules())

    async def run(self) -> RunSummary:
        """
        Performs the sync and returns its summary.

        Raises:
            ConfigurationError: The destination is not an existing directory.
            AuthError: Logging in or refreshing the session failed.
        """
        root = self.config.destination_path
        if not root.is_dir():
            raise ConfigurationError(f"Destination '{root}' is not an existing directory")

        modules = await self.select_modules()
        if not modules:
            log.warning("[yellow]No modules selected. Nothing to do.[/yellow]")
            self.summary.finish()
            return self.summary
        log.info(
            "Syncing " + ", ".join(escape(m.code) for m in modules) + f" into {root}"
        )

        result = await self.discover(modules)
        self.summary.discovery_failures.extend(result.failures)
        self.summary.discovery_failures.extend(result.rejected)
        self.summary.record_rejected(len(result.rejected))

        tasks = plan(
            self._planable(result.files, root),
            root,
            fs=self.fs,
            on_updated=self.config.on_updated,
        )
        executor = DownloadExecutor(
            self.client,
            self.fetcher,
            root,
            max_workers=self.config.max_workers,
            progress_manager=self.progress_manager,
            dry_run=self.config.dry_run,
        )
        return await executor.execute(tasks, self.summary)

    def _planable(self, files: list[DiscoveredFile], root: Path) -> list[DiscoveredFile]:
        """Drops (and records) entries the planner would refuse."""
        kept = []
        for entry in files:
            try:
                join_under_root(root, entry.relative_path)
            except PathSafetyError as e:
                log.warning(f"[yellow]{escape(str(e))}[/yellow]")
                self.summary.discovery_failures.append(
                    DiscoveryFailure(str(entry.relative_path), e.kind, str(e))
                )
                self.summary.record_rejected(1)
                continue
            kept.append(entry)
        return kept
