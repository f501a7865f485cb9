"""
Walks the remote workbin of every module and flattens it into file entries.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Callable, Optional, Protocol

from rich.markup import escape

from lumisync.exceptions import NetworkError, PathSafetyError, ProtocolError
from lumisync.models.module import Module
from lumisync.models.sync import DiscoveryFailure
from lumisync.models.tree import DiscoveredFile, File, Folder, TreeNode
from lumisync.utils.path import make_paths_unique, sanitize_segment
from lumisync.utils.tasks import gather_or_cancel

log = logging.getLogger(__name__)

UNKNOWN_CREATOR = "Unknown"


class ChildLister(Protocol):
    async def list_children(self, folder: Folder) -> list[TreeNode]: ...


class VisitedFolders:
    """
    Folder and file ids seen during one run.

    Shared by every walker of the run; ``claim_*`` returns True only for the
    first caller, so a folder reachable twice (or through a cycle) is listed
    and expanded once, and a file reachable twice is reported once.
    """

    def __init__(self):
        self._folders: set[str] = set()
        self._files: set[str] = set()
        self._lock = asyncio.Lock()

    async def claim_folder(self, folder_id: str) -> bool:
        async with self._lock:
            if folder_id in self._folders:
                return False
            self._folders.add(folder_id)
            return True

    async def claim_file(self, file_id: str) -> bool:
        async with self._lock:
            if file_id in self._files:
                return False
            self._files.add(file_id)
            return True

    @property
    def folder_count(self) -> int:
        return len(self._folders)


@dataclass
class DiscoveryResult:
    files: list[DiscoveredFile] = field(default_factory=list)
    failures: list[DiscoveryFailure] = field(default_factory=list)
    rejected: list[DiscoveryFailure] = field(default_factory=list)


class TreeDiscovery:
    """
    Expands module folder trees concurrently.

    Args:
        client: Anything with ``list_children``; normally the API client.
        max_concurrency: Upper bound on listings in flight at once.
        include_uploadable: Decides per module whether folders that accept
            student uploads are walked. Defaults to never.
    """

    def __init__(
        self,
        client: ChildLister,
        max_concurrency: int = 8,
        include_uploadable: Optional[Callable[[Module], bool]] = None,
    ):
        self._client = client
        self._max_concurrency = max_concurrency
        self._include_uploadable = include_uploadable or (lambda module: False)

    async def discover(self, modules: list[Module]) -> DiscoveryResult:
        """
        Lists every accessible module and returns all files with their
        sanitised paths relative to the sync root.

        Listing failures are contained to their subtree and reported in the
        result. ``AuthError`` is not contained and ends the walk.
        """
        run = _DiscoveryRun(
            visited=VisitedFolders(),
            semaphore=asyncio.Semaphore(self._max_concurrency),
        )
        accessible = [m for m in modules if m.has_access]
        for module in modules:
            if not module.has_access:
                log.info(f"Skipping {module.code}: no access to its workbin")

        per_module = await gather_or_cancel(
            [self._walk_module(module, run) for module in accessible]
        )
        for entries in per_module:
            run.result.files.extend(entries)

        log.debug(
            f"Discovered {len(run.result.files)} files in "
            f"{run.visited.folder_count} folders"
        )
        return run.result

    async def _walk_module(self, module: Module, run: "_DiscoveryRun") -> list[DiscoveredFile]:
        try:
            root_segment = sanitize_segment(module.code)
        except PathSafetyError as e:
            run.reject(module.code, e)
            return []

        root = Folder(id=module.id, name=module.code)
        include_uploadable = self._include_uploadable(module)
        entries = await self._walk(root, (root_segment,), include_uploadable, run)
        return make_paths_unique(entries)

    async def _walk(
        self,
        folder: Folder,
        segments: tuple[str, ...],
        include_uploadable: bool,
        run: "_DiscoveryRun",
    ) -> list[DiscoveredFile]:
        if not await run.visited.claim_folder(folder.id):
            log.debug(f"Folder {folder.id} already visited, not expanding it again")
            return []

        display_path = "/".join(segments)
        try:
            async with run.semaphore:
                children = await self._client.list_children(folder)
        except (NetworkError, ProtocolError) as e:
            log.warning(
                f"[yellow]Skipping '{escape(display_path)}': {escape(str(e))}[/yellow]"
            )
            run.result.failures.append(DiscoveryFailure(display_path, e.kind, str(e)))
            return []

        folder.children = _dedupe(children)

        files: list[DiscoveredFile] = []
        subfolders: list[tuple[Folder, tuple[str, ...]]] = []
        for child in folder.children:
            if isinstance(child, Folder):
                if child.allow_upload and not include_uploadable:
                    log.debug(f"Skipping upload folder '{display_path}/{child.name}'")
                    continue
                try:
                    segment = sanitize_segment(child.name)
                except PathSafetyError as e:
                    run.reject(f"{display_path}/{child.name}", e)
                    continue
                subfolders.append((child, segments + (segment,)))
            else:
                if not await run.visited.claim_file(child.id):
                    continue
                name = _local_name(child, folder)
                try:
                    segment = sanitize_segment(name)
                except PathSafetyError as e:
                    run.reject(f"{display_path}/{name}", e)
                    continue
                files.append(DiscoveredFile(child, PurePosixPath(*segments, segment)))

        nested = await gather_or_cancel(
            [
                self._walk(sub, sub_segments, include_uploadable, run)
                for sub, sub_segments in subfolders
            ]
        )
        for entries in nested:
            files.extend(entries)
        return files


@dataclass
class _DiscoveryRun:
    visited: VisitedFolders
    semaphore: asyncio.Semaphore
    result: DiscoveryResult = field(default_factory=DiscoveryResult)

    def reject(self, display_path: str, error: PathSafetyError) -> None:
        log.warning(f"[yellow]Rejected '{escape(display_path)}': {escape(str(error))}[/yellow]")
        self.result.rejected.append(DiscoveryFailure(display_path, error.kind, str(error)))


def _dedupe(children: list[TreeNode]) -> list[TreeNode]:
    """Drops children whose id already appeared earlier in the same listing."""
    seen = set()
    unique = []
    for child in children:
        if child.id in seen:
            log.debug(f"Dropping duplicate entry {child.id} in listing")
            continue
        seen.add(child.id)
        unique.append(child)
    return unique


def _local_name(file: File, folder: Folder) -> str:
    if folder.allow_upload:
        return f"{file.creator_name or UNKNOWN_CREATOR} - {file.name}"
    return file.name
