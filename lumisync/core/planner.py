"""
Decides, per discovered file, whether it has to be downloaded.

``plan`` is a pure function of the remote metadata and whatever the injected
``FileSystemView`` reports; it never writes anything.
"""

import logging
import math
import os
from pathlib import Path
from typing import Iterable, Optional, Protocol

from rich.markup import escape

from lumisync.models.config import UPDATE_POLICIES
from lumisync.models.sync import SyncAction, SyncTask
from lumisync.models.tree import DiscoveredFile, File
from lumisync.utils.path import join_under_root

log = logging.getLogger(__name__)


class FileSystemView(Protocol):
    def mtime(self, path: Path) -> Optional[float]:
        """Modification time of ``path`` in POSIX seconds, or None if absent."""
        ...


class LocalFileSystem:
    """Reads modification times from the real disk."""

    def mtime(self, path: Path) -> Optional[float]:
        try:
            return os.stat(path).st_mtime
        except (FileNotFoundError, NotADirectoryError):
            return None


def decide(
    file: File, local_mtime: Optional[float], on_updated: str = "overwrite"
) -> tuple[SyncAction, bool]:
    """
    Returns the action for one file and whether the existing copy is kept aside.

    Timestamps are compared at whole-second resolution, since the remote side
    reports sub-second precision that filesystems do not all keep.
    """
    if local_mtime is None:
        return SyncAction.CREATE, False

    remote = file.last_updated_timestamp
    if remote is None:
        return SyncAction.SKIP, False
    if math.floor(remote) <= math.floor(local_mtime):
        return SyncAction.SKIP, False

    if on_updated == "skip":
        return SyncAction.SKIP, False
    return SyncAction.OVERWRITE, on_updated == "rename"


def plan(
    discovered: Iterable[DiscoveredFile],
    root: Path,
    fs: Optional[FileSystemView] = None,
    on_updated: str = "overwrite",
) -> list[SyncTask]:
    """
    Builds one ``SyncTask`` per discovered file.

    Raises:
        PathSafetyError: If an entry would land outside ``root``.
        ValueError: If ``on_updated`` is not a known policy.
    """
    if on_updated not in UPDATE_POLICIES:
        raise ValueError(f"Unknown update policy '{on_updated}'")
    fs = fs or LocalFileSystem()

    tasks = []
    for entry in discovered:
        destination = join_under_root(root, entry.relative_path)
        try:
            local_mtime = fs.mtime(destination)
        except OSError as e:
            # the executor reports the failure when it tries to write
            log.warning(f"[yellow]Cannot inspect {escape(str(destination))}: {escape(str(e))}[/yellow]")
            local_mtime = None
        action, keep_previous = decide(entry.file, local_mtime, on_updated)
        tasks.append(
            SyncTask(
                file=entry.file,
                destination=destination,
                action=action,
                keep_previous=keep_previous,
            )
        )

    log.debug(
        f"Planned {sum(t.action is not SyncAction.SKIP for t in tasks)} of "
        f"{len(tasks)} files for download"
    )
    return tasks
