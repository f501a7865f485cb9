"""
Nodes of the remote workbin hierarchy.

Folders own their children; the ``parent`` link only exists so a node can
tell where it sits when paths are built, it is never used to walk upwards for
ownership purposes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import PurePosixPath
from typing import Optional, Union


@dataclass(eq=False)
class Folder:
    id: str
    name: str
    parent: Optional["Folder"] = field(default=None, repr=False)
    allow_upload: bool = False
    # None until discovery has listed the folder
    children: Optional[list["TreeNode"]] = field(default=None, repr=False)

    def ancestry(self) -> list["Folder"]:
        """Returns this folder and its parents, root first."""
        chain = []
        node: Optional[Folder] = self
        seen = set()
        while node is not None and node.id not in seen:
            seen.add(node.id)
            chain.append(node)
            node = node.parent
        return list(reversed(chain))


@dataclass(eq=False)
class File:
    id: str
    name: str
    parent: Optional[Folder] = field(default=None, repr=False)
    download_handle: Optional[str] = field(default=None, repr=False)
    size: Optional[int] = None
    last_updated: Optional[datetime] = None
    creator_name: Optional[str] = None

    @property
    def last_updated_timestamp(self) -> Optional[float]:
        """POSIX timestamp of the remote modification time, when known."""
        if self.last_updated is None:
            return None
        return self.last_updated.timestamp()


TreeNode = Union[Folder, File]


@dataclass(frozen=True)
class DiscoveredFile:
    """A remote file together with its sanitised path relative to the sync root."""

    file: File
    relative_path: PurePosixPath

    def __iter__(self):
        # Lets callers unpack entries as (file, path) pairs.
        yield self.file
        yield self.relative_path
