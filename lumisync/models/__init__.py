"""
Data Models Layer.

This package contains the configuration models, the domain objects handed
out by the API client, the remote wire schema and the sync bookkeeping types.
"""

from .config import Credentials, SyncConfig
from .module import Announcement, Module, ModuleAccess
from .sync import RunSummary, SyncAction, SyncOutcome, SyncResult, SyncTask
from .tree import DiscoveredFile, File, Folder, TreeNode

__all__ = [
    "Announcement",
    "Credentials",
    "DiscoveredFile",
    "File",
    "Folder",
    "Module",
    "ModuleAccess",
    "RunSummary",
    "SyncAction",
    "SyncConfig",
    "SyncOutcome",
    "SyncResult",
    "SyncTask",
    "TreeNode",
]
