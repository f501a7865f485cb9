"""
Core sync engine.

``SyncManager`` coordinates a run: ``TreeDiscovery`` walks the remote
workbins, ``plan`` decides what needs downloading and ``DownloadExecutor``
carries the plan out.
"""
