from datetime import datetime, timezone
from pathlib import Path, PurePosixPath

import pytest

from lumisync.core.planner import LocalFileSystem, decide, plan
from lumisync.exceptions import PathSafetyError
from lumisync.models.sync import SyncAction
from lumisync.models.tree import DiscoveredFile, File

ROOT = Path("/sync")


class FakeFileSystem:
    def __init__(self, mtimes=None):
        self.mtimes = dict(mtimes or {})

    def mtime(self, path):
        return self.mtimes.get(path)


def _file(file_id, ts):
    updated = datetime.fromtimestamp(ts, timezone.utc) if ts is not None else None
    return File(id=file_id, name=file_id, last_updated=updated)


def _discovered(file_id, path, ts):
    return DiscoveredFile(_file(file_id, ts), PurePosixPath(path))


def test_absent_file_is_created():
    tasks = plan([_discovered("a", "CS101/a.pdf", 1000)], ROOT, fs=FakeFileSystem())
    assert [t.action for t in tasks] == [SyncAction.CREATE]
    assert tasks[0].destination == ROOT / "CS101" / "a.pdf"


def test_cs101_scenario():
    discovered = [
        _discovered("new", "CS101/Lectures/new.pdf", 2_000_000),
        _discovered("same", "CS101/Lectures/same.pdf", 1_000_000.9),
        _discovered("updated", "CS101/Lectures/updated.pdf", 3_000_000),
    ]
    fs = FakeFileSystem(
        {
            ROOT / "CS101/Lectures/same.pdf": 1_000_000.1,
            ROOT / "CS101/Lectures/updated.pdf": 2_000_000,
        }
    )
    actions = {t.file.id: t.action for t in plan(discovered, ROOT, fs=fs)}
    assert actions == {
        "new": SyncAction.CREATE,
        "same": SyncAction.SKIP,
        "updated": SyncAction.OVERWRITE,
    }


def test_local_copy_newer_than_remote_is_kept():
    action, _ = decide(_file("a", 1000), local_mtime=5000)
    assert action is SyncAction.SKIP


def test_unknown_remote_timestamp_never_overwrites():
    assert decide(_file("a", None), local_mtime=1.0) == (SyncAction.SKIP, False)
    assert decide(_file("a", None), local_mtime=None) == (SyncAction.CREATE, False)


@pytest.mark.parametrize(
    "policy, expected",
    [
        ("skip", (SyncAction.SKIP, False)),
        ("overwrite", (SyncAction.OVERWRITE, False)),
        ("rename", (SyncAction.OVERWRITE, True)),
    ],
)
def test_update_policies(policy, expected):
    assert decide(_file("a", 2000), local_mtime=1000, on_updated=policy) == expected


def test_planning_is_idempotent_once_applied():
    discovered = [
        _discovered("a", "CS101/a.pdf", 1000.5),
        _discovered("b", "CS101/sub/b.pdf", 2000),
    ]
    first = plan(discovered, ROOT, fs=FakeFileSystem())
    assert all(t.action is SyncAction.CREATE for t in first)

    # What the executor leaves behind: the remote timestamp as local mtime
    applied = FakeFileSystem(
        {t.destination: t.file.last_updated_timestamp for t in first}
    )
    second = plan(discovered, ROOT, fs=applied)
    assert all(t.action is SyncAction.SKIP for t in second)


def test_unknown_policy_is_rejected():
    with pytest.raises(ValueError):
        plan([], ROOT, fs=FakeFileSystem(), on_updated="merge")


def test_escaping_paths_are_refused():
    with pytest.raises(PathSafetyError):
        plan([_discovered("x", "../outside.pdf", 1)], ROOT, fs=FakeFileSystem())


def test_local_file_system_reads_mtimes(tmp_path):
    target = tmp_path / "a.pdf"
    fs = LocalFileSystem()
    assert fs.mtime(target) is None
    target.write_bytes(b"x")
    assert fs.mtime(target) == target.stat().st_mtime


def test_file_where_a_folder_should_be_plans_a_create(tmp_path):
    (tmp_path / "CS101").mkdir()
    (tmp_path / "CS101" / "Lectures").write_bytes(b"stale")
    discovered = [
        _discovered("a", "CS101/a.pdf", 1000),
        _discovered("l1", "CS101/Lectures/L1.pdf", 1000),
    ]
    tasks = plan(discovered, tmp_path)
    assert [(t.file.id, t.action) for t in tasks] == [
        ("a", SyncAction.CREATE),
        ("l1", SyncAction.CREATE),
    ]


class BrokenFileSystem:
    def mtime(self, path):
        raise PermissionError(13, "Permission denied", str(path))


def test_unreadable_destination_does_not_abort_planning():
    tasks = plan([_discovered("a", "CS101/a.pdf", 1000)], ROOT, fs=BrokenFileSystem())
    assert [t.action for t in tasks] == [SyncAction.CREATE]
