import asyncio
import os
import time
from datetime import datetime, timezone

import pytest

from lumisync.core.executor import DownloadExecutor
from lumisync.exceptions import FilesystemError, NetworkError, SessionExpiredError
from lumisync.models.sync import RunSummary, SyncAction, SyncOutcome, SyncTask
from lumisync.models.tree import File

UPDATED = datetime(2023, 8, 14, 2, 30, tzinfo=timezone.utc)


class FakeResolver:
    def __init__(self):
        self.resolved = []

    async def get_download_handle(self, file):
        self.resolved.append(file.id)
        return f"https://files.example/{file.id}"


class FakeFetcher:
    """Writes ``content-<id>`` into the temp file, or fails as configured."""

    def __init__(self, errors=None, slow=()):
        self.errors = errors or {}
        self.slow = set(slow)
        self.cancelled = 0
        self.targets = []
        self.active = 0
        self.peak = 0

    async def download_file(
        self,
        url,
        destination_path,
        total_size_estimate=0,
        stats=None,
        progress_manager=None,
        task_id=None,
    ):
        file_id = url.rsplit("/", 1)[1]
        self.targets.append(destination_path)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            return await self._write(file_id, destination_path)
        finally:
            self.active -= 1

    async def _write(self, file_id, destination_path):
        if file_id in self.slow:
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                self.cancelled += 1
                raise
        await asyncio.sleep(0.01)
        if file_id in self.errors:
            destination_path.write_bytes(b"partial")
            raise self.errors[file_id]
        content = f"content-{file_id}".encode()
        destination_path.write_bytes(content)
        return len(content)


def _task(root, file_id, action=SyncAction.CREATE, keep_previous=False, name=None):
    file = File(id=file_id, name=name or f"{file_id}.pdf", last_updated=UPDATED)
    return SyncTask(
        file=file,
        destination=root / "CS101" / file.name,
        action=action,
        keep_previous=keep_previous,
    )


def _execute(root, tasks, fetcher, **kwargs):
    executor = DownloadExecutor(FakeResolver(), fetcher, root, **kwargs)
    return asyncio.run(executor.execute(tasks))


def _leftovers(root):
    return [p.name for p in root.rglob("~!*")]


def test_downloads_land_with_the_remote_mtime(tmp_path):
    summary = _execute(tmp_path, [_task(tmp_path, "a"), _task(tmp_path, "b")], FakeFetcher())

    target = tmp_path / "CS101" / "a.pdf"
    assert target.read_bytes() == b"content-a"
    assert os.stat(target).st_mtime == UPDATED.timestamp()
    assert summary.created == 2
    assert summary.total_bytes == len(b"content-a") * 2
    assert not summary.has_failures
    assert summary.finished_at is not None


def test_failed_count_matches_failing_tasks_and_leaves_no_partial_files(tmp_path):
    fetcher = FakeFetcher(
        errors={
            "b": NetworkError("connection reset"),
            "d": FilesystemError("disk full"),
        }
    )
    tasks = [_task(tmp_path, file_id) for file_id in "abcde"]
    summary = _execute(tmp_path, tasks, fetcher, max_workers=2)

    assert summary.failed == 2
    assert summary.created == 3
    assert {r.error_kind for r in summary.problems} == {"network", "filesystem"}
    assert not (tmp_path / "CS101" / "b.pdf").exists()
    assert not (tmp_path / "CS101" / "d.pdf").exists()
    assert _leftovers(tmp_path) == []
    assert summary.has_failures


def test_content_is_streamed_into_a_temporary_sibling(tmp_path):
    fetcher = FakeFetcher()
    _execute(tmp_path, [_task(tmp_path, "a")], fetcher)
    assert fetcher.targets == [tmp_path / "CS101" / "~!a.pdf"]


def test_failed_overwrite_keeps_the_existing_file(tmp_path):
    existing = tmp_path / "CS101" / "a.pdf"
    existing.parent.mkdir()
    existing.write_bytes(b"old")

    fetcher = FakeFetcher(errors={"a": NetworkError("timeout")})
    summary = _execute(
        tmp_path, [_task(tmp_path, "a", action=SyncAction.OVERWRITE)], fetcher
    )
    assert summary.failed == 1
    assert existing.read_bytes() == b"old"


def test_overwrite_with_keep_previous_renames_the_old_copy(tmp_path):
    existing = tmp_path / "CS101" / "a.pdf"
    existing.parent.mkdir()
    existing.write_bytes(b"old")
    old_mtime = time.mktime((2023, 1, 5, 12, 0, 0, 0, 0, -1))
    os.utime(existing, (old_mtime, old_mtime))

    summary = _execute(
        tmp_path,
        [_task(tmp_path, "a", action=SyncAction.OVERWRITE, keep_previous=True)],
        FakeFetcher(),
    )
    assert summary.overwritten == 1
    assert existing.read_bytes() == b"content-a"
    kept = tmp_path / "CS101" / "a_autorename_2023-01-05.pdf"
    assert kept.read_bytes() == b"old"


def test_skip_tasks_are_counted_without_fetching(tmp_path):
    resolver = FakeResolver()
    fetcher = FakeFetcher()
    executor = DownloadExecutor(resolver, fetcher, tmp_path)
    summary = asyncio.run(
        executor.execute([_task(tmp_path, "a", action=SyncAction.SKIP)])
    )
    assert summary.skipped == 1
    assert resolver.resolved == [] and fetcher.targets == []


def test_known_download_handle_is_not_resolved_again(tmp_path):
    task = _task(tmp_path, "a")
    task.file.download_handle = "https://files.example/a"
    resolver = FakeResolver()
    asyncio.run(DownloadExecutor(resolver, FakeFetcher(), tmp_path).execute([task]))
    assert resolver.resolved == []


def test_dry_run_writes_nothing(tmp_path):
    summary = _execute(
        tmp_path,
        [_task(tmp_path, "a"), _task(tmp_path, "b", action=SyncAction.OVERWRITE)],
        FakeFetcher(),
        dry_run=True,
    )
    assert summary.created == 1 and summary.overwritten == 1
    assert summary.dry_run
    assert list(tmp_path.iterdir()) == []


def test_destinations_escaping_through_symlinks_are_rejected(tmp_path):
    root = tmp_path / "root"
    outside = tmp_path / "outside"
    root.mkdir()
    outside.mkdir()
    (root / "CS101").symlink_to(outside, target_is_directory=True)

    summary = _execute(root, [_task(root, "a")], FakeFetcher())
    assert summary.rejected == 1
    assert summary.problems[0].outcome is SyncOutcome.REJECTED
    assert list(outside.iterdir()) == []


def test_auth_errors_cancel_everything_in_flight(tmp_path):
    fetcher = FakeFetcher(
        errors={"bad": SessionExpiredError("expired")}, slow=("s1", "s2", "s3")
    )
    tasks = [_task(tmp_path, file_id) for file_id in ("s1", "s2", "s3", "bad")]

    started = time.monotonic()
    with pytest.raises(SessionExpiredError):
        _execute(tmp_path, tasks, fetcher, max_workers=4)
    assert time.monotonic() - started < 10
    assert fetcher.cancelled == 3
    assert _leftovers(tmp_path) == []


def test_results_are_recorded_into_a_given_summary(tmp_path):
    summary = RunSummary()
    executor = DownloadExecutor(FakeResolver(), FakeFetcher(), tmp_path)
    returned = asyncio.run(executor.execute([_task(tmp_path, "a")], summary))
    assert returned is summary
    assert summary.downloaded == 1


def test_at_most_max_workers_downloads_are_in_flight(tmp_path):
    fetcher = FakeFetcher()
    tasks = [_task(tmp_path, f"f{i}") for i in range(10)]
    summary = _execute(tmp_path, tasks, fetcher, max_workers=3)
    assert summary.created == 10
    assert 1 < fetcher.peak <= 3


def test_remote_file_named_like_a_temporary_download_is_rejected(tmp_path):
    tasks = [
        _task(tmp_path, "tmp", name="~!a.pdf"),
        _task(tmp_path, "a", name="a.pdf"),
    ]
    summary = _execute(tmp_path, tasks, FakeFetcher(), max_workers=1)

    assert summary.rejected == 1
    assert summary.created == 1
    assert (tmp_path / "CS101" / "a.pdf").read_bytes() == b"content-a"
    assert _leftovers(tmp_path) == []


def test_file_in_the_way_of_a_folder_fails_only_that_task(tmp_path):
    (tmp_path / "CS101").mkdir()
    (tmp_path / "CS101" / "Lectures").write_bytes(b"stale")
    blocked = SyncTask(
        file=File(id="l1", name="l1.pdf", last_updated=UPDATED),
        destination=tmp_path / "CS101" / "Lectures" / "l1.pdf",
        action=SyncAction.CREATE,
    )

    summary = _execute(tmp_path, [blocked, _task(tmp_path, "a")], FakeFetcher())
    assert summary.failed == 1
    assert summary.created == 1
    assert summary.problems[0].error_kind == "filesystem"
    assert (tmp_path / "CS101" / "Lectures").read_bytes() == b"stale"
