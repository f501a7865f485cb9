import asyncio
from datetime import datetime, timezone

import pytest

from lumisync.core.discovery import TreeDiscovery, VisitedFolders
from lumisync.exceptions import NetworkError, ProtocolError, SessionExpiredError
from lumisync.models.module import Module, ModuleAccess
from lumisync.models.tree import File, Folder

READ = ModuleAccess(read=True)
CS101 = Module(id="m1", code="CS101", name="Intro", term="2310", access=READ)


def folder(folder_id, name, allow_upload=False):
    return lambda parent: Folder(
        id=folder_id, name=name, parent=parent, allow_upload=allow_upload
    )


def file(file_id, name, ts=None, creator=None):
    updated = datetime.fromtimestamp(ts, timezone.utc) if ts is not None else None
    return lambda parent: File(
        id=file_id, name=name, parent=parent, last_updated=updated, creator_name=creator
    )


class FakeLister:
    """Serves a folder tree keyed by folder id; nodes are built per listing."""

    def __init__(self, tree, errors=None, delay=0.0):
        self.tree = tree
        self.errors = errors or {}
        self.delay = delay
        self.calls = []
        self.active = 0
        self.peak = 0

    async def list_children(self, parent):
        self.calls.append(parent.id)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
            if parent.id in self.errors:
                raise self.errors[parent.id]
            return [make(parent) for make in self.tree.get(parent.id, [])]
        finally:
            self.active -= 1


def _paths(result):
    return sorted(str(e.relative_path) for e in result.files)


def _discover(lister, modules=(CS101,), **kwargs):
    return asyncio.run(TreeDiscovery(lister, **kwargs).discover(list(modules)))


def test_nested_folders_become_paths():
    lister = FakeLister(
        {
            "m1": [folder("f1", "Lectures"), file("a", "syllabus.pdf")],
            "f1": [folder("f2", "Week 1"), file("b", "intro.pdf")],
            "f2": [file("c", "slides.pdf")],
        }
    )
    result = _discover(lister)
    assert _paths(result) == [
        "CS101/Lectures/Week 1/slides.pdf",
        "CS101/Lectures/intro.pdf",
        "CS101/syllabus.pdf",
    ]
    assert not result.failures and not result.rejected


def test_cycles_terminate_and_each_folder_is_listed_once():
    lister = FakeLister(
        {
            "m1": [folder("f1", "A")],
            "f1": [folder("f2", "B"), file("a", "a.pdf")],
            "f2": [folder("f1", "A again"), folder("m1", "Root again")],
        }
    )
    result = _discover(lister)
    assert _paths(result) == ["CS101/A/a.pdf"]
    assert sorted(lister.calls) == ["f1", "f2", "m1"]


def test_a_file_reachable_twice_is_reported_once():
    lister = FakeLister(
        {
            "m1": [folder("f1", "A"), folder("f2", "B")],
            "f1": [file("shared", "notes.pdf")],
            "f2": [file("shared", "notes.pdf")],
        }
    )
    result = _discover(lister)
    assert [e.file.id for e in result.files] == ["shared"]


def test_duplicate_ids_in_one_listing_are_dropped():
    lister = FakeLister({"m1": [file("a", "a.pdf"), file("a", "a.pdf")]})
    assert _paths(_discover(lister)) == ["CS101/a.pdf"]


def test_listing_failures_are_contained_to_their_subtree():
    lister = FakeLister(
        {
            "m1": [folder("f1", "Lectures"), folder("f2", "Tutorials")],
            "f1": [file("a", "a.pdf")],
        },
        errors={"f2": NetworkError("connection reset")},
    )
    result = _discover(lister)
    assert _paths(result) == ["CS101/Lectures/a.pdf"]
    assert [(f.path, f.error_kind) for f in result.failures] == [
        ("CS101/Tutorials", "network")
    ]


def test_malformed_listing_is_recorded_as_protocol_failure():
    lister = FakeLister({}, errors={"m1": ProtocolError("bad json")})
    result = _discover(lister)
    assert result.files == []
    assert result.failures[0].error_kind == "protocol"


def test_auth_errors_end_the_walk():
    lister = FakeLister(
        {"m1": [folder("f1", "A")]},
        errors={"f1": SessionExpiredError("expired")},
    )
    with pytest.raises(SessionExpiredError):
        _discover(lister)


def test_unsafe_names_are_rejected_or_neutralised():
    lister = FakeLister(
        {
            "m1": [folder("f1", ".."), folder("f2", "a/b"), file("x", "..")],
            "f1": [file("a", "escaped.pdf")],
            "f2": [file("b", "inner.pdf")],
        }
    )
    result = _discover(lister)
    assert _paths(result) == ["CS101/a-b/inner.pdf"]
    assert {r.error_kind for r in result.rejected} == {"path_safety"}
    assert len(result.rejected) == 2
    assert "f1" not in lister.calls


def test_upload_folders_are_skipped_by_default():
    tree = {
        "m1": [folder("up", "Submissions", allow_upload=True)],
        "up": [file("a", "hw.pdf", creator="Alice"), file("b", "x.pdf")],
    }
    assert _discover(FakeLister(tree)).files == []

    result = _discover(FakeLister(tree), include_uploadable=lambda module: True)
    assert _paths(result) == [
        "CS101/Submissions/Alice - hw.pdf",
        "CS101/Submissions/Unknown - x.pdf",
    ]


def test_modules_without_access_are_not_walked():
    locked = Module(id="m2", code="CS999", name="Locked", term="2310")
    lister = FakeLister({"m1": [file("a", "a.pdf")]})
    result = _discover(lister, modules=(CS101, locked))
    assert _paths(result) == ["CS101/a.pdf"]
    assert "m2" not in lister.calls


def test_listing_concurrency_is_bounded():
    tree = {"m1": [folder(f"f{i}", f"Folder {i}") for i in range(10)]}
    for i in range(10):
        tree[f"f{i}"] = [file(f"file{i}", "a.pdf")]
    lister = FakeLister(tree, delay=0.01)
    result = _discover(lister, max_concurrency=2)
    assert len(result.files) == 10
    assert lister.peak <= 2


def test_name_clashes_get_unique_paths():
    lister = FakeLister(
        {"m1": [file("old", "notes.pdf", ts=1000), file("new", "notes.pdf", ts=2000)]}
    )
    result = _discover(lister)
    assert {e.file.id: str(e.relative_path) for e in result.files} == {
        "new": "CS101/notes.pdf",
        "old": "CS101/notes_old.pdf",
    }


def test_visited_folders_claims_once():
    async def claim_twice():
        visited = VisitedFolders()
        return [await visited.claim_folder("f1"), await visited.claim_folder("f1")]

    assert asyncio.run(claim_twice()) == [True, False]


def test_names_shaped_like_temporary_downloads_are_renamed():
    lister = FakeLister({"m1": [file("a", "a.pdf"), file("b", "~!a.pdf")]})
    assert _paths(_discover(lister)) == ["CS101/a.pdf", "CS101/~-a.pdf"]
