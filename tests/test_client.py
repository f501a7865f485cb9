import asyncio
import json

import pytest

from lumisync.api.client import LumiNUSClient
from lumisync.api.transport import HttpResponse
from lumisync.exceptions import ProtocolError
from lumisync.models.module import Module, ModuleAccess
from lumisync.models.tree import File, Folder


class FakeSessions:
    """Answers authorised requests from a dict of path -> JSON payload."""

    def __init__(self, payloads, statuses=None):
        self.payloads = payloads
        self.statuses = statuses or {}
        self.requests = []

    async def authorized_request(self, method, path, *, params=None, form=None):
        self.requests.append((method, path, params))
        status = self.statuses.get(path, 200)
        body = json.dumps(self.payloads.get(path, {})).encode()
        return HttpResponse(status, f"https://api.example/{path}", body=body)


MODULES = {
    "data": [
        {"id": "1", "name": "CS2030", "courseName": "Programming II", "term": "2310",
         "access": {"access_Read": True}},
        {"id": "2", "name": "CS1010", "courseName": "Programming I", "term": "2220",
         "access": {"access_Read": True}},
        {"id": "3", "name": "CS2030", "courseName": "Programming II", "term": "2320",
         "access": {"access_Read": True}},
        {"id": "4", "name": "MA1521", "courseName": "Calculus", "term": "2310"},
    ]
}


def _run(coro):
    return asyncio.run(coro)


def test_list_modules_for_an_explicit_term():
    client = LumiNUSClient(FakeSessions({"module": MODULES}))
    modules = _run(client.list_modules("2310"))
    assert [(m.code, m.id) for m in modules] == [("CS2030", "1"), ("MA1521", "4")]
    assert not modules[1].has_access


def test_list_modules_defaults_to_current_and_later_terms():
    sessions = FakeSessions(
        {
            "module": MODULES,
            "setting/AcademicWeek/current": {"termDetail": {"term": "2310"}},
        }
    )
    modules = _run(LumiNUSClient(sessions).list_modules())
    # CS2030 appears in two terms; the newer one wins
    assert [(m.code, m.term) for m in modules] == [("CS2030", "2320"), ("MA1521", "2310")]
    assert ("GET", "setting/AcademicWeek/current", {"populate": "termDetail"}) in sessions.requests


def test_list_children_returns_folders_then_files():
    sessions = FakeSessions(
        {
            "files/": {"data": [{"id": "f1", "name": "Lectures", "allowUpload": False}]},
            "files/m1/file": {"data": [{"id": "a", "name": "a", "fileName": "a.pdf", "fileSize": 3}]},
        }
    )
    parent = Folder(id="m1", name="CS1010")
    children = _run(LumiNUSClient(sessions).list_children(parent))

    assert isinstance(children[0], Folder) and children[0].name == "Lectures"
    assert isinstance(children[1], File) and children[1].name == "a.pdf"
    assert all(child.parent is parent for child in children)
    assert ("GET", "files/", {"ParentID": "m1"}) in sessions.requests
    assert ("GET", "files/m1/file", None) in sessions.requests


def test_upload_folders_request_creator_names():
    sessions = FakeSessions({})
    _run(LumiNUSClient(sessions).list_children(Folder(id="up", name="Sub", allow_upload=True)))
    assert ("GET", "files/up/file", {"populate": "Creator"}) in sessions.requests


def test_error_status_is_a_protocol_error():
    sessions = FakeSessions({}, statuses={"module": 404})
    with pytest.raises(ProtocolError, match="HTTP 404"):
        _run(LumiNUSClient(sessions).list_modules("2310"))


def test_download_handle_and_profile():
    sessions = FakeSessions(
        {
            "files/file/a/downloadurl": {"data": "https://files.example/a?sig=1"},
            "user/Profile": {"userNameOriginal": "Ada Lovelace"},
        }
    )
    client = LumiNUSClient(sessions)
    assert _run(client.get_download_handle(File(id="a", name="a.pdf"))) == (
        "https://files.example/a?sig=1"
    )
    assert _run(client.user_name()) == "Ada Lovelace"


def test_announcements_per_module():
    module = Module(id="m1", code="CS1010", name="", term="2310", access=ModuleAccess())
    sessions = FakeSessions(
        {
            "announcement/Archived/m1": {
                "data": [{"title": "Exam", "description": "<p>Hall</p>",
                          "displayFrom": "2023-11-01T00:00:00Z"}]
            }
        }
    )
    results = _run(LumiNUSClient(sessions).list_all_announcements([module], archived=True))
    assert results[0][0] is module
    assert [a.title for a in results[0][1]] == ["Exam"]
