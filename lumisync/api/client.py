"""
Typed access to the LumiNUS API endpoints the sync needs.
"""

import logging
from typing import Any, Mapping, Optional

from lumisync.exceptions import ProtocolError
from lumisync.models.module import Announcement, Module
from lumisync.models.remote import (
    ApiAcademicWeek,
    ApiAnnouncement,
    ApiFileDirectory,
    ApiModule,
    ApiProfile,
    parse_list,
    parse_object,
    parse_text,
)
from lumisync.models.tree import File, Folder, TreeNode
from lumisync.utils.tasks import gather_or_cancel

from .session import SessionManager

log = logging.getLogger(__name__)


class LumiNUSClient:
    """
    Async client for the LumiNUS v2 JSON API.

    All requests go through the ``SessionManager``, which adds authentication,
    rate limiting and retries; this class only knows endpoints and shapes.
    """

    def __init__(self, sessions: SessionManager):
        self._sessions = sessions

    async def _get_json(
        self, path: str, params: Optional[Mapping[str, str]] = None
    ) -> Any:
        response = await self._sessions.authorized_request("GET", path, params=params)
        if not response.ok:
            raise ProtocolError(
                f"Invalid API response from {path}: HTTP {response.status}"
            )
        return response.json()

    async def user_name(self) -> str:
        payload = await self._get_json("user/Profile")
        return parse_object(payload, ApiProfile, "user/Profile").user_name_original

    async def current_term(self) -> str:
        path = "setting/AcademicWeek/current"
        payload = await self._get_json(path, params={"populate": "termDetail"})
        return parse_object(payload, ApiAcademicWeek, path).term_detail.term

    async def list_modules(self, term: Optional[str] = None) -> list[Module]:
        """
        Lists the user's modules.

        Args:
            term: Keep only modules of this term. Without it, every module of
                the current term or later is kept.

        Returns:
            Modules sorted by code, one entry per code (the latest term wins).
        """
        payload = await self._get_json("module")
        modules = [m.to_module() for m in parse_list(payload, ApiModule, "module")]

        if term:
            modules = [m for m in modules if m.term == term]
        else:
            current = await self.current_term()
            modules = [m for m in modules if m.term >= current]

        modules.sort(key=lambda m: m.term, reverse=True)
        modules.sort(key=lambda m: m.code)

        unique: list[Module] = []
        for module in modules:
            if unique and unique[-1].code == module.code:
                log.warning(
                    f"[yellow]Module {module.code} appears in terms "
                    f"{unique[-1].term} and {module.term}; "
                    f"using {unique[-1].term}[/yellow]"
                )
                continue
            unique.append(module)
        return unique

    async def list_children(self, folder: Folder) -> list[TreeNode]:
        """Lists sub-folders and files of a folder; module roots use the module id."""
        folders_path = "files/"
        files_path = f"files/{folder.id}/file"
        files_params = {"populate": "Creator"} if folder.allow_upload else None

        folder_payload, file_payload = await gather_or_cancel(
            [
                self._get_json(folders_path, params={"ParentID": folder.id}),
                self._get_json(files_path, params=files_params),
            ]
        )

        children: list[TreeNode] = [
            entry.to_folder(folder)
            for entry in parse_list(folder_payload, ApiFileDirectory, folders_path)
        ]
        children.extend(
            entry.to_file(folder)
            for entry in parse_list(file_payload, ApiFileDirectory, files_path)
        )
        return children

    async def get_download_handle(self, file: File) -> str:
        """Returns the short-lived URL a file's content can be fetched from."""
        path = f"files/file/{file.id}/downloadurl"
        payload = await self._get_json(path)
        return parse_text(payload, path)

    async def list_announcements(
        self, module: Module, archived: bool = False
    ) -> list[Announcement]:
        kind = "Archived" if archived else "NonArchived"
        path = f"announcement/{kind}/{module.id}"
        payload = await self._get_json(path, params={"sortby": "displayFrom ASC"})
        return [
            a.to_announcement() for a in parse_list(payload, ApiAnnouncement, path)
        ]

    async def list_all_announcements(
        self, modules: list[Module], archived: bool = False
    ) -> list[tuple[Module, list[Announcement]]]:
        """Fetches the announcements of several modules concurrently."""
        results = await gather_or_cancel(
            [self.list_announcements(m, archived=archived) for m in modules]
        )
        return list(zip(modules, results))
