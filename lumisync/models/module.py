"""
Course modules and their announcements, as handed out by the API client.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class ModuleAccess:
    """Permission flags the current user holds on a module."""

    full: bool = False
    read: bool = False
    create: bool = False
    update: bool = False
    delete: bool = False
    settings_read: bool = False
    settings_update: bool = False


@dataclass(frozen=True)
class Module:
    """A course the user is enrolled in or teaching. Immutable for the run."""

    id: str
    code: str
    name: str
    term: str
    access: Optional[ModuleAccess] = None

    @property
    def has_access(self) -> bool:
        return self.access is not None

    @property
    def is_teaching(self) -> bool:
        access = self.access
        if access is None:
            return False
        return (
            access.full
            or access.create
            or access.update
            or access.delete
            or access.settings_read
            or access.settings_update
        )

    @property
    def is_taking(self) -> bool:
        return not self.is_teaching


@dataclass(frozen=True)
class Announcement:
    title: str
    description: str
    display_from: Optional[datetime] = None
