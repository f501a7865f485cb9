"""
Wire schema of the LumiNUS API and its translation into domain objects.

Every endpoint wraps its payload as ``{"data": ...}``. The schema is not
contractually stable, so the policy for missing or odd values is stated here
once and nowhere else:

- ``data`` absent or ``null`` on a list endpoint: an empty list.
- ``data`` present but of the wrong type, or a body that is not a JSON
  object: ``ProtocolError``.
- An item without a usable ``id``: dropped (debug log), the rest of the
  listing is kept.
- Boolean flags (``allowUpload``, ``access_*``): default ``False``.
- ``access`` block absent: the module is listed but has no access.
- Display strings (``name``, ``courseName``, ``title``, ``description``):
  default to an empty string, ``name`` falls back to the id.
- ``fileName``, ``creatorName``, ``fileSize``: default ``None`` (unknown).
- Timestamps (``lastUpdatedDate``, ``displayFrom``): ``None`` when absent or
  unparseable, naive values are taken as UTC.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional, TypeVar

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from lumisync.exceptions import ProtocolError
from lumisync.models.module import Announcement, Module, ModuleAccess
from lumisync.models.tree import File, Folder

log = logging.getLogger(__name__)

_DATETIME = TypeAdapter(datetime)

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parses an RFC 3339 timestamp, returning None for anything unusable."""
    if value in (None, ""):
        return None
    try:
        parsed = _DATETIME.validate_python(value)
    except ValidationError:
        log.debug(f"Ignoring unparseable timestamp {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class _WireModel(BaseModel):
    class Config:
        """Pydantic model configuration."""

        extra = "ignore"
        populate_by_name = True


class ApiAccess(_WireModel):
    full: bool = Field(False, alias="access_Full")
    read: bool = Field(False, alias="access_Read")
    create: bool = Field(False, alias="access_Create")
    update: bool = Field(False, alias="access_Update")
    delete: bool = Field(False, alias="access_Delete")
    settings_read: bool = Field(False, alias="access_Settings_Read")
    settings_update: bool = Field(False, alias="access_Settings_Update")

    @field_validator("*", mode="before")
    @classmethod
    def none_is_false(cls, v: Any) -> Any:
        return False if v is None else v


class ApiModule(_WireModel):
    id: str
    code: Optional[str] = Field(None, alias="name")
    course_name: Optional[str] = Field(None, alias="courseName")
    term: Optional[str] = None
    access: Optional[ApiAccess] = None

    @field_validator("id", "term", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v

    def to_module(self) -> Module:
        access = None
        if self.access is not None:
            access = ModuleAccess(**self.access.model_dump())
        return Module(
            id=self.id,
            code=self.code or self.id,
            name=self.course_name or "",
            term=self.term or "",
            access=access,
        )


class ApiFileDirectory(_WireModel):
    """A folder or file entry; both listings share this shape."""

    id: str
    name: Optional[str] = None
    file_name: Optional[str] = Field(None, alias="fileName")
    allow_upload: bool = Field(False, alias="allowUpload")
    creator_name: Optional[str] = Field(None, alias="creatorName")
    file_size: Optional[int] = Field(None, alias="fileSize")
    last_updated: Optional[datetime] = Field(None, alias="lastUpdatedDate")

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v

    @field_validator("allow_upload", mode="before")
    @classmethod
    def none_is_false(cls, v: Any) -> Any:
        return False if v is None else v

    @field_validator("file_size", mode="before")
    @classmethod
    def tolerate_size(cls, v: Any) -> Any:
        if isinstance(v, int) and v >= 0:
            return v
        if isinstance(v, str) and v.isdigit():
            return int(v)
        return None

    @field_validator("last_updated", mode="before")
    @classmethod
    def tolerate_timestamp(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)

    @property
    def display_name(self) -> str:
        return self.file_name or self.name or self.id

    def to_folder(self, parent: Folder) -> Folder:
        return Folder(
            id=self.id,
            name=self.name or self.id,
            parent=parent,
            allow_upload=self.allow_upload,
        )

    def to_file(self, parent: Folder) -> File:
        return File(
            id=self.id,
            name=self.display_name,
            parent=parent,
            size=self.file_size,
            last_updated=self.last_updated,
            creator_name=self.creator_name,
        )


class ApiAnnouncement(_WireModel):
    title: str = ""
    description: str = ""
    display_from: Optional[datetime] = Field(None, alias="displayFrom")

    @field_validator("title", "description", mode="before")
    @classmethod
    def none_is_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("display_from", mode="before")
    @classmethod
    def tolerate_timestamp(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)

    def to_announcement(self) -> Announcement:
        return Announcement(
            title=self.title,
            description=self.description,
            display_from=self.display_from,
        )


def _envelope_data(payload: Any, endpoint: str) -> Any:
    if not isinstance(payload, dict):
        raise ProtocolError(
            f"Invalid API response from {endpoint}: expected an object, "
            f"got {type(payload).__name__}"
        )
    return payload.get("data")


def parse_list(payload: Any, model: type[ModelT], endpoint: str) -> list[ModelT]:
    """
    Validates the items of a ``{"data": [...]}`` envelope.

    Items failing validation are dropped individually.
    """
    data = _envelope_data(payload, endpoint)
    if data is None:
        return []
    if not isinstance(data, list):
        raise ProtocolError(
            f"Invalid API response from {endpoint}: type mismatch "
            f"(expected a list, got {type(data).__name__})"
        )

    items = []
    for raw in data:
        try:
            items.append(model.model_validate(raw))
        except ValidationError as e:
            log.debug(
                f"Dropping unusable {model.__name__} item from {endpoint}: "
                f"{e.error_count()} validation error(s)"
            )
    return items


def parse_text(payload: Any, endpoint: str) -> str:
    """Returns the string carried by a ``{"data": "..."}`` envelope."""
    data = _envelope_data(payload, endpoint)
    if not isinstance(data, str) or not data:
        raise ProtocolError(
            f"Invalid API response from {endpoint}: type mismatch (expected text)"
        )
    return data


def parse_object(payload: Any, model: type[ModelT], endpoint: str) -> ModelT:
    """Validates a bare JSON object (no envelope), e.g. the user profile."""
    if not isinstance(payload, dict):
        raise ProtocolError(f"Invalid API response from {endpoint}: not an object")
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise ProtocolError(f"Invalid API response from {endpoint}: {e}") from e


class ApiProfile(_WireModel):
    user_name_original: str = Field(..., alias="userNameOriginal")


class ApiTermDetail(_WireModel):
    term: str

    @field_validator("term", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v


class ApiAcademicWeek(_WireModel):
    term_detail: ApiTermDetail = Field(..., alias="termDetail")


class ApiToken(_WireModel):
    access_token: str
    expires_in: Optional[int] = None
