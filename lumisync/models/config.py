"""
Pydantic models for application configuration and login credentials.
Provides robust validation for all settings.
"""

from pathlib import Path

from pydantic import BaseModel, Field, SecretStr, field_validator

UPDATE_POLICIES = ("skip", "overwrite", "rename")
MODULE_TYPES = ("taking", "teaching", "all")


class Credentials(BaseModel):
    """
    Username and password for the identity provider.

    The password is a ``SecretStr`` so it is masked in ``repr``, ``str`` and
    validation errors; only the login step that posts it calls
    ``get_secret_value()``.
    """

    username: str
    password: SecretStr

    class Config:
        """Pydantic model configuration."""

        frozen = True
        str_strip_whitespace = True

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        if not v:
            raise ValueError("Username cannot be empty.")
        return v


class SyncConfig(BaseModel):
    """A validated configuration model for the application."""

    # Authentication
    username: str = ""

    # Sync Settings
    destination: str = ""
    max_workers: int = 8
    discovery_workers: int = 8
    on_updated: str = "overwrite"
    include_uploadable: list[str] = Field(default_factory=list)

    # Module Selection
    term: str = ""
    modules: list[str] = Field(default_factory=list)

    dry_run: bool = False

    # Internal fields not loaded from INI file
    config_path: str = Field(..., repr=False)

    class Config:
        """Pydantic model configuration."""

        validate_assignment = True
        str_strip_whitespace = True

    @field_validator("max_workers", "discovery_workers")
    @classmethod
    def validate_workers(cls, v: int) -> int:
        """Ensures a reasonable number of workers."""
        if v < 1 or v > 32:
            raise ValueError("Workers must be between 1 and 32.")
        return v

    @field_validator("on_updated")
    @classmethod
    def validate_on_updated(cls, v: str) -> str:
        v = v.lower()
        if v not in UPDATE_POLICIES:
            raise ValueError(
                f"Action on updated files must be one of {', '.join(UPDATE_POLICIES)}."
            )
        return v

    @field_validator("include_uploadable")
    @classmethod
    def validate_include_uploadable(cls, v: list[str]) -> list[str]:
        normalized = [item.lower() for item in v if item]
        for item in normalized:
            if item not in MODULE_TYPES:
                raise ValueError(
                    f"Invalid module type '{item}'. "
                    f"Use one of {', '.join(MODULE_TYPES)}."
                )
        return normalized

    @field_validator("term")
    @classmethod
    def validate_term(cls, v: str) -> str:
        """A term is written as four digits, e.g. 2310 for AY23/24 semester 1."""
        if v and not (len(v) == 4 and v.isdigit()):
            raise ValueError(f"Term must be four digits, but got: {v}")
        return v

    @property
    def destination_path(self) -> Path:
        return Path(self.destination or ".").expanduser()

    def includes_uploadable_for(self, is_teaching: bool) -> bool:
        """Whether student-upload folders should be walked for this kind of module."""
        if "all" in self.include_uploadable:
            return True
        return ("teaching" if is_teaching else "taking") in self.include_uploadable

    @classmethod
    def get_ini_keys(cls) -> set[str]:
        """Returns a set of all keys that are expected in the INI file."""
        internal_fields = {"config_path", "dry_run"}
        return {key for key in cls.model_fields if key not in internal_fields}
