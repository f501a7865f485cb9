"""
Defines custom exceptions for the application to allow for more specific error handling.

Every class carries a short ``kind`` string which is what run summaries report
for a failed task, so callers never need to inspect exception types themselves.
"""

from typing import Optional


class LumiSyncError(Exception):
    """Base exception for all application-specific errors."""

    kind = "error"


class NetworkError(LumiSyncError):
    """Raised when a remote call failed at the connection level after all retries."""

    kind = "network"


class AuthError(LumiSyncError):
    """
    Raised when logging in or keeping the session alive fails.

    Args:
        message: Human readable description. Must never contain credentials.
        stage: Name of the login state in which the failure happened, if any.
    """

    kind = "auth"

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage

    def __str__(self) -> str:
        message = super().__str__()
        if self.stage:
            return f"{message} (during {self.stage})"
        return message


class BadCredentialsError(AuthError):
    """Raised when the identity provider rejects the username or password."""

    kind = "bad_credentials"


class SessionExpiredError(AuthError):
    """Raised when the session expired and a fresh login did not help."""

    kind = "session_expired"


class UnexpectedFlowError(AuthError):
    """Raised when the login sequence diverged from the expected steps."""

    kind = "unexpected_flow"


class MalformedLoginFormError(UnexpectedFlowError):
    """Raised when the identity provider's login form cannot be understood."""

    kind = "malformed_form"


class ProtocolError(LumiSyncError):
    """Raised when a remote response cannot be decoded at all."""

    kind = "protocol"


class FilesystemError(LumiSyncError):
    """Raised when writing to the local disk fails (disk full, permission denied)."""

    kind = "filesystem"


class PathSafetyError(LumiSyncError):
    """Raised when a discovered path would escape the sync root."""

    kind = "path_safety"


class ConfigurationError(LumiSyncError):
    """Raised for issues related to configuration loading or validation."""

    kind = "configuration"
