"""Error taxonomy for chatrelay.

Every error a caller can see derives from ChatError. The REST layer renders
them as ``{"success": false, "error": ..., "code": ...}`` with ``status_code``;
the socket layer turns them into an ``error`` event on the offending
connection only.
"""

from __future__ import annotations


class ChatError(Exception):
    """Base class for errors surfaced to clients."""

    code = "ERROR"
    status_code = 500

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message, "code": self.code}


class AuthError(ChatError):
    """Credential missing, rejected, or the verification service is down."""

    NO_TOKEN = "NO_TOKEN"
    INVALID_TOKEN = "INVALID_TOKEN"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

    code = INVALID_TOKEN
    status_code = 401

    def __init__(self, message: str, code: str = INVALID_TOKEN):
        super().__init__(message, code)
        if code == self.SERVICE_UNAVAILABLE:
            self.status_code = 503


class ValidationError(ChatError):
    code = "VALIDATION_ERROR"
    status_code = 400


class ForbiddenError(ChatError):
    code = "FORBIDDEN"
    status_code = 403


class NotFoundError(ChatError):
    code = "NOT_FOUND"
    status_code = 404


class StorageError(ChatError):
    """A primary durable write failed."""

    code = "STORAGE_ERROR"
    status_code = 500


class ConfigError(Exception):
    """Raised when settings cannot be loaded or are malformed."""
