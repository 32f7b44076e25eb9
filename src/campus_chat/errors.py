"""
Campus chat error types.

Every gateway failure surfaces as one of these; the sync engine decides which
ones roll back quietly and which ones propagate.
"""

from typing import Any, Optional


class CampusChatError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.details = details


class NetworkError(CampusChatError):
    """Transient. The caller may retry."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("network_error", message, details)


class NotAuthenticatedError(CampusChatError):
    """Fatal to the current flow; must reach the session layer."""

    def __init__(self, message: str = "Not authenticated"):
        super().__init__("not_authenticated", message)


class NotFoundError(CampusChatError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("not_found", message, details)


class ConflictError(CampusChatError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("conflict", message, details)


class ValidationError(CampusChatError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("validation_error", message, details)
