"""
campus-chat — chat messaging core for the campus app.

Optimistic client state kept in sync with the chat backend over
REST + Socket.IO.
"""

from campus_chat.client import AsyncCampusChat, CampusChat
from campus_chat.errors import (
    CampusChatError,
    ConflictError,
    NetworkError,
    NotAuthenticatedError,
    NotFoundError,
    ValidationError,
)
from campus_chat.gateway import Gateway, Subscription
from campus_chat.models.events import C2SEvent, S2CEvent
from campus_chat.sync import SyncEngine

__version__ = "0.1.0"
__all__ = [
    "AsyncCampusChat",
    "CampusChat",
    "SyncEngine",
    "Gateway",
    "Subscription",
    "CampusChatError",
    "NetworkError",
    "NotAuthenticatedError",
    "NotFoundError",
    "ConflictError",
    "ValidationError",
    "C2SEvent",
    "S2CEvent",
]
