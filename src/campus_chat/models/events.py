"""
Socket.IO event names and inbound event payloads.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class C2SEvent:
    """Client-to-server event names."""

    ROOM_JOIN = "room:join"
    ROOM_LEAVE = "room:leave"
    TYPING_PING = "typing:ping"
    TYPING_STOP = "typing:stop"


class S2CEvent:
    """Server-to-client event names."""

    MESSAGE_NEW = "message:new"
    MESSAGE_EDITED = "message:edited"
    MESSAGE_DELETED = "message:deleted"
    REACTION_ADDED = "reaction:added"
    REACTION_REMOVED = "reaction:removed"
    TYPING_PING = "typing:ping"
    TYPING_STOP = "typing:stop"
    INBOX_MESSAGE = "inbox:message"


REACTION_EVENTS = {S2CEvent.REACTION_ADDED, S2CEvent.REACTION_REMOVED}
TYPING_EVENTS = {S2CEvent.TYPING_PING, S2CEvent.TYPING_STOP}


class ReactionEvent(BaseModel):
    """One raw reaction change. ``at`` is the server timestamp when known."""

    model_config = ConfigDict(frozen=True)

    message_id: str
    emoji: str
    user_id: str
    added: bool = True
    at: Optional[datetime] = None


class MessageDeleted(BaseModel):
    model_config = ConfigDict(frozen=True)

    message_id: str
    room_id: Optional[str] = None


class TypingPing(BaseModel):
    model_config = ConfigDict(frozen=True)

    room_id: str
    user_id: str
    user_name: str = "Someone"
    is_typing: bool = True
