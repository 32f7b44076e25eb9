"""
Caller-facing state: the snapshot, typing entries, errors and notices.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from campus_chat.models.message import Message
from campus_chat.models.room import Room


class TypingEntry(BaseModel):
    """A user currently composing in a room. Never persisted."""

    model_config = ConfigDict(frozen=True)

    room_id: str
    user_id: str
    user_name: str
    last_ping_at: float


class ActionError(BaseModel):
    """Describes which engine action failed and why."""

    model_config = ConfigDict(frozen=True)

    action: str
    code: str
    message: str


class NewMessageNotice(BaseModel):
    """Notify-worthy arrival in a room the user is not viewing."""

    model_config = ConfigDict(frozen=True)

    room_id: str
    room_name: str
    sender_id: str
    sender_name: str
    message_preview: str
    timestamp: datetime


class ChatSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    rooms: tuple[Room, ...] = ()
    current_room: Optional[Room] = None
    messages: tuple[Message, ...] = ()
    typing_users: tuple[TypingEntry, ...] = ()
    search_query: str = ""
    search_results: tuple[Message, ...] = ()
    is_loading: bool = False
    error: Optional[ActionError] = None

    @property
    def visible_messages(self) -> tuple[Message, ...]:
        return tuple(m for m in self.messages if not m.is_deleted)
