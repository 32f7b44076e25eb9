"""
Backend gateway boundary.

Every operation either returns or raises a ``CampusChatError`` subclass.
NetworkError is never retried here; retrying is the caller's decision.
Subscriptions hand back a ``Subscription`` that must be cancelled explicitly.
"""

from abc import ABC, abstractmethod
from typing import Callable, Optional, Sequence

from campus_chat.models.events import MessageDeleted, ReactionEvent, TypingPing
from campus_chat.models.message import FileUpload, Message
from campus_chat.models.room import Room, RoomKind

MessageHandler = Callable[[Message], None]
ReactionHandler = Callable[[ReactionEvent], None]
DeleteHandler = Callable[[MessageDeleted], None]
TypingHandler = Callable[[TypingPing], None]


class Subscription:
    """Handle on a live feed. ``unsubscribe`` is idempotent."""

    __slots__ = ("name", "room_id", "_cancel", "_active")

    def __init__(self, name: str, room_id: Optional[str], cancel: Callable[[], None]):
        self.name = name
        self.room_id = room_id
        self._cancel = cancel
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._cancel()

    def __repr__(self) -> str:
        return f"Subscription(name={self.name!r}, room_id={self.room_id!r}, active={self._active})"


class Gateway(ABC):
    @abstractmethod
    async def list_rooms(self) -> list[Room]:
        ...

    @abstractmethod
    async def get_room(self, room_id: str) -> Room:
        ...

    @abstractmethod
    async def create_room(
        self,
        kind: RoomKind,
        member_ids: Sequence[str],
        name: Optional[str] = None,
        society_id: Optional[str] = None,
    ) -> Room:
        """Create a room. Direct rooms are deduplicated per member pair."""

    @abstractmethod
    async def get_messages(self, room_id: str, limit: int = 50, offset: int = 0) -> list[Message]:
        """Page of messages, oldest first. ``offset`` counts back from the newest."""

    @abstractmethod
    async def send_message(
        self,
        room_id: str,
        body: Optional[str] = None,
        attachments: Optional[Sequence[FileUpload]] = None,
        reply_to: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> Message:
        """Upload attachments, then create the message. Failed uploads are omitted."""

    @abstractmethod
    async def edit_message(self, message_id: str, body: str) -> Optional[Message]:
        ...

    @abstractmethod
    async def delete_message(self, message_id: str) -> None:
        ...

    @abstractmethod
    async def add_reaction(self, message_id: str, emoji: str) -> None:
        ...

    @abstractmethod
    async def remove_reaction(self, message_id: str, emoji: str) -> None:
        ...

    @abstractmethod
    async def mark_read(self, room_id: str) -> None:
        ...

    @abstractmethod
    async def search(self, query: str, room_id: Optional[str] = None) -> list[Message]:
        ...

    @abstractmethod
    async def promote_member(self, room_id: str, user_id: str) -> None:
        ...

    @abstractmethod
    async def remove_member(self, room_id: str, user_id: str) -> None:
        ...

    @abstractmethod
    async def send_typing(self, room_id: str, is_typing: bool) -> None:
        ...

    @abstractmethod
    async def subscribe_messages(self, room_id: str, on_message: MessageHandler) -> Subscription:
        ...

    @abstractmethod
    async def subscribe_reactions_and_edits(
        self,
        room_id: str,
        on_reaction: ReactionHandler,
        on_edit: MessageHandler,
        on_delete: DeleteHandler,
    ) -> Subscription:
        ...

    @abstractmethod
    async def subscribe_typing(self, room_id: str, on_typing: TypingHandler) -> Subscription:
        ...

    @abstractmethod
    async def subscribe_inbox(self, on_message: MessageHandler) -> Subscription:
        """New messages in any of the current user's rooms."""
