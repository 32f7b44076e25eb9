"""
In-memory room and message store.

Only the sync engine writes here. Messages within a room are kept ordered by
(created_at, local sequence number). A replacement, whether by id or of a
provisional entry by its client_id, reuses the slot of the entry it replaces,
so confirmations never move a message.
"""

import bisect
import itertools
from datetime import datetime, timezone
from typing import Iterable, Optional

from campus_chat.errors import NotFoundError
from campus_chat.models.message import Message
from campus_chat.models.room import Room

_NEVER = datetime.min.replace(tzinfo=timezone.utc)

SortKey = tuple[datetime, int]


def _utc(at: Optional[datetime]) -> datetime:
    if at is None:
        return _NEVER
    return at if at.tzinfo is not None else at.replace(tzinfo=timezone.utc)


class _Slot:
    __slots__ = ("key", "message")

    def __init__(self, key: SortKey, message: Message):
        self.key = key
        self.message = message


class ChatStore:
    def __init__(self) -> None:
        self._rooms: dict[str, Room] = {}
        self._windows: dict[str, list[_Slot]] = {}
        self._index: dict[str, str] = {}  # message id -> room id
        self._seq = itertools.count()

    # Rooms

    def list_rooms(self) -> list[Room]:
        """Rooms, most recent activity first."""
        return sorted(self._rooms.values(), key=lambda r: _utc(r.last_activity_at), reverse=True)

    def get_room(self, room_id: str) -> Room:
        room = self._rooms.get(room_id)
        if room is None:
            raise NotFoundError(f"Room {room_id} not found", details={"room_id": room_id})
        return room

    def find_room(self, room_id: Optional[str]) -> Optional[Room]:
        if room_id is None:
            return None
        return self._rooms.get(room_id)

    def set_rooms(self, rooms: Iterable[Room]) -> None:
        self._rooms = {room.id: self._keep_local_state(room) for room in rooms}

    def upsert_room(self, room: Room) -> Room:
        room = self._keep_local_state(room)
        self._rooms[room.id] = room
        return room

    def remove_room(self, room_id: str) -> None:
        self._rooms.pop(room_id, None)
        self.clear_messages(room_id)

    def _keep_local_state(self, room: Room) -> Room:
        # Mute state only exists on this client.
        old = self._rooms.get(room.id)
        if old is not None and old.muted_until is not None and room.muted_until is None:
            return room.model_copy(update={"muted_until": old.muted_until})
        return room

    def touch_room(self, room_id: str, at: datetime, unread: bool = False) -> Optional[Room]:
        room = self._rooms.get(room_id)
        if room is None:
            return None
        updates: dict[str, object] = {}
        if _utc(at) > _utc(room.last_activity_at):
            updates["last_activity_at"] = at
        if unread:
            updates["unread_count"] = room.unread_count + 1
        if updates:
            room = room.model_copy(update=updates)
            self._rooms[room_id] = room
        return room

    def clear_unread(self, room_id: str) -> None:
        room = self._rooms.get(room_id)
        if room is not None and room.unread_count:
            self._rooms[room_id] = room.model_copy(update={"unread_count": 0})

    def set_muted(self, room_id: str, until: Optional[datetime]) -> Room:
        room = self.get_room(room_id).model_copy(update={"muted_until": until})
        self._rooms[room_id] = room
        return room

    # Messages

    def load_messages(self, room_id: str, limit: Optional[int] = None) -> list[Message]:
        """Loaded window for a room, oldest first. ``limit`` keeps the newest N."""
        messages = [slot.message for slot in self._windows.get(room_id, [])]
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return messages

    def find_message(self, message_id: str) -> Optional[Message]:
        found = self._locate(message_id)
        if found is None:
            return None
        window, i = found
        return window[i].message

    def replace_window(self, room_id: str, messages: Iterable[Message]) -> None:
        """Install a freshly loaded window. In-flight provisional entries survive."""
        messages = list(messages)
        ids = {m.id for m in messages}
        confirmed = {m.client_id for m in messages if m.client_id}
        kept = [
            slot for slot in self._windows.get(room_id, [])
            if slot.message.pending
            and slot.message.client_id not in confirmed
            and slot.message.id not in ids
        ]
        self.clear_messages(room_id)
        window = [_Slot(self._next_key(m), m) for m in messages] + kept
        window.sort(key=lambda s: s.key)
        self._windows[room_id] = window
        for slot in window:
            self._index[slot.message.id] = room_id

    def prepend_window(self, room_id: str, messages: Iterable[Message]) -> int:
        """Merge an older page into the window. Returns how many were new."""
        added = 0
        for message in messages:
            if message.id in self._index:
                continue
            self._insert(room_id, message)
            added += 1
        return added

    def upsert_message(self, message: Message) -> Message:
        """Insert or replace; returns what the store now holds.

        A tombstoned entry is never revived by a later non-deleted record.
        """
        window = self._windows.setdefault(message.room_id, [])
        i = self._position(window, message.id)
        p = self._pending_position(window, message.client_id)
        if i is not None:
            if p is not None and p != i:
                self._index.pop(window[p].message.id, None)
                del window[p]
                i = self._position(window, message.id)
            slot = window[i]  # type: ignore[index]
            if slot.message.is_deleted and not message.is_deleted:
                return slot.message
            slot.message = message
            return message
        if p is not None:
            self._index.pop(window[p].message.id, None)
            window[p].message = message
            self._index[message.id] = message.room_id
            return message
        self._insert(message.room_id, message)
        return message

    def restore_message(self, message: Message) -> bool:
        """Put a prior value back in place, tombstone or not."""
        found = self._locate(message.id)
        if found is None:
            return False
        window, i = found
        window[i].message = message
        return True

    def remove_message(self, message_id: str) -> Optional[Message]:
        """Tombstone a message in place. Returns the prior value."""
        found = self._locate(message_id)
        if found is None:
            return None
        window, i = found
        prior = window[i].message
        if not prior.is_deleted:
            window[i].message = prior.tombstone()
        return prior

    def discard_message(self, message_id: str) -> Optional[Message]:
        """Physically drop an entry. Only failed provisional sends use this."""
        found = self._locate(message_id)
        if found is None:
            return None
        window, i = found
        slot = window.pop(i)
        self._index.pop(message_id, None)
        return slot.message

    def clear_messages(self, room_id: Optional[str] = None, keep_pending: bool = False) -> None:
        room_ids = [room_id] if room_id is not None else list(self._windows)
        for rid in room_ids:
            window = self._windows.pop(rid, [])
            kept = [s for s in window if keep_pending and s.message.pending]
            for slot in window:
                self._index.pop(slot.message.id, None)
            if kept:
                self._windows[rid] = kept
                for slot in kept:
                    self._index[slot.message.id] = rid

    def _next_key(self, message: Message) -> SortKey:
        return _utc(message.created_at), next(self._seq)

    def _insert(self, room_id: str, message: Message) -> None:
        window = self._windows.setdefault(room_id, [])
        slot = _Slot(self._next_key(message), message)
        i = bisect.bisect_right([s.key for s in window], slot.key)
        window.insert(i, slot)
        self._index[message.id] = room_id

    def _locate(self, message_id: str) -> Optional[tuple[list[_Slot], int]]:
        room_id = self._index.get(message_id)
        if room_id is None:
            return None
        window = self._windows.get(room_id, [])
        i = self._position(window, message_id)
        return (window, i) if i is not None else None

    @staticmethod
    def _position(window: list[_Slot], message_id: str) -> Optional[int]:
        for i, slot in enumerate(window):
            if slot.message.id == message_id:
                return i
        return None

    @staticmethod
    def _pending_position(window: list[_Slot], client_id: Optional[str]) -> Optional[int]:
        if not client_id:
            return None
        for i, slot in enumerate(window):
            if slot.message.pending and slot.message.client_id == client_id:
                return i
        return None
