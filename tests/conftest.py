"""Shared fixtures: an in-memory gateway and a manually driven scheduler."""

import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Sequence

import pytest
import pytest_asyncio

from campus_chat.errors import NotFoundError, ValidationError
from campus_chat.gateway import Gateway, Subscription
from campus_chat.models.events import MessageDeleted, ReactionEvent, TypingPing
from campus_chat.models.message import Attachment, AttachmentKind, FileUpload, Message
from campus_chat.models.room import (
    DirectRoom,
    GroupRoom,
    Member,
    MemberRole,
    Room,
    RoomKind,
    SocietyRoom,
    direct_pair,
)
from campus_chat.sync import SyncEngine

ME = "u-me"
BOB = "u-bob"
CARA = "u-cara"

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def make_message(
    message_id: str,
    room_id: str = "r1",
    author_id: str = BOB,
    body: Optional[str] = "hello",
    seconds: float = 0,
    **kwargs: Any,
) -> Message:
    return Message(
        id=message_id,
        room_id=room_id,
        author_id=author_id,
        author_name=author_id.removeprefix("u-").title(),
        body=body,
        created_at=at(seconds),
        **kwargs,
    )


def make_group(room_id: str = "r1", name: Optional[str] = "Study group", seconds: float = 0, **kwargs: Any) -> GroupRoom:
    return GroupRoom(
        id=room_id,
        name=name,
        members=[
            Member(user_id=ME, name="Me", role=MemberRole.OWNER),
            Member(user_id=BOB, name="Bob"),
            Member(user_id=CARA, name="Cara"),
        ],
        last_activity_at=at(seconds),
        **kwargs,
    )


def make_direct(room_id: str = "d1", other: str = BOB) -> DirectRoom:
    return DirectRoom(
        id=room_id,
        members=[Member(user_id=ME, name="Me"), Member(user_id=other, name=other.removeprefix("u-").title())],
    )


class _Timer:
    def __init__(self, when: float, callback: Callable[..., Any], args: tuple[Any, ...]):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Deterministic stand-in for the event loop's timer API."""

    def __init__(self) -> None:
        self.now = 0.0
        self._timers: list[_Timer] = []

    def time(self) -> float:
        return self.now

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> _Timer:
        timer = _Timer(self.now + delay, callback, args)
        self._timers.append(timer)
        return timer

    @property
    def pending(self) -> int:
        return sum(1 for t in self._timers if not t.cancelled)

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [t for t in self._timers if not t.cancelled and t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.when)
            self._timers.remove(timer)
            self.now = timer.when
            timer.callback(*timer.args)
        self.now = target
        self._timers = [t for t in self._timers if not t.cancelled]


class FakeGateway(Gateway):
    """In-memory backend.

    ``failures[op]`` makes an operation raise; ``gates[op]`` holds it until
    the event is set. Every call is recorded in ``calls``.
    """

    def __init__(self) -> None:
        self.rooms: dict[str, Room] = {}
        self.messages: dict[str, list[Message]] = {}
        self.failures: dict[str, Exception] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.subscriptions: list[tuple[Subscription, dict[str, Callable[[Any], None]]]] = []
        self._ids = itertools.count(1)
        self._clock = itertools.count(1000)

    def add_room(self, room: Room, messages: Sequence[Message] = ()) -> None:
        self.rooms[room.id] = room
        self.messages[room.id] = list(messages)

    async def _enter(self, op: str, *args: Any) -> None:
        self.calls.append((op, args))
        gate = self.gates.get(op)
        if gate is not None:
            await gate.wait()
        error = self.failures.get(op)
        if error is not None:
            raise error

    def called(self, op: str) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == op]

    # Rooms

    async def list_rooms(self) -> list[Room]:
        await self._enter("list_rooms")
        return list(self.rooms.values())

    async def get_room(self, room_id: str) -> Room:
        await self._enter("get_room", room_id)
        if room_id not in self.rooms:
            raise NotFoundError(f"Room {room_id} not found")
        return self.rooms[room_id]

    async def create_room(
        self,
        kind: RoomKind,
        member_ids: Sequence[str],
        name: Optional[str] = None,
        society_id: Optional[str] = None,
    ) -> Room:
        await self._enter("create_room", kind, tuple(member_ids))
        ids = list(dict.fromkeys([ME, *member_ids]))
        members = [Member(user_id=u, name=u.removeprefix("u-").title()) for u in ids]
        room_id = f"room-{next(self._ids)}"
        if kind is RoomKind.DIRECT:
            try:
                pair = direct_pair(ids)
            except ValueError as e:
                raise ValidationError(str(e)) from e
            for existing in self.rooms.values():
                if isinstance(existing, DirectRoom) and existing.pair == pair:
                    return existing
            room: Room = DirectRoom(id=room_id, members=members)
        elif kind is RoomKind.SOCIETY:
            room = SocietyRoom(id=room_id, name=name, members=members, society_id=society_id or "")
        else:
            room = GroupRoom(id=room_id, name=name, members=members)
        self.add_room(room)
        return room

    async def promote_member(self, room_id: str, user_id: str) -> None:
        await self._enter("promote_member", room_id, user_id)

    async def remove_member(self, room_id: str, user_id: str) -> None:
        await self._enter("remove_member", room_id, user_id)

    async def mark_read(self, room_id: str) -> None:
        await self._enter("mark_read", room_id)

    # Messages

    async def get_messages(self, room_id: str, limit: int = 50, offset: int = 0) -> list[Message]:
        await self._enter("get_messages", room_id, limit, offset)
        stored = self.messages.get(room_id, [])
        end = max(len(stored) - offset, 0)
        return stored[max(end - limit, 0):end]

    async def send_message(
        self,
        room_id: str,
        body: Optional[str] = None,
        attachments: Optional[Sequence[FileUpload]] = None,
        reply_to: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> Message:
        await self._enter("send_message", room_id, body)
        n = next(self._ids)
        message = Message(
            id=f"sent-{client_id}" if client_id else f"sent-{n}",
            room_id=room_id,
            author_id=ME,
            author_name="Me",
            body=body,
            attachments=tuple(
                Attachment(id=f"blob-{n}-{i}", url=f"https://blobs.test/{f.filename}", filename=f.filename,
                           kind=AttachmentKind.from_mime(f.mime_type), mime_type=f.mime_type, size=f.size)
                for i, f in enumerate(attachments or [])
            ),
            reply_to=reply_to,
            created_at=at(next(self._clock)),
            client_id=client_id,
        )
        self.messages.setdefault(room_id, []).append(message)
        return message

    async def edit_message(self, message_id: str, body: str) -> Optional[Message]:
        await self._enter("edit_message", message_id, body)
        return None

    async def delete_message(self, message_id: str) -> None:
        await self._enter("delete_message", message_id)

    async def add_reaction(self, message_id: str, emoji: str) -> None:
        await self._enter("add_reaction", message_id, emoji)

    async def remove_reaction(self, message_id: str, emoji: str) -> None:
        await self._enter("remove_reaction", message_id, emoji)

    async def search(self, query: str, room_id: Optional[str] = None) -> list[Message]:
        await self._enter("search", query, room_id)
        hits = []
        for rid, messages in self.messages.items():
            if room_id is not None and rid != room_id:
                continue
            hits.extend(m for m in messages if query.lower() in (m.body or "").lower())
        return hits

    async def send_typing(self, room_id: str, is_typing: bool) -> None:
        await self._enter("send_typing", room_id, is_typing)

    # Subscriptions

    def _register(self, name: str, room_id: Optional[str], **handlers: Callable[[Any], None]) -> Subscription:
        sub = Subscription(name, room_id, lambda: self.calls.append(("unsubscribe", (name, room_id))))
        self.subscriptions.append((sub, handlers))
        return sub

    async def subscribe_messages(self, room_id: str, on_message: Callable[[Message], None]) -> Subscription:
        await self._enter("subscribe_messages", room_id)
        return self._register("messages", room_id, on_message=on_message)

    async def subscribe_reactions_and_edits(
        self,
        room_id: str,
        on_reaction: Callable[[ReactionEvent], None],
        on_edit: Callable[[Message], None],
        on_delete: Callable[[MessageDeleted], None],
    ) -> Subscription:
        await self._enter("subscribe_reactions_and_edits", room_id)
        return self._register(
            "reactions_and_edits", room_id, on_reaction=on_reaction, on_edit=on_edit, on_delete=on_delete,
        )

    async def subscribe_typing(self, room_id: str, on_typing: Callable[[TypingPing], None]) -> Subscription:
        await self._enter("subscribe_typing", room_id)
        return self._register("typing", room_id, on_typing=on_typing)

    async def subscribe_inbox(self, on_message: Callable[[Message], None]) -> Subscription:
        await self._enter("subscribe_inbox")
        return self._register("inbox", None, on_inbox=on_message)

    def active(self, room_id: Any = ...) -> list[Subscription]:
        return [s for s, _ in self.subscriptions if s.active and (room_id is ... or s.room_id == room_id)]

    def _deliver(self, room_id: Optional[str], handler_name: str, event: Any) -> None:
        for sub, handlers in list(self.subscriptions):
            if sub.active and sub.room_id == room_id and handler_name in handlers:
                handlers[handler_name](event)

    def push_message(self, message: Message) -> None:
        self._deliver(message.room_id, "on_message", message)

    def push_reaction(self, room_id: str, event: ReactionEvent) -> None:
        self._deliver(room_id, "on_reaction", event)

    def push_edit(self, message: Message) -> None:
        self._deliver(message.room_id, "on_edit", message)

    def push_delete(self, room_id: str, message_id: str) -> None:
        self._deliver(room_id, "on_delete", MessageDeleted(message_id=message_id, room_id=room_id))

    def push_typing(self, ping: TypingPing) -> None:
        self._deliver(ping.room_id, "on_typing", ping)

    def push_inbox(self, message: Message) -> None:
        self._deliver(None, "on_inbox", message)


async def settle(rounds: int = 5) -> None:
    """Let spawned background tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def gateway() -> FakeGateway:
    gw = FakeGateway()
    gw.add_room(make_group("r1", seconds=10), [
        make_message("m1", "r1", BOB, "first", 1),
        make_message("m2", "r1", ME, "second", 2),
        make_message("m3", "r1", CARA, "third", 3),
    ])
    gw.add_room(make_group("r2", name="Football", seconds=5), [
        make_message("n1", "r2", CARA, "kickoff at six", 1),
    ])
    gw.add_room(make_direct("d1", BOB))
    return gw


@pytest_asyncio.fixture
async def engine(gateway: FakeGateway, scheduler: FakeScheduler):
    eng = SyncEngine(gateway, ME, "Me", page_size=10, typing_ttl=3.0, scheduler=scheduler)
    await eng.start()
    await eng.load_rooms()
    yield eng
    await eng.close()
