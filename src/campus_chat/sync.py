"""
Sync engine: the single mutation path for client chat state.

Every state change happens in a synchronous method with no ``await`` inside,
so mutations are totally ordered on the event loop. Actions apply their
optimistic change and publish it before awaiting the gateway; the gateway
result (or its failure) is applied when it resolves.

Inbound change events are applied whoever originated them, and applying one
twice leaves the same state as applying it once.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Sequence

from campus_chat.errors import (
    CampusChatError,
    NotAuthenticatedError,
    NotFoundError,
    ValidationError,
)
from campus_chat.gateway import Gateway, Subscription
from campus_chat.models.events import MessageDeleted, ReactionEvent, TypingPing
from campus_chat.models.message import Attachment, AttachmentKind, FileUpload, Message, has_content
from campus_chat.models.room import MUTED_FOREVER, DirectRoom, MemberRole, Room, RoomKind
from campus_chat.models.snapshot import ActionError, ChatSnapshot, NewMessageNotice
from campus_chat.presence import TYPING_TTL_S, Scheduler, TimerHandle, TypingTracker
from campus_chat.reactions import ReactionAggregator
from campus_chat.search import MessageSearch
from campus_chat.store import ChatStore

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50

# Inbox message ids remembered for duplicate suppression.
INBOX_MEMORY = 1000

MUTE_DURATIONS = {
    "1h": timedelta(hours=1),
    "8h": timedelta(hours=8),
    "24h": timedelta(hours=24),
    "1w": timedelta(weeks=1),
}

ChangeListener = Callable[[ChatSnapshot], None]
NoticeListener = Callable[[NewMessageNotice], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _should_raise(error: BaseException) -> bool:
    """Only auth failures and non-chat errors escape an action."""
    return isinstance(error, NotAuthenticatedError) or not isinstance(error, CampusChatError)


class SyncEngine:
    def __init__(
        self,
        gateway: Gateway,
        user_id: str,
        user_name: str = "Me",
        *,
        user_avatar: Optional[str] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        typing_ttl: float = TYPING_TTL_S,
        scheduler: Optional[Scheduler] = None,
    ):
        self._gateway = gateway
        self._user_id = user_id
        self._user_name = user_name
        self._user_avatar = user_avatar
        self._page_size = page_size
        self._typing_ttl = typing_ttl
        self._scheduler = scheduler

        self._store = ChatStore()
        self._reactions = ReactionAggregator()
        self._search = MessageSearch(gateway)

        self._current_room_id: Optional[str] = None
        self._room_subs: list[Subscription] = []
        self._inbox_sub: Optional[Subscription] = None
        self._tracker: Optional[TypingTracker] = None
        self._typing_timer: Optional[TimerHandle] = None
        self._select_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[Any]] = set()

        self._offset = 0
        self._has_more = False
        self._is_loading = False
        self._error: Optional[ActionError] = None
        self._search_query = ""
        self._search_results: tuple[Message, ...] = ()
        self._server_deleted: set[str] = set()
        self._inbox_seen: dict[str, None] = {}

        self._change_listeners: list[ChangeListener] = []
        self._notice_listeners: list[NoticeListener] = []
        self._closed = False

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def current_room_id(self) -> Optional[str]:
        return self._current_room_id

    @property
    def has_more(self) -> bool:
        return self._has_more

    @property
    def room_subscriptions(self) -> tuple[Subscription, ...]:
        return tuple(s for s in self._room_subs if s.active)

    # Snapshot and observers

    def snapshot(self) -> ChatSnapshot:
        room_id = self._current_room_id
        return ChatSnapshot(
            rooms=tuple(self._store.list_rooms()),
            current_room=self._store.find_room(room_id),
            messages=tuple(self._store.load_messages(room_id)) if room_id else (),
            typing_users=self._tracker.typing_users if self._tracker else (),
            search_query=self._search_query,
            search_results=self._search_results,
            is_loading=self._is_loading,
            error=self._error,
        )

    def on_change(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a snapshot listener. Returns a function that removes it."""
        self._change_listeners.append(listener)

        def remove() -> None:
            try:
                self._change_listeners.remove(listener)
            except ValueError:
                pass
        return remove

    def on_notify(self, listener: NoticeListener) -> Callable[[], None]:
        """Register a listener for messages arriving in rooms not being viewed."""
        self._notice_listeners.append(listener)

        def remove() -> None:
            try:
                self._notice_listeners.remove(listener)
            except ValueError:
                pass
        return remove

    def _publish(self) -> None:
        if not self._change_listeners:
            return
        snap = self.snapshot()
        for listener in list(self._change_listeners):
            try:
                listener(snap)
            except Exception:
                logger.exception("Change listener failed")

    def _notify(self, notice: NewMessageNotice) -> None:
        for listener in list(self._notice_listeners):
            try:
                listener(notice)
            except Exception:
                logger.exception("Notice listener failed")

    def clear_error(self) -> None:
        if self._error is not None:
            self._error = None
            self._publish()

    def _record_failure(self, action: str, error: BaseException) -> None:
        code = error.code if isinstance(error, CampusChatError) else "unexpected_error"
        self._error = ActionError(action=action, code=code, message=str(error))
        logger.warning("%s failed (%s): %s", action, code, error)
        self._publish()

    # Lifecycle

    async def start(self) -> None:
        """Open the inbox feed that drives unread counters and notices."""
        if self._inbox_sub is None:
            self._inbox_sub = await self._gateway.subscribe_inbox(self._guarded("inbox", self._on_inbox))

    async def close(self) -> None:
        """Tear down every subscription, timer and background task."""
        if self._closed:
            return
        self._closed = True
        self._teardown_room()
        self._current_room_id = None
        if self._inbox_sub is not None:
            self._inbox_sub.unsubscribe()
            self._inbox_sub = None
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def __aenter__(self) -> "SyncEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def _spawn(self, coro: Awaitable[Any], name: str) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def done(t: "asyncio.Task[Any]") -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.warning("Background %s failed: %s", name, t.exception())
        task.add_done_callback(done)

    def _guarded(self, name: str, handler: Callable[[Any], None]) -> Callable[[Any], None]:
        """Inbound callbacks never raise into the transport."""
        def run(event: Any) -> None:
            if self._closed:
                return
            try:
                handler(event)
            except Exception:
                logger.exception("Dropping %s event that failed to apply", name)
        return run

    # Rooms

    async def load_rooms(self) -> None:
        self._error = None
        self._is_loading = True
        self._publish()
        try:
            rooms = await self._gateway.list_rooms()
        except Exception as e:
            self._is_loading = False
            self._record_failure("load_rooms", e)
            if _should_raise(e):
                raise
            return
        self._store.set_rooms(rooms)
        self._is_loading = False
        self._publish()

    async def create_room(
        self,
        kind: RoomKind,
        member_ids: Sequence[str],
        name: Optional[str] = None,
        society_id: Optional[str] = None,
    ) -> Optional[Room]:
        self._error = None
        try:
            room = await self._gateway.create_room(kind, member_ids, name=name, society_id=society_id)
        except Exception as e:
            self._record_failure("create_room", e)
            if _should_raise(e):
                raise
            return None
        room = self._store.upsert_room(room)
        self._publish()
        return room

    async def select_room(self, room_id: Optional[str]) -> None:
        """Switch the live room. Only the selected room ever has subscriptions."""
        async with self._select_lock:
            if self._current_room_id is not None:
                await self.stop_typing()
            self._teardown_room()
            self._current_room_id = room_id
            self._error = None
            if room_id is None:
                self._publish()
                return

            if self._store.find_room(room_id) is None:
                try:
                    self._store.upsert_room(await self._gateway.get_room(room_id))
                except Exception as e:
                    self._current_room_id = None
                    self._record_failure("select_room", e)
                    if _should_raise(e):
                        raise
                    return

            self._tracker = TypingTracker(
                room_id,
                scheduler=self._scheduler,
                ttl=self._typing_ttl,
                on_change=lambda _users: self._publish(),
            )
            try:
                self._room_subs.append(await self._gateway.subscribe_messages(
                    room_id, self._guarded("message", self._on_message)))
                self._room_subs.append(await self._gateway.subscribe_reactions_and_edits(
                    room_id,
                    self._guarded("reaction", self._on_reaction),
                    self._guarded("edit", self._on_edit),
                    self._guarded("delete", self._on_delete),
                ))
                self._room_subs.append(await self._gateway.subscribe_typing(
                    room_id, self._guarded("typing", self._on_typing)))
            except Exception as e:
                self._teardown_room()
                self._current_room_id = None
                self._record_failure("select_room", e)
                if _should_raise(e):
                    raise
                return

            self._publish()
            await self._load_window(room_id)
            await self.mark_as_read()

    def _teardown_room(self) -> None:
        for sub in self._room_subs:
            sub.unsubscribe()
        self._room_subs.clear()
        if self._typing_timer is not None:
            self._typing_timer.cancel()
            self._typing_timer = None
        if self._tracker is not None:
            self._tracker.close()
            self._tracker = None
        if self._current_room_id is not None:
            self._store.clear_messages(self._current_room_id, keep_pending=True)
        self._reactions.clear()
        self._server_deleted.clear()
        self._offset = 0
        self._has_more = False

    async def _load_window(self, room_id: str) -> None:
        self._is_loading = True
        self._publish()
        try:
            messages = await self._gateway.get_messages(room_id, limit=self._page_size, offset=0)
        except Exception as e:
            self._is_loading = False
            self._record_failure("load_messages", e)
            if _should_raise(e):
                raise
            return
        self._is_loading = False
        if room_id != self._current_room_id:
            return
        for m in messages:
            self._reactions.seed(m)
        self._store.replace_window(room_id, messages)
        self._offset = len(messages)
        self._has_more = len(messages) >= self._page_size
        self._publish()

    async def refresh_messages(self) -> None:
        if self._current_room_id is not None:
            await self._load_window(self._current_room_id)

    async def load_more(self) -> int:
        """Pull the next older page into the window. Returns how many were added."""
        room_id = self._current_room_id
        if room_id is None or not self._has_more:
            return 0
        try:
            older = await self._gateway.get_messages(room_id, limit=self._page_size, offset=self._offset)
        except Exception as e:
            self._record_failure("load_more", e)
            if _should_raise(e):
                raise
            return 0
        if room_id != self._current_room_id:
            return 0
        for m in older:
            self._reactions.ensure(m)
        added = self._store.prepend_window(room_id, older)
        self._offset += len(older)
        self._has_more = len(older) >= self._page_size
        self._publish()
        return added

    async def mark_as_read(self) -> None:
        """Read receipt for the selected room only."""
        room_id = self._current_room_id
        if room_id is None:
            return
        try:
            await self._gateway.mark_read(room_id)
        except NotAuthenticatedError as e:
            self._record_failure("mark_as_read", e)
            raise
        except CampusChatError as e:
            logger.warning("mark_as_read failed for room %s: %s", room_id, e)
            return
        self._store.clear_unread(room_id)
        self._publish()

    # Messages

    async def send(
        self,
        body: Optional[str] = None,
        attachments: Optional[Sequence[FileUpload]] = None,
        reply_to: Optional[str] = None,
    ) -> Optional[Message]:
        """Optimistic send. Returns the confirmed message, or None after a rollback."""
        room_id = self._current_room_id
        if room_id is None:
            raise ValidationError("No room selected")
        files = list(attachments or [])
        if not has_content(body, files):
            raise ValidationError("A message needs a body or at least one attachment")

        self._error = None
        client_id = uuid.uuid4().hex
        provisional = Message(
            id=f"local-{client_id}",
            room_id=room_id,
            author_id=self._user_id,
            author_name=self._user_name,
            author_avatar=self._user_avatar,
            body=body,
            attachments=tuple(
                Attachment(
                    id=f"local-{client_id}-{i}",
                    kind=AttachmentKind.from_mime(f.mime_type),
                    url="",
                    filename=f.filename,
                    size=f.size,
                    mime_type=f.mime_type,
                )
                for i, f in enumerate(files)
            ),
            reply_to=reply_to,
            created_at=_now(),
            client_id=client_id,
            pending=True,
        )
        self._store.upsert_message(provisional)
        self._publish()

        try:
            confirmed = await self._gateway.send_message(
                room_id, body=body, attachments=files, reply_to=reply_to, client_id=client_id,
            )
        except Exception as e:
            self._store.discard_message(provisional.id)
            self._record_failure("send", e)
            if _should_raise(e):
                raise
            return None

        if confirmed.client_id != client_id:
            confirmed = confirmed.model_copy(update={"client_id": client_id})
        self._reactions.ensure(confirmed)
        stored = self._store.upsert_message(confirmed)
        self._store.touch_room(room_id, confirmed.created_at)
        self._publish()
        return stored

    async def edit(self, message_id: str, body: str) -> Optional[Message]:
        prior = self._store.find_message(message_id)
        if prior is None:
            self._record_failure("edit", NotFoundError(f"Message {message_id} not loaded"))
            return None
        if prior.is_deleted:
            raise ValidationError("Deleted messages cannot be edited")
        if not has_content(body, prior.attachments):
            raise ValidationError("An edit cannot leave the message empty")

        self._error = None
        self._store.upsert_message(prior.edited(body, _now()))
        self._publish()
        try:
            result = await self._gateway.edit_message(message_id, body)
        except Exception as e:
            self._rollback(prior)
            self._record_failure("edit", e)
            if _should_raise(e):
                raise
            return None
        if result is not None:
            self._apply_edit(result)
        return self._store.find_message(message_id)

    async def delete(self, message_id: str) -> bool:
        prior = self._store.find_message(message_id)
        if prior is None:
            self._record_failure("delete", NotFoundError(f"Message {message_id} not loaded"))
            return False
        if prior.is_deleted:
            return True

        self._error = None
        self._store.remove_message(message_id)
        self._publish()
        try:
            await self._gateway.delete_message(message_id)
        except Exception as e:
            self._rollback(prior)
            self._record_failure("delete", e)
            if _should_raise(e):
                raise
            return False
        return True

    def _rollback(self, prior: Message) -> None:
        """Restore a pre-mutation value, keeping reactions that arrived meanwhile.

        A deletion confirmed by the server while the call was in flight wins.
        """
        current = self._store.find_message(prior.id)
        if current is None or prior.id in self._server_deleted:
            return
        self._store.restore_message(prior.model_copy(update={"reactions": current.reactions}))
        self._publish()

    async def react(self, message_id: str, emoji: str) -> bool:
        return await self._toggle_reaction(message_id, emoji, added=True)

    async def unreact(self, message_id: str, emoji: str) -> bool:
        return await self._toggle_reaction(message_id, emoji, added=False)

    async def _toggle_reaction(self, message_id: str, emoji: str, added: bool) -> bool:
        action = "react" if added else "unreact"
        message = self._store.find_message(message_id)
        if message is None or message.is_deleted:
            self._record_failure(action, NotFoundError(f"Message {message_id} not loaded"))
            return False

        self._error = None
        event = ReactionEvent(message_id=message_id, emoji=emoji, user_id=self._user_id, added=added)
        if not self._apply_reaction(event):
            return True
        try:
            if added:
                await self._gateway.add_reaction(message_id, emoji)
            else:
                await self._gateway.remove_reaction(message_id, emoji)
        except Exception as e:
            self._apply_reaction(event.model_copy(update={"added": not added}))
            self._record_failure(action, e)
            if _should_raise(e):
                raise
            return False
        return True

    def _apply_reaction(self, event: ReactionEvent) -> bool:
        message = self._store.find_message(event.message_id)
        if message is None or message.is_deleted:
            return False
        self._reactions.ensure(message)
        summary = self._reactions.apply(event)
        if summary is None:
            return False
        self._store.upsert_message(message.model_copy(update={"reactions": summary}))
        self._publish()
        return True

    def _apply_edit(self, edited: Message) -> None:
        current = self._store.find_message(edited.id)
        if current is None or current.is_deleted:
            return
        if edited.is_deleted:
            self._apply_delete(edited.id)
            return
        updated = current.model_copy(update={
            "body": edited.body,
            "attachments": edited.attachments,
            "edited_at": edited.edited_at or current.edited_at,
        })
        if updated != current:
            self._store.upsert_message(updated)
            self._publish()

    def _apply_delete(self, message_id: str) -> None:
        self._server_deleted.add(message_id)
        current = self._store.find_message(message_id)
        if current is None or current.is_deleted:
            return
        self._store.remove_message(message_id)
        self._reactions.forget(message_id)
        self._publish()

    # Inbound events

    def _on_message(self, message: Message) -> None:
        room_id = self._current_room_id
        if message.room_id != room_id:
            return
        existing = self._store.find_message(message.id)
        if existing is not None and not existing.pending:
            return
        self._reactions.ensure(message)
        self._store.upsert_message(message)
        self._store.touch_room(message.room_id, message.created_at)
        self._publish()
        self._spawn(self.mark_as_read(), "mark_as_read")

    def _on_reaction(self, event: ReactionEvent) -> None:
        self._apply_reaction(event)

    def _on_edit(self, message: Message) -> None:
        if message.room_id == self._current_room_id:
            self._apply_edit(message)

    def _on_delete(self, event: MessageDeleted) -> None:
        if event.room_id in (None, self._current_room_id):
            self._apply_delete(event.message_id)

    def _on_typing(self, ping: TypingPing) -> None:
        if self._tracker is None or ping.room_id != self._current_room_id:
            return
        if ping.user_id == self._user_id:
            return
        if ping.is_typing:
            self._tracker.ping(ping.user_id, ping.user_name)
        else:
            self._tracker.stop(ping.user_id)

    def _on_inbox(self, message: Message) -> None:
        if message.room_id == self._current_room_id:
            return
        if message.id in self._inbox_seen:
            return
        self._inbox_seen[message.id] = None
        if len(self._inbox_seen) > INBOX_MEMORY:
            del self._inbox_seen[next(iter(self._inbox_seen))]
        own = message.author_id == self._user_id
        room = self._store.touch_room(message.room_id, message.created_at, unread=not own)
        if room is None:
            self._spawn(self._adopt_room(message.room_id), "adopt_room")
        self._publish()
        if own or (room is not None and room.is_muted()):
            return
        self._notify(NewMessageNotice(
            room_id=message.room_id,
            room_name=room.display_name(self._user_id) if room is not None else message.author_name,
            sender_id=message.author_id,
            sender_name=message.author_name,
            message_preview=message.preview(),
            timestamp=message.created_at,
        ))

    async def _adopt_room(self, room_id: str) -> None:
        """Fetch a room we first heard about through the inbox."""
        room = await self._gateway.get_room(room_id)
        if self._store.find_room(room_id) is None:
            self._store.upsert_room(room.model_copy(update={"unread_count": max(room.unread_count, 1)}))
            self._publish()

    # Typing

    async def start_typing(self) -> None:
        """Ping and (re)arm the local TTL. Repeated calls reset the timer."""
        room_id = self._current_room_id
        if room_id is None or self._tracker is None:
            return
        self._tracker.ping(self._user_id, self._user_name)
        if self._typing_timer is not None:
            self._typing_timer.cancel()
        loop = self._scheduler or asyncio.get_running_loop()
        self._typing_timer = loop.call_later(self._typing_ttl, self._typing_expired, room_id)
        try:
            await self._gateway.send_typing(room_id, True)
        except CampusChatError as e:
            logger.debug("Typing ping failed for room %s: %s", room_id, e)

    async def stop_typing(self) -> None:
        """Idempotent; a no-op when no typing timer is armed."""
        if self._typing_timer is None:
            return
        self._typing_timer.cancel()
        self._typing_timer = None
        room_id = self._current_room_id
        if self._tracker is not None:
            self._tracker.stop(self._user_id)
        if room_id is not None:
            await self._send_typing_stop(room_id)

    def _typing_expired(self, room_id: str) -> None:
        self._typing_timer = None
        if room_id != self._current_room_id:
            return
        if self._tracker is not None:
            self._tracker.stop(self._user_id)
        self._spawn(self._send_typing_stop(room_id), "typing_stop")

    async def _send_typing_stop(self, room_id: str) -> None:
        try:
            await self._gateway.send_typing(room_id, False)
        except CampusChatError as e:
            logger.debug("Typing stop failed for room %s: %s", room_id, e)

    # Search

    async def search(self, query: str) -> tuple[Message, ...]:
        """Search the selected room, or everything when none is selected."""
        self._error = None
        self._search_query = query
        try:
            results = await self._search.run(query, room_id=self._current_room_id)
        except Exception as e:
            self._record_failure("search", e)
            if _should_raise(e):
                raise
            return self._search_results
        self._search_results = tuple(results)
        self._publish()
        return self._search_results

    def clear_search(self) -> None:
        self._search_query = ""
        self._search_results = ()
        self._publish()

    # Membership and room settings

    async def promote_member(self, user_id: str) -> Optional[Room]:
        """Promote to admin in the selected room. Already-privileged members are left alone."""
        room = self._require_current_room()
        member = room.member(user_id)
        if member is None:
            self._record_failure("promote_member", NotFoundError(f"{user_id} is not a member"))
            return None
        if member.role is not MemberRole.MEMBER:
            return room

        self._error = None
        promoted = room.with_members(m.promoted() if m.user_id == user_id else m for m in room.members)
        self._store.upsert_room(promoted)
        self._publish()
        try:
            await self._gateway.promote_member(room.id, user_id)
        except Exception as e:
            self._restore_members(room)
            self._record_failure("promote_member", e)
            if _should_raise(e):
                raise
            return None
        return self._store.find_room(room.id)

    async def remove_member(self, user_id: str) -> Optional[Room]:
        room = self._require_current_room()
        if isinstance(room, DirectRoom):
            raise ValidationError("Members cannot be removed from a direct room")
        if room.member(user_id) is None:
            return room

        self._error = None
        self._store.upsert_room(room.with_members(m for m in room.members if m.user_id != user_id))
        self._publish()
        try:
            await self._gateway.remove_member(room.id, user_id)
        except Exception as e:
            self._restore_members(room)
            self._record_failure("remove_member", e)
            if _should_raise(e):
                raise
            return None
        return self._store.find_room(room.id)

    def _restore_members(self, prior: Room) -> None:
        current = self._store.find_room(prior.id)
        if current is not None:
            self._store.upsert_room(current.with_members(prior.members))
            self._publish()

    def _require_current_room(self) -> Room:
        if self._current_room_id is None:
            raise ValidationError("No room selected")
        return self._store.get_room(self._current_room_id)

    def mute_room(self, room_id: str, duration: str) -> Room:
        """Silence notices for a room: 1h, 8h, 24h, 1w or forever."""
        if duration == "forever":
            until = MUTED_FOREVER
        elif duration in MUTE_DURATIONS:
            until = _now() + MUTE_DURATIONS[duration]
        else:
            raise ValidationError(f"Unknown mute duration {duration!r}")
        room = self._store.set_muted(room_id, until)
        self._publish()
        return room

    def unmute_room(self, room_id: str) -> Room:
        room = self._store.set_muted(room_id, None)
        self._publish()
        return room
