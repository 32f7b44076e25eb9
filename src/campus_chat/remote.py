"""
Gateway adapter for the campus chat backend: REST for commands, Socket.IO for
change events.
"""

import logging
from typing import Any, Callable, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from campus_chat.errors import (
    CampusChatError,
    ConflictError,
    NotAuthenticatedError,
    ValidationError,
)
from campus_chat.gateway import (
    DeleteHandler,
    Gateway,
    MessageHandler,
    ReactionHandler,
    Subscription,
    TypingHandler,
)
from campus_chat.models.envelope import Envelope
from campus_chat.models.events import (
    C2SEvent,
    REACTION_EVENTS,
    MessageDeleted,
    ReactionEvent,
    S2CEvent,
    TYPING_EVENTS,
    TypingPing,
)
from campus_chat.models.message import FileUpload, Message
from campus_chat.models.room import DirectRoom, Room, RoomKind, direct_pair, parse_room
from campus_chat.reactions import fold_reactions
from campus_chat.transport.envelope import parse_envelope
from campus_chat.transport.http import HttpClient
from campus_chat.transport.socketio import SocketIOManager
from campus_chat.uploads import BlobUploader

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 50

# Exceptions that mark an inbound payload as malformed.
MALFORMED = (PydanticValidationError, KeyError, TypeError, ValueError)


def parse_message(raw: Any) -> Message:
    """Parse a backend message record.

    Reactions arrive either aggregated ({emoji, users}) or as raw rows
    ({emoji, user_id}); raw rows are folded.
    """
    if not isinstance(raw, dict):
        raise TypeError(f"message record must be an object, got {type(raw).__name__}")
    data = dict(raw)
    reactions = data.get("reactions") or []
    if any(isinstance(r, dict) and "user_id" in r for r in reactions):
        data["reactions"] = fold_reactions(
            ReactionEvent(message_id=data.get("id", ""), emoji=r["emoji"], user_id=r["user_id"])
            for r in reactions
            if r.get("emoji") and r.get("user_id")
        )
    if data.get("is_deleted"):
        data["body"] = None
        data["attachments"] = []
    return Message.model_validate(data)


def _as_list(data: Any, key: str) -> list[Any]:
    if isinstance(data, dict):
        data = data.get(key, [])
    return data if isinstance(data, list) else []


class RemoteGateway(Gateway):
    def __init__(self, http: HttpClient, sio: SocketIOManager, uploader: BlobUploader, user_id: str):
        self._http = http
        self._sio = sio
        self._uploader = uploader
        self._user_id = user_id
        self._room_refs: dict[str, int] = {}

    # Rooms

    async def list_rooms(self) -> list[Room]:
        rooms: list[Room] = []
        for raw in _as_list(await self._http.get("/v1/rooms"), "rooms"):
            try:
                rooms.append(parse_room(raw))
            except MALFORMED as e:
                logger.warning("Skipping malformed room record: %s", e)
        return rooms

    async def get_room(self, room_id: str) -> Room:
        return parse_room(await self._http.get(f"/v1/rooms/{room_id}"))

    async def create_room(
        self,
        kind: RoomKind,
        member_ids: Sequence[str],
        name: Optional[str] = None,
        society_id: Optional[str] = None,
    ) -> Room:
        kind = RoomKind(kind)
        members = list(dict.fromkeys([self._user_id, *member_ids]))
        if kind is RoomKind.DIRECT:
            try:
                pair = direct_pair(members)
            except ValueError as e:
                raise ValidationError(str(e)) from e
            existing = await self._find_direct(pair)
            if existing is not None:
                return existing
        elif kind is RoomKind.SOCIETY and not society_id:
            raise ValidationError("A society room needs a society_id")

        body: dict[str, Any] = {"kind": kind.value, "member_ids": members}
        if name:
            body["name"] = name
        if society_id:
            body["society_id"] = society_id
        try:
            return parse_room(await self._http.post("/v1/rooms", body))
        except ConflictError:
            if kind is not RoomKind.DIRECT:
                raise
            existing = await self._find_direct(pair)
            if existing is None:
                raise
            logger.info("Direct room for %s already existed, reusing %s", pair, existing.id)
            return existing

    async def _find_direct(self, pair: tuple[str, str]) -> Optional[Room]:
        raw = await self._http.get(
            "/v1/rooms", params={"kind": RoomKind.DIRECT.value, "member": list(pair)},
        )
        for item in _as_list(raw, "rooms"):
            try:
                room = parse_room(item)
            except MALFORMED:
                continue
            if isinstance(room, DirectRoom) and room.pair == pair:
                return room
        return None

    async def promote_member(self, room_id: str, user_id: str) -> None:
        await self._http.patch(f"/v1/rooms/{room_id}/members/{user_id}", {"role": "admin"})

    async def remove_member(self, room_id: str, user_id: str) -> None:
        await self._http.delete(f"/v1/rooms/{room_id}/members/{user_id}")

    async def mark_read(self, room_id: str) -> None:
        await self._http.post(f"/v1/rooms/{room_id}/read")

    # Messages

    async def get_messages(self, room_id: str, limit: int = 50, offset: int = 0) -> list[Message]:
        raw = await self._http.get(
            f"/v1/rooms/{room_id}/messages",
            params={"limit": limit, "offset": offset, "order": "desc"},
        )
        return [parse_message(m) for m in reversed(_as_list(raw, "messages"))]

    async def send_message(
        self,
        room_id: str,
        body: Optional[str] = None,
        attachments: Optional[Sequence[FileUpload]] = None,
        reply_to: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> Message:
        uploaded = []
        for file in attachments or []:
            try:
                blob = await self._uploader.upload(file)
            except NotAuthenticatedError:
                raise
            except CampusChatError as e:
                logger.warning("Upload of %s failed, sending without it: %s", file.filename, e)
                continue
            uploaded.append(blob.to_attachment())
        if not (body and body.strip()) and not uploaded:
            raise ValidationError("Nothing to send: no body and every attachment failed to upload")

        payload: dict[str, Any] = {
            "body": body,
            "attachments": [a.model_dump(mode="json") for a in uploaded],
            "reply_to": reply_to,
            "client_id": client_id,
        }
        message = parse_message(await self._http.post(f"/v1/rooms/{room_id}/messages", payload))
        if client_id and message.client_id != client_id:
            message = message.model_copy(update={"client_id": client_id})
        return message

    async def edit_message(self, message_id: str, body: str) -> Optional[Message]:
        result = await self._http.patch(f"/v1/messages/{message_id}", {"body": body})
        if isinstance(result, dict) and result.get("id"):
            return parse_message(result)
        return None

    async def delete_message(self, message_id: str) -> None:
        await self._http.delete(f"/v1/messages/{message_id}")

    async def add_reaction(self, message_id: str, emoji: str) -> None:
        await self._http.put(f"/v1/messages/{message_id}/reactions", {"emoji": emoji})

    async def remove_reaction(self, message_id: str, emoji: str) -> None:
        await self._http.delete(f"/v1/messages/{message_id}/reactions", params={"emoji": emoji})

    async def search(self, query: str, room_id: Optional[str] = None) -> list[Message]:
        params: dict[str, Any] = {"q": query, "limit": SEARCH_LIMIT}
        if room_id:
            params["room_id"] = room_id
        results = []
        for raw in _as_list(await self._http.get("/v1/search/messages", params=params), "messages"):
            try:
                results.append(parse_message(raw))
            except MALFORMED as e:
                logger.warning("Skipping malformed search hit: %s", e)
        return results

    # Push channel

    async def send_typing(self, room_id: str, is_typing: bool) -> None:
        event = C2SEvent.TYPING_PING if is_typing else C2SEvent.TYPING_STOP
        self._sio.emit(event, {"is_typing": is_typing}, room_id)

    async def subscribe_messages(self, room_id: str, on_message: MessageHandler) -> Subscription:
        def handle(event: str, env: Envelope) -> None:
            if event == S2CEvent.MESSAGE_NEW:
                on_message(parse_message(env.payload.data))

        return await self._subscribe("messages", room_id, handle)

    async def subscribe_reactions_and_edits(
        self,
        room_id: str,
        on_reaction: ReactionHandler,
        on_edit: MessageHandler,
        on_delete: DeleteHandler,
    ) -> Subscription:
        def handle(event: str, env: Envelope) -> None:
            data = env.payload.data or {}
            if event in REACTION_EVENTS:
                on_reaction(ReactionEvent(
                    message_id=env.payload.message_id or data["message_id"],
                    emoji=data["emoji"],
                    user_id=data["user_id"],
                    added=event == S2CEvent.REACTION_ADDED,
                    at=env.metadata.timestamp,
                ))
            elif event == S2CEvent.MESSAGE_EDITED:
                on_edit(parse_message(data))
            elif event == S2CEvent.MESSAGE_DELETED:
                on_delete(MessageDeleted(
                    message_id=env.payload.message_id or data["message_id"],
                    room_id=room_id,
                ))

        return await self._subscribe("reactions_and_edits", room_id, handle)

    async def subscribe_typing(self, room_id: str, on_typing: TypingHandler) -> Subscription:
        def handle(event: str, env: Envelope) -> None:
            if event not in TYPING_EVENTS:
                return
            data = env.payload.data or {}
            on_typing(TypingPing(
                room_id=room_id,
                user_id=data.get("user_id") or env.sender_id,
                user_name=data.get("user_name") or "Someone",
                is_typing=event == S2CEvent.TYPING_PING,
            ))

        return await self._subscribe("typing", room_id, handle)

    async def subscribe_inbox(self, on_message: MessageHandler) -> Subscription:
        def handler(event: str, raw: dict[str, Any]) -> None:
            if event != S2CEvent.INBOX_MESSAGE:
                return
            env = parse_envelope(raw)
            if env is None:
                logger.warning("Dropping malformed %s envelope", event)
                return
            try:
                message = parse_message(env.payload.data)
            except MALFORMED as e:
                logger.warning("Dropping malformed %s event: %s", event, e)
                return
            on_message(message)

        remove = self._sio.add_event_handler(handler)
        return Subscription("inbox", None, remove)

    async def _subscribe(
        self,
        name: str,
        room_id: str,
        handle: Callable[[str, Envelope], None],
    ) -> Subscription:
        def handler(event: str, raw: dict[str, Any]) -> None:
            env = parse_envelope(raw)
            if env is None:
                logger.warning("Dropping malformed %s envelope", event)
                return
            if not env.targets(room_id):
                return
            try:
                handle(event, env)
            except MALFORMED as e:
                logger.warning("Dropping malformed %s event in room %s: %s", event, room_id, e)

        if self._room_refs.get(room_id, 0) == 0:
            await self._sio.emit_and_wait(C2SEvent.ROOM_JOIN, None, room_id=room_id)
        self._room_refs[room_id] = self._room_refs.get(room_id, 0) + 1
        remove = self._sio.add_event_handler(handler)

        def cancel() -> None:
            remove()
            refs = self._room_refs.get(room_id, 1) - 1
            if refs > 0:
                self._room_refs[room_id] = refs
                return
            self._room_refs.pop(room_id, None)
            try:
                self._sio.emit(C2SEvent.ROOM_LEAVE, None, room_id)
            except CampusChatError as e:
                logger.debug("Could not leave room %s: %s", room_id, e)

        return Subscription(name, room_id, cancel)
