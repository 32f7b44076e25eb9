"""RemoteGateway over a mocked REST transport and a recording socket."""

import json
from typing import Any, Optional

import httpx
import pytest

from campus_chat.errors import NetworkError, NotAuthenticatedError, ValidationError
from campus_chat.models.events import C2SEvent, S2CEvent
from campus_chat.models.message import FileUpload, UploadedBlob
from campus_chat.models.room import DirectRoom, RoomKind
from campus_chat.remote import RemoteGateway, parse_message
from campus_chat.transport.envelope import build_envelope
from campus_chat.transport.http import HttpClient
from campus_chat.transport.socketio import SocketIOManager
from campus_chat.uploads import BlobUploader

ME = "u-me"

GROUP = {"kind": "group", "id": "r1", "name": "Study group", "members": [{"user_id": ME}, {"user_id": "u-bob"}]}
DIRECT = {"kind": "direct", "id": "d1", "members": [{"user_id": ME}, {"user_id": "u-bob"}]}


def record(message_id: str, room_id: str = "r1", **extra: Any) -> dict[str, Any]:
    return {
        "id": message_id,
        "room_id": room_id,
        "author_id": "u-bob",
        "author_name": "Bob",
        "body": "hi",
        "created_at": "2024-03-01T09:00:00Z",
        **extra,
    }


class RecordingSocket(SocketIOManager):
    def __init__(self) -> None:
        super().__init__(base_url="https://chat.test", token="tok", user_id=ME, device_id="dev-1")
        self.emitted: list[tuple[str, Any, Optional[str]]] = []

    def emit(self, event_type, data, room_id=None, message_id=None):
        self.emitted.append((event_type, data, room_id))

    async def emit_and_wait(self, event_type, data, room_id=None, timeout=10.0):
        self.emitted.append((event_type, data, room_id))
        return {}

    def push(self, event: str, data: Any, room_id: Optional[str] = "r1", message_id: Optional[str] = None) -> None:
        self.dispatch(event, build_envelope(event, data, user_id="u-bob", device_id="dev-2",
                                            room_id=room_id, message_id=message_id))


class StubUploader(BlobUploader):
    def __init__(self, failures: Optional[dict[str, Exception]] = None):
        self.failures = failures or {}

    async def upload(self, file: FileUpload) -> UploadedBlob:
        if file.filename in self.failures:
            raise self.failures[file.filename]
        return UploadedBlob(id=f"blob-{file.filename}", url=f"https://blobs.test/{file.filename}",
                            filename=file.filename, mime_type=file.mime_type, size=file.size)


class Backend:
    """Routes requests to canned responses keyed by (method, path)."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def on(self, method: str, path: str, *responses: httpx.Response) -> None:
        self.routes[(method, "/api" + path)] = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, text="no route")
        canned = queue.pop(0) if len(queue) > 1 else queue[0]
        return httpx.Response(canned.status_code, headers=canned.headers, content=canned.content)

    def sent(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == "/api" + path]


def ok(data: Any, status: int = 200) -> httpx.Response:
    return httpx.Response(status, json={"status": "success", "data": data})


@pytest.fixture
def backend() -> Backend:
    return Backend()


@pytest.fixture
def socket() -> RecordingSocket:
    return RecordingSocket()


@pytest.fixture
def uploader() -> StubUploader:
    return StubUploader()


@pytest.fixture
def gateway(backend, socket, uploader) -> RemoteGateway:
    http = HttpClient(base_url="https://chat.test", token="tok", transport=httpx.MockTransport(backend))
    return RemoteGateway(http, socket, uploader, ME)


class TestParsing:
    def test_raw_reaction_rows_are_folded(self):
        message = parse_message(record("m1", reactions=[
            {"emoji": "👍", "user_id": "a"},
            {"emoji": "👍", "user_id": "b"},
            {"emoji": "👍", "user_id": "a"},
            {"emoji": "🎉", "user_id": "b"},
        ]))
        assert message.reaction("👍").count == 2
        assert message.reaction("🎉").users == ("b",)

    def test_aggregated_reactions_pass_through(self):
        message = parse_message(record("m1", reactions=[{"emoji": "👍", "users": ["a", "b"]}]))
        assert message.reaction("👍").count == 2

    def test_deleted_record_has_no_content(self):
        message = parse_message(record("m1", is_deleted=True, body="leaked"))
        assert message.is_deleted
        assert message.body is None

    def test_non_object_is_rejected(self):
        with pytest.raises(TypeError):
            parse_message(["m1"])


class TestRest:
    @pytest.mark.asyncio
    async def test_list_rooms_skips_malformed(self, gateway, backend):
        backend.on("GET", "/v1/rooms", ok({"rooms": [GROUP, {"kind": "direct", "id": "bad", "members": []}]}))
        rooms = await gateway.list_rooms()
        assert [r.id for r in rooms] == ["r1"]

    @pytest.mark.asyncio
    async def test_get_messages_returns_oldest_first(self, gateway, backend):
        backend.on("GET", "/v1/rooms/r1/messages", ok({"messages": [
            record("m2", created_at="2024-03-01T09:05:00Z"),
            record("m1", created_at="2024-03-01T09:00:00Z"),
        ]}))
        messages = await gateway.get_messages("r1", limit=2, offset=4)
        assert [m.id for m in messages] == ["m1", "m2"]
        params = backend.requests[0].url.params
        assert (params["limit"], params["offset"], params["order"]) == ("2", "4", "desc")

    @pytest.mark.asyncio
    async def test_direct_room_is_reused(self, gateway, backend):
        backend.on("GET", "/v1/rooms", ok({"rooms": [DIRECT]}))
        room = await gateway.create_room(RoomKind.DIRECT, ["u-bob"])
        assert isinstance(room, DirectRoom)
        assert room.id == "d1"
        assert backend.sent("POST", "/v1/rooms") == []

    @pytest.mark.asyncio
    async def test_direct_room_conflict_falls_back_to_existing(self, gateway, backend):
        backend.on("GET", "/v1/rooms", ok({"rooms": []}), ok({"rooms": [DIRECT]}))
        backend.on("POST", "/v1/rooms", httpx.Response(409, text="exists"))
        room = await gateway.create_room(RoomKind.DIRECT, ["u-bob"])
        assert room.id == "d1"

    @pytest.mark.asyncio
    async def test_new_direct_room(self, gateway, backend):
        backend.on("GET", "/v1/rooms", ok({"rooms": []}))
        backend.on("POST", "/v1/rooms", ok(DIRECT, 201))
        await gateway.create_room(RoomKind.DIRECT, ["u-bob"])
        body = json.loads(backend.sent("POST", "/v1/rooms")[0].content)
        assert body == {"kind": "direct", "member_ids": [ME, "u-bob"]}

    @pytest.mark.asyncio
    async def test_direct_room_with_self_is_rejected(self, gateway):
        with pytest.raises(ValidationError):
            await gateway.create_room(RoomKind.DIRECT, [ME])

    @pytest.mark.asyncio
    async def test_society_room_needs_society(self, gateway):
        with pytest.raises(ValidationError):
            await gateway.create_room(RoomKind.SOCIETY, ["u-bob"], name="Chess")

    @pytest.mark.asyncio
    async def test_send_omits_failed_uploads(self, gateway, backend, uploader):
        uploader.failures["broken.pdf"] = NetworkError("upload failed")
        backend.on("POST", "/v1/rooms/r1/messages", ok(record("m9", author_id=ME, body="slides")))
        files = [
            FileUpload(filename="slides.pdf", content=b"ok", mime_type="application/pdf"),
            FileUpload(filename="broken.pdf", content=b"no", mime_type="application/pdf"),
        ]
        message = await gateway.send_message("r1", body="slides", attachments=files, client_id="c-1")

        body = json.loads(backend.sent("POST", "/v1/rooms/r1/messages")[0].content)
        assert [a["filename"] for a in body["attachments"]] == ["slides.pdf"]
        assert body["client_id"] == "c-1"
        assert message.client_id == "c-1"

    @pytest.mark.asyncio
    async def test_send_with_nothing_left_is_rejected(self, gateway, backend, uploader):
        uploader.failures["only.png"] = NetworkError("upload failed")
        with pytest.raises(ValidationError):
            await gateway.send_message(
                "r1", attachments=[FileUpload(filename="only.png", content=b"x", mime_type="image/png")],
            )
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_upload_auth_failure_propagates(self, gateway, uploader):
        uploader.failures["a.png"] = NotAuthenticatedError()
        with pytest.raises(NotAuthenticatedError):
            await gateway.send_message(
                "r1", body="see attached", attachments=[FileUpload(filename="a.png", content=b"x")],
            )

    @pytest.mark.asyncio
    async def test_edit_without_body_in_response(self, gateway, backend):
        backend.on("PATCH", "/v1/messages/m1", httpx.Response(204))
        assert await gateway.edit_message("m1", "fixed") is None

    @pytest.mark.asyncio
    async def test_reaction_routes(self, gateway, backend):
        backend.on("PUT", "/v1/messages/m1/reactions", httpx.Response(204))
        backend.on("DELETE", "/v1/messages/m1/reactions", httpx.Response(204))
        await gateway.add_reaction("m1", "👍")
        await gateway.remove_reaction("m1", "👍")
        assert json.loads(backend.sent("PUT", "/v1/messages/m1/reactions")[0].content) == {"emoji": "👍"}
        assert backend.sent("DELETE", "/v1/messages/m1/reactions")[0].url.params["emoji"] == "👍"

    @pytest.mark.asyncio
    async def test_search_params(self, gateway, backend):
        backend.on("GET", "/v1/search/messages", ok({"messages": [record("m1"), {"id": "broken"}]}))
        results = await gateway.search("exam", room_id="r1")
        assert [m.id for m in results] == ["m1"]
        params = backend.requests[0].url.params
        assert (params["q"], params["room_id"]) == ("exam", "r1")


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_messages_are_filtered_by_room(self, gateway, socket):
        got = []
        await gateway.subscribe_messages("r1", got.append)
        socket.push(S2CEvent.MESSAGE_NEW, record("m1"))
        socket.push(S2CEvent.MESSAGE_NEW, record("x1", room_id="r2"), room_id="r2")
        assert [m.id for m in got] == ["m1"]

    @pytest.mark.asyncio
    async def test_malformed_event_is_dropped(self, gateway, socket):
        got = []
        await gateway.subscribe_messages("r1", got.append)
        socket.push(S2CEvent.MESSAGE_NEW, {"id": "m1"})
        socket.dispatch(S2CEvent.MESSAGE_NEW, {"not": "an envelope"})
        socket.push(S2CEvent.MESSAGE_NEW, record("m2"))
        assert [m.id for m in got] == ["m2"]

    @pytest.mark.asyncio
    async def test_room_join_is_shared_between_feeds(self, gateway, socket):
        first = await gateway.subscribe_messages("r1", lambda m: None)
        second = await gateway.subscribe_typing("r1", lambda p: None)
        assert [e for e, _, _ in socket.emitted] == [C2SEvent.ROOM_JOIN]

        first.unsubscribe()
        assert [e for e, _, _ in socket.emitted] == [C2SEvent.ROOM_JOIN]
        second.unsubscribe()
        second.unsubscribe()
        assert socket.emitted[-1] == (C2SEvent.ROOM_LEAVE, None, "r1")
        assert socket.handler_count == 0

    @pytest.mark.asyncio
    async def test_reactions_edits_and_deletes(self, gateway, socket):
        reactions, edits, deletes = [], [], []
        await gateway.subscribe_reactions_and_edits("r1", reactions.append, edits.append, deletes.append)

        socket.push(S2CEvent.REACTION_ADDED, {"emoji": "👍", "user_id": "u-bob"}, message_id="m1")
        socket.push(S2CEvent.REACTION_REMOVED, {"emoji": "👍", "user_id": "u-bob", "message_id": "m1"})
        socket.push(S2CEvent.MESSAGE_EDITED, record("m1", body="edited", edited_at="2024-03-01T09:10:00Z"))
        socket.push(S2CEvent.MESSAGE_DELETED, {}, message_id="m1")

        assert [(r.message_id, r.added) for r in reactions] == [("m1", True), ("m1", False)]
        assert reactions[0].at is not None
        assert edits[0].body == "edited"
        assert deletes[0].message_id == "m1"
        assert deletes[0].room_id == "r1"

    @pytest.mark.asyncio
    async def test_typing_events(self, gateway, socket):
        pings = []
        await gateway.subscribe_typing("r1", pings.append)
        socket.push(S2CEvent.TYPING_PING, {"user_id": "u-bob", "user_name": "Bob"})
        socket.push(S2CEvent.TYPING_STOP, {})
        assert [(p.user_id, p.is_typing) for p in pings] == [("u-bob", True), ("u-bob", False)]
        assert pings[1].user_name == "Someone"

    @pytest.mark.asyncio
    async def test_inbox_covers_every_room(self, gateway, socket):
        got = []
        sub = await gateway.subscribe_inbox(got.append)
        socket.push(S2CEvent.INBOX_MESSAGE, record("x1", room_id="r7"), room_id="r7")
        socket.push(S2CEvent.MESSAGE_NEW, record("m1"))
        assert [m.id for m in got] == ["x1"]
        sub.unsubscribe()
        socket.push(S2CEvent.INBOX_MESSAGE, record("x2", room_id="r7"), room_id="r7")
        assert len(got) == 1

    @pytest.mark.asyncio
    async def test_send_typing_emits_to_room(self, gateway, socket):
        await gateway.send_typing("r1", True)
        await gateway.send_typing("r1", False)
        assert [(e, r) for e, _, r in socket.emitted] == [
            (C2SEvent.TYPING_PING, "r1"),
            (C2SEvent.TYPING_STOP, "r1"),
        ]
