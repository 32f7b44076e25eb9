"""
AsyncCampusChat / CampusChat — main client entry points.
"""

import asyncio
import uuid
from pathlib import Path
from typing import Any, Optional, Sequence

from campus_chat.config import CONFIG_DIR, ChatConfig, load_config
from campus_chat.errors import NetworkError, NotAuthenticatedError, ValidationError
from campus_chat.models.message import FileUpload, Message
from campus_chat.models.room import Room, RoomKind
from campus_chat.models.snapshot import ChatSnapshot
from campus_chat.presence import TYPING_TTL_S
from campus_chat.remote import RemoteGateway
from campus_chat.sync import DEFAULT_PAGE_SIZE, SyncEngine
from campus_chat.transport.http import DEFAULT_BASE_URL, DEFAULT_TIMEOUT_S, HttpClient
from campus_chat.transport.socketio import SocketIOManager
from campus_chat.uploads import HttpBlobUploader

DEVICE_ID_FILE = CONFIG_DIR / "device_id"


def _get_or_create_device_id(provided: Optional[str] = None, path: Path = DEVICE_ID_FILE) -> str:
    if provided:
        return provided
    try:
        return path.read_text().strip()
    except FileNotFoundError:
        device_id = str(uuid.uuid4())
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(device_id)
        except OSError:
            pass
        return device_id


class AsyncCampusChat:
    """Async chat client (primary)."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        user_id: Optional[str] = None,
        user_name: str = "Me",
        base_url: str = DEFAULT_BASE_URL,
        device_id: Optional[str] = None,
        transports: Optional[list[str]] = None,
        ready_timeout: float = 15.0,
        request_timeout: float = DEFAULT_TIMEOUT_S,
        page_size: int = DEFAULT_PAGE_SIZE,
        typing_ttl: float = TYPING_TTL_S,
    ):
        self._base_url = base_url
        self._access_token = access_token
        self._user_id = user_id
        self._user_name = user_name
        self._device_id = _get_or_create_device_id(device_id)
        self._transports = transports
        self._ready_timeout = ready_timeout
        self._page_size = page_size
        self._typing_ttl = typing_ttl

        self.http = HttpClient(base_url=base_url, token=access_token, timeout=request_timeout)
        self._sio: Optional[SocketIOManager] = None
        self._engine: Optional[SyncEngine] = None

    @classmethod
    def from_config(cls, cfg: Optional[ChatConfig] = None, **kwargs: Any) -> "AsyncCampusChat":
        cfg = cfg or load_config()
        return cls(
            access_token=cfg.access_token,
            user_id=cfg.user_id,
            user_name=cfg.user_name,
            base_url=cfg.base_url,
            **kwargs,
        )

    @property
    def connected(self) -> bool:
        return self._sio is not None and self._sio.connected

    @property
    def engine(self) -> SyncEngine:
        if self._engine is None:
            raise NetworkError("Not connected. Call connect() first.")
        return self._engine

    async def connect(self) -> None:
        if not self._access_token or not self._user_id:
            raise NotAuthenticatedError("access_token and user_id required. Log in first.")
        self.http.set_token(self._access_token)

        self._sio = SocketIOManager(
            base_url=self._base_url,
            token=self._access_token,
            user_id=self._user_id,
            device_id=self._device_id,
            transports=self._transports,
            ready_timeout=self._ready_timeout,
        )
        gateway = RemoteGateway(self.http, self._sio, HttpBlobUploader(self.http), self._user_id)
        self._engine = SyncEngine(
            gateway,
            self._user_id,
            self._user_name,
            page_size=self._page_size,
            typing_ttl=self._typing_ttl,
        )
        await self._sio.connect()
        await self._engine.start()

    async def disconnect(self) -> None:
        if self._engine:
            await self._engine.close()
            self._engine = None
        if self._sio:
            await self._sio.disconnect()
            self._sio = None
        await self.http.close()

    async def __aenter__(self) -> "AsyncCampusChat":
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.disconnect()

    def snapshot(self) -> ChatSnapshot:
        return self.engine.snapshot()

    async def load_rooms(self) -> list[Room]:
        await self.engine.load_rooms()
        return list(self.engine.snapshot().rooms)

    async def create_room(
        self,
        kind: RoomKind,
        member_ids: Sequence[str],
        name: Optional[str] = None,
        society_id: Optional[str] = None,
    ) -> Optional[Room]:
        return await self.engine.create_room(kind, member_ids, name=name, society_id=society_id)

    async def select_room(self, room_id: Optional[str]) -> None:
        await self.engine.select_room(room_id)

    async def send(
        self,
        body: Optional[str] = None,
        attachments: Optional[Sequence[FileUpload]] = None,
        reply_to: Optional[str] = None,
    ) -> Optional[Message]:
        return await self.engine.send(body, attachments=attachments, reply_to=reply_to)

    async def send_files(self, paths: Sequence[str], body: Optional[str] = None) -> Optional[Message]:
        """Convenience: read local files and send them as attachments."""
        try:
            files = [FileUpload.from_path(p) for p in paths]
        except OSError as e:
            raise ValidationError(f"Cannot read attachment: {e}") from e
        return await self.send(body, attachments=files)

    async def search(self, query: str) -> tuple[Message, ...]:
        return await self.engine.search(query)


class CampusChat:
    """Sync wrapper around AsyncCampusChat. Runs the event loop internally.

    Timers and inbound events only make progress while a call is running.
    """

    def __init__(self, **kwargs: Any):
        self._async = AsyncCampusChat(**kwargs)
        self._loop = asyncio.new_event_loop()

    def _run(self, coro: Any) -> Any:
        return self._loop.run_until_complete(coro)

    @property
    def connected(self) -> bool:
        return self._async.connected

    def connect(self) -> None:
        self._run(self._async.connect())

    def disconnect(self) -> None:
        self._run(self._async.disconnect())
        self._loop.close()

    def snapshot(self) -> ChatSnapshot:
        return self._async.snapshot()

    def load_rooms(self) -> list[Room]:
        return self._run(self._async.load_rooms())

    def create_room(self, kind: RoomKind, member_ids: Sequence[str], **kwargs: Any) -> Optional[Room]:
        return self._run(self._async.create_room(kind, member_ids, **kwargs))

    def select_room(self, room_id: Optional[str]) -> None:
        self._run(self._async.select_room(room_id))

    def send(self, body: Optional[str] = None, **kwargs: Any) -> Optional[Message]:
        return self._run(self._async.send(body, **kwargs))

    def search(self, query: str) -> tuple[Message, ...]:
        return self._run(self._async.search(query))
