"""Message search: validate, delegate, order newest first. No caching."""

from datetime import datetime, timezone
from typing import Optional

from campus_chat.gateway import Gateway
from campus_chat.models.message import Message


def _newest_first_key(message: Message) -> datetime:
    at = message.created_at
    return at if at.tzinfo is not None else at.replace(tzinfo=timezone.utc)


class MessageSearch:
    def __init__(self, gateway: Gateway):
        self._gateway = gateway

    async def run(self, query: str, room_id: Optional[str] = None) -> list[Message]:
        """Blank queries return nothing without touching the backend."""
        query = query.strip()
        if not query:
            return []
        results = await self._gateway.search(query, room_id=room_id)
        live = [m for m in results if not m.is_deleted]
        return sorted(live, key=_newest_first_key, reverse=True)
