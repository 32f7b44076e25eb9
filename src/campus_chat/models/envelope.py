"""
Socket.IO envelope, shared by both directions.
"""

from typing import Any, Optional
from pydantic import BaseModel


class UserSource(BaseModel):
    role: str  # "user" | "system"
    user_id: Optional[str] = None
    device_id: Optional[str] = None


class EnvelopeMetadata(BaseModel):
    event_id: str
    request_id: Optional[str] = None
    timestamp: str
    source: UserSource


class RoomPayload(BaseModel):
    room_id: Optional[str] = None
    message_id: Optional[str] = None
    data: Optional[Any] = None


class Envelope(BaseModel):
    metadata: EnvelopeMetadata
    type: str
    payload: RoomPayload

    @property
    def sender_id(self) -> Optional[str]:
        return self.metadata.source.user_id

    def targets(self, room_id: str) -> bool:
        return self.payload.room_id == room_id
