"""
Envelope construction and parsing for Socket.IO traffic.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from campus_chat.models.envelope import Envelope, EnvelopeMetadata, RoomPayload, UserSource


def build_envelope(
    event_type: str,
    data: Any,
    user_id: str,
    device_id: str,
    room_id: Optional[str] = None,
    message_id: Optional[str] = None,
    request_id: Optional[str] = None,
) -> dict[str, Any]:
    """Build a client envelope as a dict ready for Socket.IO emit."""
    envelope = Envelope(
        metadata=EnvelopeMetadata(
            event_id=str(uuid.uuid4()),
            request_id=request_id or str(uuid.uuid4()),
            timestamp=datetime.now(timezone.utc).isoformat(),
            source=UserSource(role="user", user_id=user_id, device_id=device_id),
        ),
        type=event_type,
        payload=RoomPayload(room_id=room_id, message_id=message_id, data=data),
    )
    return envelope.model_dump()


def parse_envelope(raw: Any) -> Optional[Envelope]:
    """Parse a server envelope. Returns None if invalid."""
    try:
        return Envelope.model_validate(raw)
    except PydanticValidationError:
        return None
