"""
Message, attachment and aggregated reaction models.
"""

from __future__ import annotations

import mimetypes
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, computed_field, model_validator


class AttachmentKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"

    @classmethod
    def from_mime(cls, mime_type: Optional[str]) -> AttachmentKind:
        prefix = (mime_type or "").split("/", 1)[0]
        try:
            return cls(prefix)
        except ValueError:
            return cls.FILE


class Attachment(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    kind: AttachmentKind = AttachmentKind.FILE
    url: str
    filename: str = "attachment"
    size: int = 0
    mime_type: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _derive_kind(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("kind") and data.get("mime_type"):
            data = {**data, "kind": AttachmentKind.from_mime(data["mime_type"])}
        return data


class Reaction(BaseModel):
    """Aggregated reaction: one emoji and the users currently reacting with it."""

    model_config = ConfigDict(frozen=True)

    emoji: str
    users: tuple[str, ...] = ()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def count(self) -> int:
        return len(self.users)

    def includes(self, user_id: str) -> bool:
        return user_id in self.users


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    room_id: str
    author_id: str
    author_name: str = "Unknown"
    author_avatar: Optional[str] = None
    body: Optional[str] = None
    attachments: tuple[Attachment, ...] = ()
    reactions: tuple[Reaction, ...] = ()
    reply_to: Optional[str] = None
    created_at: datetime
    edited_at: Optional[datetime] = None
    is_deleted: bool = False
    client_id: Optional[str] = None
    pending: bool = False

    @model_validator(mode="after")
    def _has_content(self) -> Message:
        if not self.is_deleted and not has_content(self.body, self.attachments):
            raise ValueError("a message needs a body or at least one attachment")
        return self

    @property
    def is_edited(self) -> bool:
        return self.edited_at is not None

    def reaction(self, emoji: str) -> Optional[Reaction]:
        for r in self.reactions:
            if r.emoji == emoji:
                return r
        return None

    def tombstone(self) -> Message:
        """Deleted form: flag set, content cleared."""
        return self.model_copy(update={"body": None, "attachments": (), "is_deleted": True})

    def edited(self, body: str, at: datetime) -> Message:
        return self.model_copy(update={"body": body, "edited_at": at})

    def preview(self, limit: int = 80) -> str:
        if self.is_deleted:
            return "Message deleted"
        text = (self.body or "").strip()
        if not text:
            n = len(self.attachments)
            return f"[{n} attachment{'s' if n != 1 else ''}]"
        return text if len(text) <= limit else text[: limit - 1] + "…"


def has_content(body: Optional[str], attachments: Any) -> bool:
    return bool(body and body.strip()) or bool(attachments)


class FileUpload(BaseModel):
    """A local file waiting to be handed to the blob uploader."""

    filename: str
    content: bytes
    mime_type: str = "application/octet-stream"

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> FileUpload:
        p = Path(path)
        mime, _ = mimetypes.guess_type(p.name)
        return cls(filename=p.name, content=p.read_bytes(), mime_type=mime or "application/octet-stream")

    @property
    def size(self) -> int:
        return len(self.content)


class UploadedBlob(BaseModel):
    """Result of a blob upload."""

    url: str
    filename: str
    size: int = 0
    mime_type: str = "application/octet-stream"
    id: Optional[str] = None

    def to_attachment(self) -> Attachment:
        return Attachment(
            id=self.id or self.url,
            kind=AttachmentKind.from_mime(self.mime_type),
            url=self.url,
            filename=self.filename,
            size=self.size,
            mime_type=self.mime_type,
        )
