from campus_chat.models.events import C2SEvent, S2CEvent, ReactionEvent, MessageDeleted, TypingPing
from campus_chat.models.message import (
    Attachment,
    AttachmentKind,
    FileUpload,
    Message,
    Reaction,
    UploadedBlob,
)
from campus_chat.models.room import (
    DirectRoom,
    GroupRoom,
    Member,
    MemberRole,
    Room,
    RoomKind,
    SocietyRoom,
    parse_room,
)
from campus_chat.models.snapshot import ActionError, ChatSnapshot, NewMessageNotice, TypingEntry

__all__ = [
    "C2SEvent",
    "S2CEvent",
    "ReactionEvent",
    "MessageDeleted",
    "TypingPing",
    "Attachment",
    "AttachmentKind",
    "FileUpload",
    "Message",
    "Reaction",
    "UploadedBlob",
    "DirectRoom",
    "GroupRoom",
    "Member",
    "MemberRole",
    "Room",
    "RoomKind",
    "SocietyRoom",
    "parse_room",
    "ActionError",
    "ChatSnapshot",
    "NewMessageNotice",
    "TypingEntry",
]
