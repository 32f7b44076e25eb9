"""
Room and member models.

Rooms are a tagged union on ``kind``; display name and avatar derivation are
the only places that branch on it.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Iterable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

MUTED_FOREVER = datetime.max.replace(tzinfo=timezone.utc)


class RoomKind(str, Enum):
    DIRECT = "direct"
    GROUP = "group"
    SOCIETY = "society"


class MemberRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class Member(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    name: str = "Unknown"
    avatar_url: Optional[str] = None
    role: MemberRole = MemberRole.MEMBER
    is_online: bool = False
    last_read_at: Optional[datetime] = None

    def promoted(self) -> Member:
        """Admin promotion. Owners and admins are returned unchanged."""
        if self.role is not MemberRole.MEMBER:
            return self
        return self.model_copy(update={"role": MemberRole.ADMIN})


class _RoomBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    members: list[Member] = Field(default_factory=list)
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    unread_count: int = 0
    muted_until: Optional[datetime] = None

    def member(self, user_id: str) -> Optional[Member]:
        for m in self.members:
            if m.user_id == user_id:
                return m
        return None

    def member_ids(self) -> list[str]:
        return [m.user_id for m in self.members]

    @property
    def owner(self) -> Optional[Member]:
        owners = [m for m in self.members if m.role is MemberRole.OWNER]
        return owners[0] if len(owners) == 1 else None

    def others(self, viewer_id: Optional[str]) -> list[Member]:
        return [m for m in self.members if m.user_id != viewer_id]

    def is_muted(self, now: Optional[datetime] = None) -> bool:
        if self.muted_until is None:
            return False
        return (now or datetime.now(timezone.utc)) < self.muted_until

    def with_members(self, members: Iterable[Member]) -> Any:
        return self.model_copy(update={"members": list(members)})


class DirectRoom(_RoomBase):
    kind: Literal["direct"] = "direct"

    @model_validator(mode="after")
    def _two_members(self) -> DirectRoom:
        ids = {m.user_id for m in self.members}
        if len(self.members) != 2 or len(ids) != 2:
            raise ValueError("a direct room has exactly two distinct members")
        return self

    @property
    def pair(self) -> tuple[str, str]:
        return direct_pair(self.member_ids())

    def display_name(self, viewer_id: Optional[str]) -> str:
        others = self.others(viewer_id)
        if others:
            return others[0].name
        return self.name or "Direct message"

    def display_avatar(self, viewer_id: Optional[str]) -> Optional[str]:
        others = self.others(viewer_id)
        return others[0].avatar_url if others else self.avatar_url


class GroupRoom(_RoomBase):
    kind: Literal["group"] = "group"

    def display_name(self, viewer_id: Optional[str]) -> str:
        if self.name:
            return self.name
        names = [m.name for m in self.others(viewer_id)]
        return ", ".join(names) if names else "Group"

    def display_avatar(self, viewer_id: Optional[str]) -> Optional[str]:
        return self.avatar_url


class SocietyRoom(_RoomBase):
    kind: Literal["society"] = "society"
    society_id: str

    def display_name(self, viewer_id: Optional[str]) -> str:
        return self.name or "Society chat"

    def display_avatar(self, viewer_id: Optional[str]) -> Optional[str]:
        return self.avatar_url


Room = Annotated[Union[DirectRoom, GroupRoom, SocietyRoom], Field(discriminator="kind")]

ROOM_ADAPTER: TypeAdapter[Room] = TypeAdapter(Room)


def parse_room(raw: Any) -> Room:
    return ROOM_ADAPTER.validate_python(raw)


def direct_pair(member_ids: Iterable[str]) -> tuple[str, str]:
    """Order-independent key of a direct room."""
    ids = sorted(set(member_ids))
    if len(ids) != 2:
        raise ValueError("a direct room needs exactly two distinct members")
    return ids[0], ids[1]
