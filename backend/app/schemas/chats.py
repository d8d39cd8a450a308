"""Schemas for one-to-one and group chats."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, conlist, constr

from app.schemas.messages import MessageRead


class ParticipantRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str | None = None
    phone: str
    profile_pic: str


class DirectChatRequest(BaseModel):
    """Open (or create) the one-to-one chat with another user."""

    user_id: int = Field(..., gt=0)


class GroupChatCreate(BaseModel):
    name: constr(strip_whitespace=True, min_length=1, max_length=128)
    user_ids: conlist(int, min_length=2) = Field(
        ..., description="Other members; a group needs at least two besides the creator"
    )
    group_photo: constr(strip_whitespace=True, max_length=512) | None = None


class ChatRead(BaseModel):
    """Chat summary including participants and the latest visible message."""

    id: int
    name: str | None = None
    is_group: bool
    group_photo: str | None = None
    admin_id: int | None = None
    participants: list[ParticipantRead] = Field(default_factory=list)
    latest_message: MessageRead | None = None
    unread_count: int = 0
    updated_at: datetime


class GroupRename(BaseModel):
    name: constr(strip_whitespace=True, min_length=1, max_length=128)


class GroupMemberRequest(BaseModel):
    user_id: int = Field(..., gt=0)
