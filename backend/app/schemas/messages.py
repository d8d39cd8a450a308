"""Schemas for chat messages."""

from datetime import datetime

from pydantic import BaseModel, Field, conlist, constr

from app.models.enums import DeliveryStatus


class MessageCreate(BaseModel):
    chat_id: int = Field(..., gt=0)
    content: constr(strip_whitespace=True, min_length=1)


class MessageRead(BaseModel):
    """Decrypted message with its receipt sets and aggregate status."""

    id: int
    chat_id: int
    sender_id: int | None = None
    content: str
    delivered_to: list[int] = Field(default_factory=list)
    read_by: list[int] = Field(default_factory=list)
    status: DeliveryStatus = DeliveryStatus.SENT
    created_at: datetime
    updated_at: datetime


class MessagePage(BaseModel):
    """A page of history, newest messages last."""

    items: list[MessageRead] = Field(default_factory=list)
    page: int
    limit: int
    has_more: bool = False


class MessageIdsRequest(BaseModel):
    message_ids: conlist(int, min_length=1)
