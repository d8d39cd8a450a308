"""Database models package."""

from .base import Base
from .chat import (
    Chat,
    ChatParticipant,
    Message,
    MessageDeletion,
    MessageReceipt,
    User,
)
from .enums import DeliveryStatus, UserRole

__all__ = [
    "Base",
    "User",
    "Chat",
    "ChatParticipant",
    "Message",
    "MessageReceipt",
    "MessageDeletion",
    "DeliveryStatus",
    "UserRole",
]
