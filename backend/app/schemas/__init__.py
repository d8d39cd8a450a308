"""Pydantic schemas for API payloads."""

from .auth import (
    AuthResponse,
    ProfileUpdate,
    PushTokenUpdate,
    RegisterRequest,
    RegisterResponse,
    ResendOtpRequest,
    UserRead,
    VerifyOtpRequest,
)
from .chats import (
    ChatRead,
    DirectChatRequest,
    GroupChatCreate,
    GroupMemberRequest,
    GroupRename,
    ParticipantRead,
)
from .messages import MessageCreate, MessageIdsRequest, MessagePage, MessageRead

__all__ = [
    "AuthResponse",
    "ProfileUpdate",
    "PushTokenUpdate",
    "RegisterRequest",
    "RegisterResponse",
    "ResendOtpRequest",
    "UserRead",
    "VerifyOtpRequest",
    "ChatRead",
    "DirectChatRequest",
    "GroupChatCreate",
    "GroupMemberRequest",
    "GroupRename",
    "ParticipantRead",
    "MessageCreate",
    "MessageIdsRequest",
    "MessagePage",
    "MessageRead",
]
