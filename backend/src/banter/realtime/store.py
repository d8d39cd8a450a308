"""Storage contracts consumed by the realtime layer.

The realtime components never talk to the ORM directly. They receive
immutable snapshots from a store object that implements the protocols
below; ``app.services.store.SqlRealtimeStore`` is the production one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Protocol, Sequence


@dataclass(frozen=True, slots=True)
class MessageSnapshot:
    id: int
    chat_id: int
    sender_id: int | None
    content: str
    delivered_to: frozenset[int] = field(default_factory=frozenset)
    read_by: frozenset[int] = field(default_factory=frozenset)
    created_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class ChatSnapshot:
    id: int
    name: str | None
    is_group: bool
    participant_ids: tuple[int, ...]
    group_photo: str | None = None


@dataclass(frozen=True, slots=True)
class UserSnapshot:
    id: int
    name: str
    profile_pic: str | None = None
    push_token: str | None = None
    verified: bool = True


class MessageStore(Protocol):
    async def get_message(self, message_id: int) -> MessageSnapshot | None:
        ...

    async def mark_delivered(
        self, message_id: int, user_ids: Iterable[int]
    ) -> MessageSnapshot | None:
        """Add ``user_ids`` to the delivered-to set and return the merged state."""

    async def mark_read(self, message_id: int, user_ids: Iterable[int]) -> MessageSnapshot | None:
        """Add ``user_ids`` to the read-by (and delivered-to) sets in one commit."""

    async def mark_chat_read(self, chat_id: int, user_id: int) -> Sequence[MessageSnapshot]:
        """Mark every message of the chat unread by ``user_id`` as read.

        Returns only the messages whose state changed.
        """

    async def count_unread(self, chat_id: int, user_id: int) -> int:
        ...


class ChatStore(Protocol):
    async def get_chat(self, chat_id: int) -> ChatSnapshot | None:
        ...


class UserStore(Protocol):
    async def get_user(self, user_id: int) -> UserSnapshot | None:
        ...

    async def touch_last_seen(self, user_id: int, seen_at: datetime) -> None:
        ...


class RealtimeStore(MessageStore, ChatStore, UserStore, Protocol):
    """Single object implementing every store the gateway needs."""
