"""SQLAlchemy backed store used by the realtime layer and the message API."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from app.core.cipher import MessageCipher
from app.models import Chat, ChatParticipant, Message, MessageDeletion, MessageReceipt, User
from banter.realtime.store import ChatSnapshot, MessageSnapshot, UserSnapshot

logger = logging.getLogger(__name__)

_MAX_RECEIPT_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _merge_receipts(
    session: Session,
    message_ids: Sequence[int],
    user_ids: Sequence[int],
    *,
    read: bool,
    now: datetime,
) -> set[int]:
    """Add the missing (message, user) receipts and return the ids of changed messages."""

    stmt = select(MessageReceipt).where(
        MessageReceipt.message_id.in_(message_ids),
        MessageReceipt.user_id.in_(user_ids),
    )
    existing = {(row.message_id, row.user_id): row for row in session.execute(stmt).scalars()}
    changed: set[int] = set()
    for message_id in message_ids:
        for user_id in user_ids:
            receipt = existing.get((message_id, user_id))
            if receipt is None:
                session.add(
                    MessageReceipt(
                        message_id=message_id,
                        user_id=user_id,
                        delivered_at=now,
                        read_at=now if read else None,
                    )
                )
                changed.add(message_id)
                continue
            if receipt.delivered_at is None:
                receipt.delivered_at = now
                changed.add(message_id)
            if read and receipt.read_at is None:
                receipt.read_at = now
                changed.add(message_id)
    session.flush()
    return changed


def record_receipts(
    session: Session,
    message_ids: Iterable[int],
    user_ids: Iterable[int],
    *,
    read: bool,
) -> set[int]:
    """Union ``user_ids`` into the receipt sets of ``message_ids`` and commit once.

    Reading implies delivery. A unique-constraint conflict means another
    writer inserted one of the rows first; the whole union is then retried
    against the fresh state, which is safe because it only ever adds.
    """

    message_ids = sorted(set(message_ids))
    user_ids = sorted(set(user_ids))
    if not message_ids or not user_ids:
        return set()

    for attempt in range(1, _MAX_RECEIPT_ATTEMPTS + 1):
        try:
            changed = _merge_receipts(session, message_ids, user_ids, read=read, now=_utcnow())
            session.commit()
        except IntegrityError:
            session.rollback()
            if attempt == _MAX_RECEIPT_ATTEMPTS:
                raise
            logger.info(
                "Receipt conflict for messages %s; retrying (attempt %d)", message_ids, attempt
            )
            continue
        return changed
    return set()


def unread_message_ids(session: Session, chat_id: int, user_id: int) -> list[int]:
    read_ids = select(MessageReceipt.message_id).where(
        MessageReceipt.user_id == user_id,
        MessageReceipt.read_at.is_not(None),
    )
    hidden_ids = select(MessageDeletion.message_id).where(MessageDeletion.user_id == user_id)
    stmt = (
        select(Message.id)
        .where(
            Message.chat_id == chat_id,
            Message.id.not_in(read_ids),
            Message.id.not_in(hidden_ids),
        )
        .order_by(Message.created_at, Message.id)
    )
    return list(session.execute(stmt).scalars())


class SqlRealtimeStore:
    """Implements the realtime store protocols over a session factory.

    Every call opens a short-lived session so no connection is held across
    websocket lifetimes. Message content is decrypted before it leaves here.
    """

    def __init__(self, session_factory: sessionmaker[Session], cipher: MessageCipher) -> None:
        self._session_factory = session_factory
        self._cipher = cipher

    def _snapshot(self, message: Message) -> MessageSnapshot:
        return MessageSnapshot(
            id=message.id,
            chat_id=message.chat_id,
            sender_id=message.sender_id,
            content=self._cipher.decrypt(message.content),
            delivered_to=frozenset(message.delivered_to),
            read_by=frozenset(message.read_by),
            created_at=message.created_at,
        )

    def _load_messages(self, session: Session, message_ids: Iterable[int]) -> list[MessageSnapshot]:
        ids = list(message_ids)
        if not ids:
            return []
        stmt = (
            select(Message)
            .options(selectinload(Message.receipts))
            .where(Message.id.in_(ids))
            .order_by(Message.created_at, Message.id)
        )
        return [self._snapshot(message) for message in session.execute(stmt).scalars()]

    async def get_message(self, message_id: int) -> MessageSnapshot | None:
        with self._session_factory() as session:
            loaded = self._load_messages(session, [message_id])
        return loaded[0] if loaded else None

    async def _record(self, message_id: int, user_ids: Iterable[int], *, read: bool) -> MessageSnapshot | None:
        with self._session_factory() as session:
            if session.get(Message, message_id) is None:
                return None
            record_receipts(session, [message_id], user_ids, read=read)
            loaded = self._load_messages(session, [message_id])
        return loaded[0] if loaded else None

    async def mark_delivered(self, message_id: int, user_ids: Iterable[int]) -> MessageSnapshot | None:
        return await self._record(message_id, user_ids, read=False)

    async def mark_read(self, message_id: int, user_ids: Iterable[int]) -> MessageSnapshot | None:
        return await self._record(message_id, user_ids, read=True)

    async def mark_chat_read(self, chat_id: int, user_id: int) -> Sequence[MessageSnapshot]:
        with self._session_factory() as session:
            pending = unread_message_ids(session, chat_id, user_id)
            changed = record_receipts(session, pending, [user_id], read=True)
            return self._load_messages(session, sorted(changed))

    async def count_unread(self, chat_id: int, user_id: int) -> int:
        read_ids = select(MessageReceipt.message_id).where(
            MessageReceipt.user_id == user_id,
            MessageReceipt.read_at.is_not(None),
        )
        hidden_ids = select(MessageDeletion.message_id).where(MessageDeletion.user_id == user_id)
        stmt = select(func.count(Message.id)).where(
            Message.chat_id == chat_id,
            Message.id.not_in(read_ids),
            Message.id.not_in(hidden_ids),
        )
        with self._session_factory() as session:
            return int(session.execute(stmt).scalar_one())

    async def get_chat(self, chat_id: int) -> ChatSnapshot | None:
        with self._session_factory() as session:
            chat = session.get(Chat, chat_id)
            if chat is None:
                return None
            participant_ids = session.execute(
                select(ChatParticipant.user_id)
                .where(ChatParticipant.chat_id == chat_id)
                .order_by(ChatParticipant.user_id)
            ).scalars()
            return ChatSnapshot(
                id=chat.id,
                name=chat.name,
                is_group=chat.is_group,
                participant_ids=tuple(participant_ids),
                group_photo=chat.group_photo,
            )

    async def get_user(self, user_id: int) -> UserSnapshot | None:
        with self._session_factory() as session:
            user = session.get(User, user_id)
            if user is None:
                return None
            return UserSnapshot(
                id=user.id,
                name=user.display_name,
                profile_pic=user.profile_pic,
                push_token=user.push_token,
                verified=user.otp_verified,
            )

    async def touch_last_seen(self, user_id: int, seen_at: datetime) -> None:
        with self._session_factory() as session:
            user = session.get(User, user_id)
            if user is None:
                logger.debug("Cannot record last seen for missing user %s", user_id)
                return
            user.last_seen_at = seen_at
            session.commit()
