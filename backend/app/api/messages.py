"""Message API endpoints."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Sequence

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from app.api.deps import get_chat, get_current_user, require_participant
from app.config import get_settings
from app.core.cipher import MessageCipher, get_cipher
from app.database import get_db
from app.models import Message, MessageDeletion, MessageReceipt, User
from app.schemas import MessageCreate, MessageIdsRequest, MessagePage, MessageRead
from app.services.store import record_receipts
from banter.realtime import RealtimeGateway, get_gateway
from banter.realtime.receipts import compute_status
from banter.realtime.store import MessageSnapshot

router = APIRouter(prefix="/message", tags=["messages"])

settings = get_settings()

logger = logging.getLogger(__name__)


def serialize_message(
    message: Message, participant_ids: Sequence[int], cipher: MessageCipher
) -> MessageRead:
    delivered_to = message.delivered_to
    read_by = message.read_by
    snapshot = MessageSnapshot(
        id=message.id,
        chat_id=message.chat_id,
        sender_id=message.sender_id,
        content="",
        delivered_to=frozenset(delivered_to),
        read_by=frozenset(read_by),
    )
    return MessageRead(
        id=message.id,
        chat_id=message.chat_id,
        sender_id=message.sender_id,
        content=cipher.decrypt(message.content),
        delivered_to=sorted(delivered_to),
        read_by=sorted(read_by),
        status=compute_status(snapshot, participant_ids),
        created_at=message.created_at,
        updated_at=message.updated_at,
    )


def _hidden_for(user_id: int):
    return select(MessageDeletion.message_id).where(MessageDeletion.user_id == user_id)


@router.post("", response_model=MessageRead, status_code=status.HTTP_201_CREATED)
def send_message(
    payload: MessageCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    cipher: MessageCipher = Depends(get_cipher),
) -> MessageRead:
    """Encrypt and store a message; the sender counts as delivered and read."""

    if len(payload.content) > settings.chat_message_max_length:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Message exceeds {settings.chat_message_max_length} characters",
        )
    chat = get_chat(payload.chat_id, db)
    require_participant(chat.id, current_user.id, db)

    message = Message(
        chat_id=chat.id,
        sender_id=current_user.id,
        content=cipher.encrypt(payload.content),
    )
    db.add(message)
    db.flush()
    now = datetime.now(timezone.utc)
    db.add(MessageReceipt(message_id=message.id, user_id=current_user.id, delivered_at=now, read_at=now))
    chat.updated_at = now
    db.commit()

    message = db.execute(
        select(Message).options(selectinload(Message.receipts)).where(Message.id == message.id)
    ).scalar_one()
    return serialize_message(message, chat.participant_ids, cipher)


@router.get("/{chat_id}", response_model=MessagePage)
def list_messages(
    chat_id: int,
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    cipher: MessageCipher = Depends(get_cipher),
) -> MessagePage:
    """Return one page of history and mark the returned messages read by the caller."""

    chat = get_chat(chat_id, db)
    require_participant(chat.id, current_user.id, db)

    page_size = min(limit or settings.chat_history_default_limit, settings.chat_history_max_limit)
    stmt = (
        select(Message.id)
        .where(Message.chat_id == chat.id, Message.id.not_in(_hidden_for(current_user.id)))
        .order_by(Message.created_at.desc(), Message.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size + 1)
    )
    message_ids = list(db.execute(stmt).scalars())
    has_more = len(message_ids) > page_size
    message_ids = message_ids[:page_size]

    record_receipts(db, message_ids, [current_user.id], read=True)

    messages = db.execute(
        select(Message)
        .options(selectinload(Message.receipts))
        .where(Message.id.in_(message_ids))
        .order_by(Message.created_at, Message.id)
    ).scalars()
    participant_ids = chat.participant_ids
    return MessagePage(
        items=[serialize_message(message, participant_ids, cipher) for message in messages],
        page=page,
        limit=page_size,
        has_more=has_more,
    )


@router.delete("/everyone", status_code=status.HTTP_204_NO_CONTENT)
async def delete_for_everyone(
    payload: MessageIdsRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    gateway: RealtimeGateway = Depends(get_gateway),
) -> None:
    """Remove messages sent by the caller and tell the chat room about it."""

    message_ids = sorted(set(payload.message_ids))
    messages = list(db.execute(select(Message).where(Message.id.in_(message_ids))).scalars())
    if len(messages) != len(message_ids):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    if any(message.sender_id != current_user.id for message in messages):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the sender can delete a message for everyone",
        )
    chat_ids = {message.chat_id for message in messages}
    if len(chat_ids) != 1:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Messages must belong to a single chat",
        )
    chat_id = chat_ids.pop()

    for message in messages:
        db.delete(message)
    db.commit()
    logger.info("User %s deleted %d messages for everyone", current_user.id, len(messages))

    await gateway.reconciler.mark_deleted_for_everyone(message_ids, chat_id)


@router.delete("/me", status_code=status.HTTP_204_NO_CONTENT)
def delete_for_me(
    payload: MessageIdsRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> None:
    """Hide messages for the caller only."""

    message_ids = sorted(set(payload.message_ids))
    messages = list(db.execute(select(Message).where(Message.id.in_(message_ids))).scalars())
    if len(messages) != len(message_ids):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    for chat_id in {message.chat_id for message in messages}:
        require_participant(chat_id, current_user.id, db)

    already_hidden = set(
        db.execute(
            select(MessageDeletion.message_id).where(
                MessageDeletion.user_id == current_user.id,
                MessageDeletion.message_id.in_(message_ids),
            )
        ).scalars()
    )
    for message_id in message_ids:
        if message_id not in already_hidden:
            db.add(MessageDeletion(message_id=message_id, user_id=current_user.id))
    db.commit()


@router.delete("/chat/{chat_id}", status_code=status.HTTP_204_NO_CONTENT)
async def clear_chat_for_everyone(
    chat_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    gateway: RealtimeGateway = Depends(get_gateway),
) -> None:
    """Delete the whole history of a chat; in groups only the admin may do this."""

    chat = get_chat(chat_id, db)
    require_participant(chat.id, current_user.id, db)
    if chat.is_group and chat.admin_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the group admin can clear the chat",
        )

    messages = list(db.execute(select(Message).where(Message.chat_id == chat.id)).scalars())
    message_ids = [message.id for message in messages]
    for message in messages:
        db.delete(message)
    db.commit()
    logger.info("User %s cleared %d messages in chat %s", current_user.id, len(message_ids), chat_id)

    if message_ids:
        await gateway.reconciler.mark_deleted_for_everyone(message_ids, chat_id)


@router.delete("/chat/{chat_id}/me", status_code=status.HTTP_204_NO_CONTENT)
def clear_chat_for_me(
    chat_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> None:
    """Hide every message currently in the chat for the caller only."""

    chat = get_chat(chat_id, db)
    require_participant(chat.id, current_user.id, db)
    visible = list(
        db.execute(
            select(Message.id).where(
                Message.chat_id == chat.id, Message.id.not_in(_hidden_for(current_user.id))
            )
        ).scalars()
    )
    for message_id in visible:
        db.add(MessageDeletion(message_id=message_id, user_id=current_user.id))
    db.commit()
