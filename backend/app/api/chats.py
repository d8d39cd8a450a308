"""One-to-one and group chat endpoints."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from app.api.deps import get_chat, get_current_user, require_participant
from app.api.messages import serialize_message
from app.core.cipher import MessageCipher, get_cipher
from app.database import get_db
from app.models import Chat, ChatParticipant, Message, MessageDeletion, MessageReceipt, User
from app.schemas import (
    ChatRead,
    DirectChatRequest,
    GroupChatCreate,
    GroupMemberRequest,
    GroupRename,
    ParticipantRead,
)
from banter.realtime import RealtimeGateway, get_gateway

router = APIRouter(prefix="/chat", tags=["chats"])

logger = logging.getLogger(__name__)


def _latest_message(chat: Chat, user_id: int, db: Session) -> Message | None:
    hidden = select(MessageDeletion.message_id).where(MessageDeletion.user_id == user_id)
    stmt = (
        select(Message)
        .options(selectinload(Message.receipts))
        .where(Message.chat_id == chat.id, Message.id.not_in(hidden))
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(1)
    )
    return db.execute(stmt).scalar_one_or_none()


def _unread_count(chat: Chat, user_id: int, db: Session) -> int:
    read_ids = select(MessageReceipt.message_id).where(
        MessageReceipt.user_id == user_id, MessageReceipt.read_at.is_not(None)
    )
    hidden = select(MessageDeletion.message_id).where(MessageDeletion.user_id == user_id)
    stmt = select(func.count(Message.id)).where(
        Message.chat_id == chat.id,
        Message.id.not_in(read_ids),
        Message.id.not_in(hidden),
    )
    return int(db.execute(stmt).scalar_one())


def serialize_chat(chat: Chat, user_id: int, db: Session, cipher: MessageCipher) -> ChatRead:
    participant_ids = chat.participant_ids
    latest = _latest_message(chat, user_id, db)
    return ChatRead(
        id=chat.id,
        name=chat.name,
        is_group=chat.is_group,
        group_photo=chat.group_photo,
        admin_id=chat.admin_id,
        participants=[ParticipantRead.model_validate(p.user) for p in chat.participants],
        latest_message=serialize_message(latest, participant_ids, cipher) if latest else None,
        unread_count=_unread_count(chat, user_id, db),
        updated_at=chat.updated_at,
    )


def _load_users(user_ids: set[int], db: Session) -> list[User]:
    users = list(db.execute(select(User).where(User.id.in_(user_ids))).scalars())
    if len(users) != len(user_ids):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return users


@router.post("", response_model=ChatRead)
def access_direct_chat(
    payload: DirectChatRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    cipher: MessageCipher = Depends(get_cipher),
) -> ChatRead:
    """Return the one-to-one chat with ``user_id``, creating it when missing."""

    if payload.user_id == current_user.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot chat with yourself")
    _load_users({payload.user_id}, db)

    mine = select(ChatParticipant.chat_id).where(ChatParticipant.user_id == current_user.id)
    theirs = select(ChatParticipant.chat_id).where(ChatParticipant.user_id == payload.user_id)
    stmt = select(Chat).where(
        Chat.is_group.is_(False),
        Chat.id.in_(mine),
        Chat.id.in_(theirs),
    )
    chat = db.execute(stmt).scalars().first()
    if chat is None:
        chat = Chat(is_group=False)
        chat.participants = [
            ChatParticipant(user_id=current_user.id),
            ChatParticipant(user_id=payload.user_id),
        ]
        db.add(chat)
        db.commit()
        db.refresh(chat)
    return serialize_chat(chat, current_user.id, db, cipher)


@router.post("/group", response_model=ChatRead, status_code=status.HTTP_201_CREATED)
def create_group_chat(
    payload: GroupChatCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    cipher: MessageCipher = Depends(get_cipher),
) -> ChatRead:
    member_ids = set(payload.user_ids) - {current_user.id}
    if len(member_ids) < 2:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="More than 2 users are required to form a group chat",
        )
    _load_users(member_ids, db)

    chat = Chat(
        name=payload.name,
        is_group=True,
        group_photo=payload.group_photo,
        admin_id=current_user.id,
    )
    chat.participants = [
        ChatParticipant(user_id=user_id) for user_id in sorted(member_ids | {current_user.id})
    ]
    db.add(chat)
    db.commit()
    db.refresh(chat)
    return serialize_chat(chat, current_user.id, db, cipher)


def _chats_for(user: User, db: Session, *, groups_only: bool = False) -> list[Chat]:
    mine = select(ChatParticipant.chat_id).where(ChatParticipant.user_id == user.id)
    stmt = (
        select(Chat)
        .options(selectinload(Chat.participants).selectinload(ChatParticipant.user))
        .where(Chat.id.in_(mine))
        .order_by(Chat.updated_at.desc(), Chat.id.desc())
    )
    if groups_only:
        stmt = stmt.where(Chat.is_group.is_(True))
    return list(db.execute(stmt).scalars())


@router.get("", response_model=list[ChatRead])
def list_chats(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    cipher: MessageCipher = Depends(get_cipher),
) -> list[ChatRead]:
    chats = _chats_for(current_user, db)
    return [serialize_chat(chat, current_user.id, db, cipher) for chat in chats]


@router.get("/groups", response_model=list[ChatRead])
def list_my_groups(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    cipher: MessageCipher = Depends(get_cipher),
) -> list[ChatRead]:
    chats = _chats_for(current_user, db, groups_only=True)
    return [serialize_chat(chat, current_user.id, db, cipher) for chat in chats]


def _load_group(chat_id: int, user: User, db: Session) -> Chat:
    chat = get_chat(chat_id, db)
    require_participant(chat.id, user.id, db)
    if not chat.is_group:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Not a group chat")
    return chat


def _require_admin(chat: Chat, user: User) -> None:
    if chat.admin_id != user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the group admin can do this",
        )


def _chat_event(chat: Chat) -> dict[str, Any]:
    return {
        "name": chat.name,
        "adminId": chat.admin_id,
        "participantIds": sorted(chat.participant_ids),
    }


@router.put("/{chat_id}/name", response_model=ChatRead)
async def rename_group(
    chat_id: int,
    payload: GroupRename,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    cipher: MessageCipher = Depends(get_cipher),
    gateway: RealtimeGateway = Depends(get_gateway),
) -> ChatRead:
    chat = _load_group(chat_id, current_user, db)
    chat.name = payload.name
    db.commit()
    db.refresh(chat)
    await gateway.announce_chat_update(chat.id, _chat_event(chat))
    return serialize_chat(chat, current_user.id, db, cipher)


@router.post("/{chat_id}/members", response_model=ChatRead)
async def add_to_group(
    chat_id: int,
    payload: GroupMemberRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    cipher: MessageCipher = Depends(get_cipher),
    gateway: RealtimeGateway = Depends(get_gateway),
) -> ChatRead:
    chat = _load_group(chat_id, current_user, db)
    _require_admin(chat, current_user)
    _load_users({payload.user_id}, db)
    if payload.user_id in chat.participant_ids:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Already a member")

    chat.participants.append(ChatParticipant(user_id=payload.user_id))
    db.commit()
    db.refresh(chat)
    logger.info("User %s added user %s to chat %s", current_user.id, payload.user_id, chat.id)
    await gateway.announce_chat_update(chat.id, _chat_event(chat))
    return serialize_chat(chat, current_user.id, db, cipher)


@router.delete("/{chat_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_from_group(
    chat_id: int,
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    gateway: RealtimeGateway = Depends(get_gateway),
) -> None:
    """Remove a member, or leave the group when ``user_id`` is the caller.

    The removed user loses room access on every node right away, and pushes
    stop because they are no longer a participant.
    """

    chat = _load_group(chat_id, current_user, db)
    if user_id != current_user.id:
        _require_admin(chat, current_user)
    membership = next((p for p in chat.participants if p.user_id == user_id), None)
    if membership is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not a member")

    chat.participants.remove(membership)
    remaining = sorted(p.user_id for p in chat.participants)
    if not remaining:
        db.delete(chat)
    elif chat.admin_id == user_id:
        chat.admin_id = remaining[0]
    db.commit()
    logger.info("User %s removed user %s from chat %s", current_user.id, user_id, chat_id)

    await gateway.evict_members(chat_id, [user_id])
    if remaining:
        db.refresh(chat)
        await gateway.announce_chat_update(chat_id, _chat_event(chat))


@router.delete("/{chat_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_chat(
    chat_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    gateway: RealtimeGateway = Depends(get_gateway),
) -> None:
    """Delete the chat with its history; only the admin may delete a group."""

    chat = get_chat(chat_id, db)
    require_participant(chat.id, current_user.id, db)
    if chat.is_group:
        _require_admin(chat, current_user)
    participant_ids = chat.participant_ids
    db.delete(chat)
    db.commit()
    logger.info("User %s deleted chat %s", current_user.id, chat_id)

    await gateway.evict_members(chat_id, participant_ids)
