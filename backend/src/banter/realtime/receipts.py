"""Delivery and read receipt reconciliation."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Sequence

from app.models.enums import DeliveryStatus

from .errors import InvalidPayloadError, NotFoundError
from .relay import EventRelay
from .store import ChatStore, MessageSnapshot, MessageStore

logger = logging.getLogger(__name__)

DELIVERY_STATUS_EVENT = "messageDeliveryStatus"
READ_CONFIRMATION_EVENT = "messageReadConfirmation"
DELETED_FOR_EVERYONE_EVENT = "messagesDeletedForEveryone"


def compute_status(message: MessageSnapshot, participant_ids: Iterable[int]) -> DeliveryStatus:
    """Summarize receipts against the chat's recipients (everyone but the sender)."""

    recipients = set(participant_ids) - {message.sender_id}
    if not recipients:
        return DeliveryStatus.SENT
    read = len(recipients & message.read_by)
    if read == len(recipients):
        return DeliveryStatus.READ
    if read:
        return DeliveryStatus.PARTIALLY_READ
    delivered = len(recipients & message.delivered_to)
    if delivered == len(recipients):
        return DeliveryStatus.DELIVERED
    if delivered:
        return DeliveryStatus.PARTIALLY_DELIVERED
    return DeliveryStatus.SENT


def serialize_receipt(message: MessageSnapshot, participant_ids: Sequence[int]) -> dict[str, Any]:
    return {
        "messageId": message.id,
        "chatId": message.chat_id,
        "senderId": message.sender_id,
        "content": message.content,
        "deliveredTo": sorted(message.delivered_to),
        "readBy": sorted(message.read_by),
        "status": compute_status(message, participant_ids).value,
    }


class DeliveryReconciler:
    """Merges receipts through the message store and re-broadcasts the result.

    Receipt sets only grow. The store performs the set union so concurrent
    acknowledgements of the same message never overwrite each other.
    """

    def __init__(self, messages: MessageStore, chats: ChatStore, relay: EventRelay) -> None:
        self._messages = messages
        self._chats = chats
        self._relay = relay

    async def _participants(self, chat_id: int) -> tuple[int, ...]:
        chat = await self._chats.get_chat(chat_id)
        if chat is None:
            raise NotFoundError(f"Chat {chat_id} not found")
        return chat.participant_ids

    @staticmethod
    def _check_chat(message: MessageSnapshot, chat_id: int | None) -> None:
        if chat_id is not None and message.chat_id != chat_id:
            raise InvalidPayloadError(f"Message {message.id} does not belong to chat {chat_id}")

    async def mark_delivered(
        self, message_id: int, user_id: int, *, chat_id: int | None = None
    ) -> MessageSnapshot:
        current = await self._messages.get_message(message_id)
        if current is None:
            raise NotFoundError(f"Message {message_id} not found")
        self._check_chat(current, chat_id)

        message = await self._messages.mark_delivered(message_id, [user_id])
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        participants = await self._participants(message.chat_id)
        await self._relay.broadcast_room(
            message.chat_id,
            DELIVERY_STATUS_EVENT,
            {
                "chatId": message.chat_id,
                "messageId": message.id,
                "userId": user_id,
                "deliveredTo": sorted(message.delivered_to),
                "status": compute_status(message, participants).value,
            },
        )
        return message

    async def mark_read(
        self, message_id: int, user_ids: Iterable[int], *, chat_id: int | None = None
    ) -> MessageSnapshot:
        readers = sorted(set(user_ids))
        if not readers:
            raise InvalidPayloadError("readBy must name at least one user")
        current = await self._messages.get_message(message_id)
        if current is None:
            raise NotFoundError(f"Message {message_id} not found")
        self._check_chat(current, chat_id)

        message = await self._messages.mark_read(message_id, readers)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        await self._broadcast_read([message], message.chat_id)
        return message

    async def catch_up(self, chat_id: int, user_id: int) -> list[MessageSnapshot]:
        """Mark everything unread in the chat as read, with one broadcast at most."""

        changed = list(await self._messages.mark_chat_read(chat_id, user_id))
        if not changed:
            logger.debug("Nothing to catch up for user %s in chat %s", user_id, chat_id)
            return []
        await self._broadcast_read(changed, chat_id)
        return changed

    async def _broadcast_read(self, messages: Sequence[MessageSnapshot], chat_id: int) -> None:
        participants = await self._participants(chat_id)
        await self._relay.broadcast_room(
            chat_id,
            READ_CONFIRMATION_EVENT,
            {
                "chatId": chat_id,
                "messages": [serialize_receipt(message, participants) for message in messages],
            },
        )

    async def mark_deleted_for_everyone(self, message_ids: Iterable[int], chat_id: int) -> None:
        await self._relay.broadcast_room(
            chat_id,
            DELETED_FOR_EVERYONE_EVENT,
            {"chatId": chat_id, "messageIds": sorted(set(message_ids))},
        )
