"""Push decisions for participants who are not looking at a chat."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from app.monitoring.metrics import push_notifications_total

from .push import PushSender
from .rooms import RoomMembershipTracker
from .store import ChatSnapshot, MessageSnapshot, MessageStore, UserSnapshot, UserStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PushFailure:
    user_id: int
    error: str


@dataclass(slots=True)
class DispatchReport:
    sent: list[int] = field(default_factory=list)
    skipped_in_room: list[int] = field(default_factory=list)
    skipped_no_token: list[int] = field(default_factory=list)
    failures: list[PushFailure] = field(default_factory=list)

    @property
    def attempted(self) -> list[int]:
        return sorted(self.sent + [failure.user_id for failure in self.failures])


class NotificationGate:
    """Requests pushes for chat participants without an active room membership.

    A failing recipient never prevents the others from being notified and
    nothing is raised to the caller: failures end up in the returned report,
    in the log and in ``push_notifications_total``.
    """

    def __init__(
        self,
        rooms: RoomMembershipTracker,
        users: UserStore,
        messages: MessageStore,
        sender: PushSender | None,
    ) -> None:
        self._rooms = rooms
        self._users = users
        self._messages = messages
        self._sender = sender

    @property
    def enabled(self) -> bool:
        return self._sender is not None

    async def notify_new_message(self, message: MessageSnapshot, chat: ChatSnapshot) -> DispatchReport:
        report = DispatchReport()
        if self._sender is None:
            return report

        recipients: list[int] = []
        for user_id in chat.participant_ids:
            if user_id == message.sender_id:
                continue
            if self._rooms.is_user_in_room(user_id, chat.id):
                report.skipped_in_room.append(user_id)
                continue
            recipients.append(user_id)
        if not recipients:
            return report

        sender = await self._users.get_user(message.sender_id) if message.sender_id else None
        sender_name = sender.name if sender else "Someone"
        await asyncio.gather(
            *(self._push_one(user_id, message, chat, sender, sender_name, report) for user_id in recipients)
        )
        if report.failures:
            logger.warning(
                "Push delivery failed for %d of %d recipients in chat %s",
                len(report.failures),
                len(recipients),
                chat.id,
            )
        return report

    async def _push_one(
        self,
        user_id: int,
        message: MessageSnapshot,
        chat: ChatSnapshot,
        sender: UserSnapshot | None,
        sender_name: str,
        report: DispatchReport,
    ) -> None:
        try:
            recipient = await self._users.get_user(user_id)
            if recipient is None or not recipient.push_token:
                logger.debug("User %s has no push token; skipping", user_id)
                report.skipped_no_token.append(user_id)
                push_notifications_total.labels("skipped").inc()
                return
            unread = await self._messages.count_unread(chat.id, user_id)
            data = {
                "sender_name": sender_name,
                "room_id": str(chat.id),
                "user_id": str(message.sender_id),
                "unread_messages": str(unread),
                "group_name": chat.name or "",
            }
            if sender is not None and sender.profile_pic:
                data["user_profile_url"] = sender.profile_pic
            if chat.group_photo:
                data["group_photo_url"] = chat.group_photo
            title = chat.name if chat.is_group and chat.name else sender_name
            await self._sender.send(recipient.push_token, title=title, body=message.content, data=data)
        except Exception as exc:  # noqa: BLE001
            logger.info("Push to user %s failed: %s", user_id, exc)
            report.failures.append(PushFailure(user_id=user_id, error=str(exc)))
            push_notifications_total.labels("failed").inc()
            return
        report.sent.append(user_id)
        push_notifications_total.labels("sent").inc()
