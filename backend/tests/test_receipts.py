"""Receipt merging, status aggregation and catch-up on join."""

from __future__ import annotations

import asyncio

import pytest

from app.models import MessageDeletion
from app.models.enums import DeliveryStatus
from banter.realtime.errors import InvalidPayloadError, NotFoundError
from banter.realtime.receipts import compute_status
from banter.realtime.store import MessageSnapshot


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


def _snapshot(delivered: set[int], read: set[int]) -> MessageSnapshot:
    return MessageSnapshot(
        id=1,
        chat_id=1,
        sender_id=1,
        content="hi",
        delivered_to=frozenset(delivered),
        read_by=frozenset(read),
    )


@pytest.mark.parametrize(
    ("delivered", "read", "expected"),
    [
        ({1}, {1}, DeliveryStatus.SENT),
        ({1, 2}, {1}, DeliveryStatus.PARTIALLY_DELIVERED),
        ({1, 2, 3}, {1}, DeliveryStatus.DELIVERED),
        ({1, 2, 3}, {1, 3}, DeliveryStatus.PARTIALLY_READ),
        ({1, 2, 3}, {1, 2, 3}, DeliveryStatus.READ),
    ],
)
def test_compute_status_against_recipients(delivered, read, expected):
    assert compute_status(_snapshot(delivered, read), (1, 2, 3)) is expected


def test_compute_status_without_recipients_is_sent():
    assert compute_status(_snapshot({1}, {1}), (1,)) is DeliveryStatus.SENT


@pytest.mark.anyio("asyncio")
async def test_delivery_acks_are_merged_not_overwritten(store, factory):
    sender, first, second, third = (factory.user(name) for name in ("s", "a", "b", "c"))
    chat_id = factory.chat([sender, first, second, third])
    message_id = factory.message(chat_id, sender)

    await store.mark_delivered(message_id, [first, second])
    merged = await store.mark_delivered(message_id, [second, third])

    assert merged.delivered_to == {sender, first, second, third}
    assert merged.read_by == {sender}


@pytest.mark.anyio("asyncio")
async def test_concurrent_acks_lose_nothing(store, factory):
    sender = factory.user("sender")
    readers = [factory.user(f"reader-{index}") for index in range(5)]
    chat_id = factory.chat([sender, *readers])
    message_id = factory.message(chat_id, sender)

    await asyncio.gather(*(store.mark_delivered(message_id, [reader]) for reader in readers))

    message = await store.get_message(message_id)
    assert message.delivered_to == {sender, *readers}


@pytest.mark.anyio("asyncio")
async def test_read_implies_delivery(store, factory):
    sender, reader = factory.user("s"), factory.user("r")
    chat_id = factory.chat([sender, reader])
    message_id = factory.message(chat_id, sender)

    message = await store.mark_read(message_id, [reader])

    assert reader in message.delivered_to
    assert reader in message.read_by
    assert message.content == "hello"


@pytest.mark.anyio("asyncio")
async def test_unknown_message_returns_none(store):
    assert await store.mark_delivered(999, [1]) is None
    assert await store.get_message(999) is None


@pytest.mark.anyio("asyncio")
async def test_count_unread_ignores_read_messages(store, factory):
    sender, reader = factory.user("s"), factory.user("r")
    chat_id = factory.chat([sender, reader])
    first = factory.message(chat_id, sender, "one")
    factory.message(chat_id, sender, "two")

    assert await store.count_unread(chat_id, reader) == 2
    await store.mark_read(first, [reader])
    assert await store.count_unread(chat_id, reader) == 1
    assert await store.count_unread(chat_id, sender) == 0


@pytest.mark.anyio("asyncio")
async def test_catch_up_broadcasts_once_for_all_unread(gateway, factory, connect):
    sender, reader = factory.user("s"), factory.user("r")
    chat_id = factory.chat([sender, reader])
    message_ids = [factory.message(chat_id, sender, f"m{index}") for index in range(3)]
    sender_socket = await connect(sender, join=(chat_id,))
    sender_socket.clear()

    reader_socket = await connect(reader, join=(chat_id,))
    await gateway.relay.flush()

    confirmations = sender_socket.of("messageReadConfirmation")
    assert len(confirmations) == 1
    entries = confirmations[0]["messages"]
    assert [entry["messageId"] for entry in entries] == message_ids
    assert all(entry["readBy"] == sorted([sender, reader]) for entry in entries)
    assert all(entry["status"] == "read" for entry in entries)
    assert reader_socket.of("joined") == [{"chatId": chat_id, "markedRead": 3}]
    await gateway.relay.stop()


@pytest.mark.anyio("asyncio")
async def test_catch_up_with_nothing_unread_is_silent(gateway, factory, connect):
    sender, reader = factory.user("s"), factory.user("r")
    chat_id = factory.chat([sender, reader])
    factory.message(chat_id, sender)
    await connect(reader, join=(chat_id,))
    sender_socket = await connect(sender, join=(chat_id,))

    reader_again = await connect(reader, join=(chat_id,))
    await gateway.relay.flush()

    assert sender_socket.of("messageReadConfirmation") == []
    assert reader_again.of("joined") == [{"chatId": chat_id, "markedRead": 0}]
    await gateway.relay.stop()


@pytest.mark.anyio("asyncio")
async def test_mark_delivered_broadcasts_status(gateway, factory, connect):
    sender, first, second = factory.user("s"), factory.user("a"), factory.user("b")
    chat_id = factory.chat([sender, first, second])
    message_id = factory.message(chat_id, sender)
    sender_socket = await connect(sender, join=(chat_id,))
    sender_socket.clear()

    await gateway.reconciler.mark_delivered(message_id, first, chat_id=chat_id)
    await gateway.relay.flush()

    assert sender_socket.of("messageDeliveryStatus") == [
        {
            "chatId": chat_id,
            "messageId": message_id,
            "userId": first,
            "deliveredTo": sorted([sender, first]),
            "status": "partially_delivered",
        }
    ]
    await gateway.relay.stop()


@pytest.mark.anyio("asyncio")
async def test_reconciler_validates_input(gateway, factory):
    sender, reader = factory.user("s"), factory.user("r")
    chat_id = factory.chat([sender, reader])
    other_chat = factory.chat([sender, reader])
    message_id = factory.message(chat_id, sender)

    with pytest.raises(InvalidPayloadError):
        await gateway.reconciler.mark_read(message_id, [])
    with pytest.raises(NotFoundError):
        await gateway.reconciler.mark_delivered(12345, reader)
    with pytest.raises(InvalidPayloadError):
        await gateway.reconciler.mark_delivered(message_id, reader, chat_id=other_chat)


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize("swap", [False, True])
async def test_read_receipts_are_merged_in_either_order(gateway, factory, swap):
    sender, first, second, third = (factory.user(name) for name in ("s", "a", "b", "c"))
    chat_id = factory.chat([sender, first, second, third])
    message_id = factory.message(chat_id, sender)
    batches = [[first, second], [second, third, third]]
    if swap:
        batches.reverse()

    for readers in batches:
        merged = await gateway.reconciler.mark_read(message_id, readers, chat_id=chat_id)

    assert merged.read_by == {sender, first, second, third}
    assert merged.delivered_to == {sender, first, second, third}


@pytest.mark.anyio("asyncio")
async def test_interleaved_read_receipts_lose_nothing(gateway, factory):
    sender, first, second, third = (factory.user(name) for name in ("s", "a", "b", "c"))
    chat_id = factory.chat([sender, first, second, third])
    message_id = factory.message(chat_id, sender)

    await asyncio.gather(
        gateway.reconciler.mark_read(message_id, [first, second]),
        gateway.reconciler.mark_read(message_id, [second, third]),
        gateway.reconciler.mark_read(message_id, [first, first]),
    )

    message = await gateway.store.get_message(message_id)
    assert message.read_by == {sender, first, second, third}
    assert compute_status(message, (sender, first, second, third)) is DeliveryStatus.READ


@pytest.mark.anyio("asyncio")
async def test_catch_up_skips_messages_hidden_by_the_reader(gateway, factory, connect, session_factory):
    sender, reader = factory.user("s"), factory.user("r")
    chat_id = factory.chat([sender, reader])
    hidden = factory.message(chat_id, sender, "hidden")
    visible = factory.message(chat_id, sender, "visible")
    with session_factory() as session:
        session.add(MessageDeletion(message_id=hidden, user_id=reader))
        session.commit()
    sender_socket = await connect(sender, join=(chat_id,))
    sender_socket.clear()

    reader_socket = await connect(reader, join=(chat_id,))
    await gateway.relay.flush()

    [confirmation] = sender_socket.of("messageReadConfirmation")
    assert [entry["messageId"] for entry in confirmation["messages"]] == [visible]
    assert reader_socket.of("joined") == [{"chatId": chat_id, "markedRead": 1}]
    assert reader not in (await gateway.store.get_message(hidden)).read_by
    await gateway.relay.stop()
