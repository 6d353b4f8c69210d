"""
Tests for the Delivery Dispatcher

Covers the end-to-end send flows (online, in-conversation, offline),
read receipts on join, delivery acknowledgments and notification routing.
"""

import asyncio
import logging

import pytest
from sqlalchemy.exc import OperationalError
from unittest.mock import AsyncMock, MagicMock, patch

from app.crud import crud_message, crud_notification
from app.middleware.error_handler import DatabaseError, NotFoundError, ValidationError
from app.models.status import MessageStatus, NotificationType
from app.realtime.dispatcher import NOTIFICATION_PUSH_TITLES, DeliveryDispatcher, snippet

from conftest import ALICE, ALICE_TOKEN, BOB, BOB_TOKEN, CAROL


async def _stored(session_factory, message_id):
    async with session_factory() as db:
        return await crud_message.get_message(db, message_id)


class TestSendMessageOnline:

    @pytest.mark.asyncio
    async def test_receiver_online_gets_message_and_sender_sees_delivered(
        self, dispatcher, connect, push_provider, session_factory
    ):
        _, alice_socket = connect(ALICE)
        _, bob_socket = connect(BOB)

        message = await dispatcher.send_message(ALICE, BOB, "Hi Bob", task_id="task_1")

        received = bob_socket.of_type("newMessage")
        assert len(received) == 1
        assert received[0]["data"]["id"] == message.id
        assert received[0]["data"]["content"] == "Hi Bob"

        assert alice_socket.of_type("newMessage")[0]["data"]["id"] == message.id
        delivered = alice_socket.of_type("messageDelivered")
        assert [e["data"]["messageId"] for e in delivered] == [message.id]

        assert bob_socket.of_type("conversationUpdate")[0]["data"] == {"userId": ALICE}
        assert push_provider.sent == []

        stored = await _stored(session_factory, message.id)
        assert stored.status == MessageStatus.DELIVERED.value
        assert stored.read is False

    @pytest.mark.asyncio
    async def test_receiver_in_conversation_reads_immediately(
        self, dispatcher, connect, session_factory
    ):
        _, alice_socket = connect(ALICE)
        bob_conn, bob_socket = connect(BOB)
        await dispatcher.join_conversation(bob_conn, ALICE)

        message = await dispatcher.send_message(ALICE, BOB, "Are you there?")

        read_events = alice_socket.of_type("messageRead")
        assert read_events[-1]["data"] == {"messageId": message.id, "status": "read"}
        assert bob_socket.of_type("unreadCountUpdate")[-1]["data"] == {"senderId": ALICE, "count": 0}

        stored = await _stored(session_factory, message.id)
        assert stored.status == MessageStatus.READ.value
        assert stored.read is True
        assert message.status == MessageStatus.READ.value

    @pytest.mark.asyncio
    async def test_multi_device_receiver_gets_every_copy(self, dispatcher, connect):
        connect(ALICE)
        _, phone = connect(BOB)
        _, tablet = connect(BOB)

        await dispatcher.send_message(ALICE, BOB, "ping")

        assert len(phone.of_type("newMessage")) == 1
        assert len(tablet.of_type("newMessage")) == 1

    @pytest.mark.asyncio
    async def test_broken_receiver_socket_falls_back_to_push(
        self, dispatcher, connect, push_provider, session_factory
    ):
        connect(ALICE)
        connect(BOB, fail=True)

        message = await dispatcher.send_message(ALICE, BOB, "still arrives")

        stored = await _stored(session_factory, message.id)
        assert stored.status == MessageStatus.SENT.value
        assert [m.to for m in push_provider.sent] == [BOB_TOKEN]


class TestSendMessageOffline:

    @pytest.mark.asyncio
    async def test_offline_receiver_gets_push(self, dispatcher, connect, push_provider, session_factory):
        _, alice_socket = connect(ALICE)

        message = await dispatcher.send_message(ALICE, BOB, "Can you start tomorrow?")

        assert len(push_provider.sent) == 1
        push = push_provider.sent[0]
        assert push.to == BOB_TOKEN
        assert push.title == "Alice"
        assert push.body == "Can you start tomorrow?"
        assert push.data == {"type": "message", "messageId": message.id, "senderId": ALICE}

        assert alice_socket.of_type("messageDelivered") == []
        stored = await _stored(session_factory, message.id)
        assert stored.status == MessageStatus.SENT.value

    @pytest.mark.asyncio
    async def test_push_tickets_are_queued_for_receipts(
        self, session_factory, presence, push_provider, directory
    ):
        queue = MagicMock()
        queue.enqueue = AsyncMock(return_value=1)
        dispatcher = DeliveryDispatcher(
            session_factory, presence, push_provider, directory, ticket_queue=queue
        )

        await dispatcher.send_message(ALICE, BOB, "hello")

        queue.enqueue.assert_awaited_once()
        tickets = queue.enqueue.await_args.args[0]
        assert [t.id for t in tickets] == ["ticket-1"]

    @pytest.mark.asyncio
    async def test_ticket_queue_failure_does_not_fail_send(
        self, session_factory, presence, push_provider, directory
    ):
        queue = MagicMock()
        queue.enqueue = AsyncMock(side_effect=ConnectionError("redis down"))
        dispatcher = DeliveryDispatcher(
            session_factory, presence, push_provider, directory, ticket_queue=queue
        )

        message = await dispatcher.send_message(ALICE, BOB, "hello")

        assert message.id.startswith("msg_")

    @pytest.mark.asyncio
    async def test_offline_receiver_without_token_is_skipped(self, dispatcher, push_provider):
        message = await dispatcher.send_message(ALICE, CAROL, "hello Carol")

        assert push_provider.sent == []
        assert message.status == MessageStatus.SENT.value

    @pytest.mark.asyncio
    async def test_push_body_is_truncated(self, session_factory, presence, push_provider, directory):
        dispatcher = DeliveryDispatcher(
            session_factory, presence, push_provider, directory, push_body_max_length=12
        )

        await dispatcher.send_message(ALICE, BOB, "This message is far too long for a banner")

        assert push_provider.sent[0].body == "This mess..."

    @pytest.mark.asyncio
    async def test_push_provider_error_is_swallowed(self, dispatcher, push_provider, session_factory):
        push_provider.send = AsyncMock(side_effect=RuntimeError("provider exploded"))

        message = await dispatcher.send_message(ALICE, BOB, "hello")

        stored = await _stored(session_factory, message.id)
        assert stored.content == "hello"

    @pytest.mark.asyncio
    async def test_unknown_sender_falls_back_to_generic_title(self, dispatcher, push_provider):
        await dispatcher.send_message("user_ghost", BOB, "boo")

        assert push_provider.sent[0].title == "New message"


class TestSendMessageFailures:

    @pytest.mark.asyncio
    async def test_invalid_message_emits_nothing(self, dispatcher, connect, push_provider):
        _, alice_socket = connect(ALICE)
        _, bob_socket = connect(BOB)

        with pytest.raises(ValidationError):
            await dispatcher.send_message(ALICE, BOB, "   ")

        assert alice_socket.sent == []
        assert bob_socket.sent == []
        assert push_provider.sent == []

    @pytest.mark.asyncio
    async def test_read_on_arrival_failure_keeps_send_successful(
        self, dispatcher, connect, session_factory
    ):
        _, alice_socket = connect(ALICE)
        bob_conn, bob_socket = connect(BOB)
        await dispatcher.join_conversation(bob_conn, ALICE)

        db_down = OperationalError("UPDATE messages", {}, Exception("connection lost"))
        with patch.object(crud_message, "mark_conversation_read", AsyncMock(side_effect=db_down)):
            message = await dispatcher.send_message(ALICE, BOB, "still stored")

        assert message.status == MessageStatus.DELIVERED.value
        assert alice_socket.of_type("messageDelivered")[0]["data"]["messageId"] == message.id
        assert alice_socket.of_type("messageRead") == []
        assert bob_socket.of_type("conversationUpdate")[0]["data"] == {"userId": ALICE}

        stored = await _stored(session_factory, message.id)
        assert stored.status == MessageStatus.DELIVERED.value

    @pytest.mark.asyncio
    async def test_missing_store_is_database_error(self, presence, push_provider, directory):
        dispatcher = DeliveryDispatcher(None, presence, push_provider, directory)

        with pytest.raises(DatabaseError):
            await dispatcher.send_message(ALICE, BOB, "hi")

        assert push_provider.sent == []


class TestBackgroundDelivery:

    @staticmethod
    def _gated(push_provider):
        gate = asyncio.Event()
        original = push_provider.send

        async def slow_send(messages):
            await gate.wait()
            return await original(messages)

        push_provider.send = slow_send
        return gate

    @pytest.mark.asyncio
    async def test_returns_once_stored_while_push_is_slow(self, dispatcher, push_provider, session_factory):
        gate = self._gated(push_provider)

        message = await dispatcher.send_message(ALICE, BOB, "Hello", background=True)

        assert message.status == MessageStatus.SENT.value
        assert (await _stored(session_factory, message.id)).content == "Hello"
        assert push_provider.sent == []
        assert dispatcher.pending_deliveries == 1

        gate.set()
        await dispatcher.drain()

        assert [m.to for m in push_provider.sent] == [BOB_TOKEN]
        assert dispatcher.pending_deliveries == 0

    @pytest.mark.asyncio
    async def test_drain_cancels_stuck_deliveries(self, dispatcher, push_provider):
        self._gated(push_provider)

        await dispatcher.send_message(ALICE, BOB, "never pushed", background=True)
        await dispatcher.drain(timeout=0.05)

        assert dispatcher.pending_deliveries == 0
        assert push_provider.sent == []

    @pytest.mark.asyncio
    async def test_failed_delivery_task_is_logged(self, dispatcher, caplog):
        dispatcher.deliver_message = AsyncMock(side_effect=RuntimeError("fan-out bug"))

        with caplog.at_level(logging.ERROR, logger="app.realtime.dispatcher"):
            message = await dispatcher.send_message(ALICE, BOB, "hi", background=True)
            await dispatcher.drain()

        assert dispatcher.pending_deliveries == 0
        assert f"Delivery of message {message.id} failed" in caplog.text

    @pytest.mark.asyncio
    async def test_live_receiver_gets_message_in_background(self, dispatcher, connect):
        _, bob_socket = connect(BOB)

        message = await dispatcher.send_message(ALICE, BOB, "hey", background=True)
        await dispatcher.drain()

        assert bob_socket.of_type("newMessage")[0]["data"]["id"] == message.id


class TestReadReceipts:

    @pytest.mark.asyncio
    async def test_join_marks_history_read_and_notifies_sender(self, dispatcher, connect):
        first = await dispatcher.send_message(BOB, ALICE, "one")
        second = await dispatcher.send_message(BOB, ALICE, "two")

        _, bob_socket = connect(BOB)
        alice_conn, alice_socket = connect(ALICE)

        changed = await dispatcher.join_conversation(alice_conn, BOB)

        assert changed == [first.id, second.id]
        assert [e["data"]["messageId"] for e in bob_socket.of_type("messageRead")] == [first.id, second.id]
        assert alice_socket.of_type("unreadCountUpdate")[0]["data"] == {"senderId": BOB, "count": 0}

    @pytest.mark.asyncio
    async def test_rejoin_emits_each_receipt_once(self, dispatcher, connect):
        await dispatcher.send_message(BOB, ALICE, "one")
        _, bob_socket = connect(BOB)
        alice_conn, _ = connect(ALICE)

        await dispatcher.join_conversation(alice_conn, BOB)
        again = await dispatcher.join_conversation(alice_conn, BOB)

        assert again == []
        assert len(bob_socket.of_type("messageRead")) == 1

    @pytest.mark.asyncio
    async def test_leaving_stops_immediate_read(self, dispatcher, connect, session_factory):
        connect(ALICE)
        bob_conn, _ = connect(BOB)
        await dispatcher.join_conversation(bob_conn, ALICE)
        dispatcher.leave_conversation(bob_conn, ALICE)

        message = await dispatcher.send_message(ALICE, BOB, "after leave")

        stored = await _stored(session_factory, message.id)
        assert stored.status == MessageStatus.DELIVERED.value

    @pytest.mark.asyncio
    async def test_mark_conversation_read_without_join(self, dispatcher, connect, presence):
        await dispatcher.send_message(BOB, ALICE, "one")
        alice_conn, _ = connect(ALICE)

        changed = await dispatcher.mark_conversation_read(ALICE, BOB)

        assert len(changed) == 1
        assert not presence.has_joined(ALICE, BOB)


class TestMarkMessageRead:

    @pytest.mark.asyncio
    async def test_receiver_reads_one_message(self, dispatcher, connect, session_factory):
        first = await dispatcher.send_message(ALICE, BOB, "one")
        await dispatcher.send_message(ALICE, BOB, "two")
        _, alice_socket = connect(ALICE)
        _, bob_socket = connect(BOB)

        assert await dispatcher.mark_message_read(BOB, first.id) is True

        assert alice_socket.of_type("messageRead")[0]["data"] == {"messageId": first.id, "status": "read"}
        assert bob_socket.of_type("unreadCountUpdate")[0]["data"] == {"senderId": ALICE, "count": 1}
        stored = await _stored(session_factory, first.id)
        assert stored.read is True

    @pytest.mark.asyncio
    async def test_second_read_emits_nothing(self, dispatcher, connect):
        message = await dispatcher.send_message(ALICE, BOB, "one")
        _, alice_socket = connect(ALICE)
        _, bob_socket = connect(BOB)

        await dispatcher.mark_message_read(BOB, message.id)
        assert await dispatcher.mark_message_read(BOB, message.id) is False

        assert len(alice_socket.of_type("messageRead")) == 1
        assert len(bob_socket.of_type("unreadCountUpdate")) == 1

    @pytest.mark.asyncio
    async def test_non_receiver_is_not_found(self, dispatcher, connect, session_factory):
        message = await dispatcher.send_message(ALICE, BOB, "private")
        _, alice_socket = connect(ALICE)

        with pytest.raises(NotFoundError):
            await dispatcher.mark_message_read(CAROL, message.id)

        assert alice_socket.of_type("messageRead") == []
        stored = await _stored(session_factory, message.id)
        assert stored.read is False
        assert stored.status == MessageStatus.SENT.value


class TestDeliveryAcknowledgment:

    @pytest.mark.asyncio
    async def test_receiver_ack_marks_delivered(self, dispatcher, connect, session_factory):
        message = await dispatcher.send_message(ALICE, BOB, "offline at first")
        _, alice_socket = connect(ALICE)

        assert await dispatcher.acknowledge_delivery(BOB, message.id) is True
        assert alice_socket.of_type("messageDelivered")[0]["data"]["messageId"] == message.id

        assert await dispatcher.acknowledge_delivery(BOB, message.id) is False
        assert len(alice_socket.of_type("messageDelivered")) == 1

    @pytest.mark.asyncio
    async def test_only_receiver_may_ack(self, dispatcher):
        message = await dispatcher.send_message(ALICE, BOB, "hi")

        with pytest.raises(NotFoundError):
            await dispatcher.acknowledge_delivery(CAROL, message.id)

    @pytest.mark.asyncio
    async def test_ack_after_read_does_not_regress(self, dispatcher, session_factory):
        message = await dispatcher.send_message(ALICE, BOB, "hi")
        await dispatcher.mark_conversation_read(BOB, ALICE)

        assert await dispatcher.acknowledge_delivery(BOB, message.id) is False
        stored = await _stored(session_factory, message.id)
        assert stored.status == MessageStatus.READ.value


class TestDispatchNotification:

    async def _notification(self, session_factory, user_id=ALICE):
        async with session_factory() as db:
            return await crud_notification.create_notification(
                db,
                user_id=user_id,
                type=NotificationType.OFFER,
                message="New offer received for task: Paint fence",
                sender_id=BOB,
                sender_name="Bob",
                task_id="task_9",
                offer_id="offer_9",
            )

    @pytest.mark.asyncio
    async def test_online_user_gets_live_event(self, dispatcher, connect, push_provider, session_factory):
        _, alice_socket = connect(ALICE)
        notification = await self._notification(session_factory)

        await dispatcher.dispatch_notification(notification)

        event = alice_socket.of_type("notification")[0]
        assert event["data"]["id"] == notification.id
        assert event["data"]["type"] == "offer"
        assert push_provider.sent == []

    @pytest.mark.asyncio
    async def test_offline_user_gets_push(self, dispatcher, push_provider, session_factory):
        notification = await self._notification(session_factory)

        await dispatcher.dispatch_notification(notification)

        push = push_provider.sent[0]
        assert push.to == ALICE_TOKEN
        assert push.title == "New offer"
        assert push.data["notificationId"] == notification.id
        assert push.data["offerId"] == "offer_9"

    @pytest.mark.asyncio
    async def test_offline_user_without_token_gets_nothing(self, dispatcher, push_provider, session_factory):
        notification = await self._notification(session_factory, user_id=CAROL)

        await dispatcher.dispatch_notification(notification)

        assert push_provider.sent == []


def test_snippet_keeps_short_text():
    assert snippet("short", 100) == "short"
    assert snippet("x" * 20, 10) == "xxxxxxx..."


def test_every_notification_type_has_a_push_title():
    assert set(NOTIFICATION_PUSH_TITLES) == set(NotificationType)
