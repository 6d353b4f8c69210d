"""
Delivery Dispatcher

Orchestrates every message send and every notification: persist first,
then fan out live to connected devices, or fall back to a remote push when
the recipient is offline.

Persistence failures propagate to the caller (the send failed). Anything
that goes wrong after the record is stored is logged and swallowed here:
the recipient still sees the record on their next fetch.

Socket senders get their ack as soon as the record is stored; delivery
then runs as a tracked background task so a slow push provider or user
directory never holds up the ack.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from app.crud import crud_message
from app.db.models import Message, Notification
from app.middleware.error_handler import DatabaseError, DeliveryError, NotFoundError
from app.models.realtime_events import RealtimeEvent, outbound
from app.models.status import MessageStatus, NotificationType
from app.realtime.presence import ClientConnection, PresenceRegistry
from app.services.push_provider import PushMessage, PushProvider, PushTicket
from app.services.push_receipts import PushTicketQueue
from app.services.user_directory import UserDirectory

logger = logging.getLogger(__name__)

NOTIFICATION_PUSH_TITLES: Dict[NotificationType, str] = {
    NotificationType.OFFER: "New offer",
    NotificationType.MESSAGE: "New message",
    NotificationType.OFFER_ACCEPTED: "Offer accepted",
    NotificationType.OFFER_REJECTED: "Offer rejected",
}


def snippet(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3].rstrip() + "..."


class DeliveryDispatcher:
    """Routes messages and notifications to live connections or remote push"""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Any]],
        presence: PresenceRegistry,
        push_provider: PushProvider,
        user_directory: UserDirectory,
        ticket_queue: Optional[PushTicketQueue] = None,
        push_body_max_length: int = 100,
    ):
        self.session_factory = session_factory
        self.presence = presence
        self.push_provider = push_provider
        self.user_directory = user_directory
        self.ticket_queue = ticket_queue
        self.push_body_max_length = push_body_max_length
        self._deliveries: Set[asyncio.Task] = set()

    def _session(self):
        if self.session_factory is None:
            raise DatabaseError("Message store is not configured")
        return self.session_factory()

    # ==================== Messages ====================

    async def send_message(
        self,
        sender_id: str,
        receiver_id: str,
        content: str,
        task_id: Optional[str] = None,
        background: bool = False,
    ) -> Message:
        """
        Persist a message and deliver it.

        With background=True this returns right after the insert and the
        delivery runs as a tracked task (see drain()).

        Raises:
            ValidationError: Bad input, nothing stored
            DatabaseError: No message store configured
            SQLAlchemyError: Storage failed, nothing delivered
        """
        async with self._session() as db:
            message = await crud_message.create_message(
                db,
                sender_id=sender_id,
                receiver_id=receiver_id,
                content=content,
                task_id=task_id,
            )

        if background:
            self._track(asyncio.create_task(self.deliver_message(message)), message)
            return message
        return await self.deliver_message(message)

    async def deliver_message(self, message: Message) -> Message:
        """Live fan-out or push for a stored message. Never raises."""
        sender_id, receiver_id = message.sender_id, message.receiver_id
        new_message = outbound(RealtimeEvent.NEW_MESSAGE, **message.to_dict())
        receiver_connections = self.presence.connections_for(receiver_id)

        # Echo to the sender's devices either way
        await self._fan_out(self.presence.connections_for(sender_id), new_message)

        reached = 0
        if receiver_connections:
            reached = await self._fan_out(receiver_connections, new_message)

        if reached:
            message = await self._record_delivery(message)
            if self.presence.has_joined(receiver_id, sender_id):
                message = await self._read_on_arrival(message)
        else:
            await self._push_message(message)

        await self.emit_to_user(
            receiver_id,
            outbound(RealtimeEvent.CONVERSATION_UPDATE, userId=sender_id),
        )
        return message

    async def _read_on_arrival(self, message: Message) -> Message:
        # Receiver has this chat open: it is read as it lands
        try:
            read_ids = await self.mark_conversation_read(message.receiver_id, message.sender_id)
        except Exception as e:
            logger.error(
                f"Failed to mark message {message.id} read on arrival: {e}",
                extra={
                    "message_id": message.id,
                    "sender_id": message.sender_id,
                    "receiver_id": message.receiver_id,
                },
            )
            return message

        if message.id in read_ids:
            message.status = MessageStatus.READ.value
            message.read = True
        return message

    def _track(self, task: asyncio.Task, message: Message) -> None:
        self._deliveries.add(task)

        def _done(finished: asyncio.Task):
            self._deliveries.discard(finished)
            if finished.cancelled():
                logger.warning(f"Delivery of message {message.id} cancelled")
            elif finished.exception() is not None:
                logger.error(
                    f"Delivery of message {message.id} failed: {finished.exception()}",
                    extra={"message_id": message.id, "receiver_id": message.receiver_id},
                )

        task.add_done_callback(_done)

    @property
    def pending_deliveries(self) -> int:
        return len(self._deliveries)

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait for in-flight background deliveries; cancel what is left after timeout."""
        if not self._deliveries:
            return

        pending = list(self._deliveries)
        try:
            await asyncio.wait_for(
                asyncio.gather(*pending, return_exceptions=True),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"{len(self._deliveries)} deliveries still running after {timeout}s, cancelling")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def _record_delivery(self, message: Message) -> Message:
        try:
            async with self._session() as db:
                message, changed = await crud_message.mark_delivered(db, message.id)
        except Exception as e:
            logger.error(
                f"Failed to record delivery of message {message.id}: {e}",
                extra={"message_id": message.id, "receiver_id": message.receiver_id},
            )
            return message

        if changed:
            await self.emit_to_user(
                message.sender_id,
                outbound(RealtimeEvent.MESSAGE_DELIVERED, messageId=message.id),
            )
        return message

    async def acknowledge_delivery(self, user_id: str, message_id: str) -> bool:
        """
        Client-side delivery acknowledgment from the receiver.

        Returns:
            True if this call moved the message to delivered
        """
        async with self._session() as db:
            message = await crud_message.get_message(db, message_id)
            if message.receiver_id != user_id:
                raise NotFoundError("Message", message_id)
            message, changed = await crud_message.mark_delivered(db, message_id)

        if changed:
            await self.emit_to_user(
                message.sender_id,
                outbound(RealtimeEvent.MESSAGE_DELIVERED, messageId=message.id),
            )
        return changed

    async def mark_message_read(self, user_id: str, message_id: str) -> bool:
        """
        Receiver read one message. Routes messageRead to the sender and the
        new unread count for that sender to the reader, once.

        Raises:
            NotFoundError: No such message, or user_id is not its receiver
        """
        async with self._session() as db:
            message, changed = await crud_message.mark_read(db, message_id, reader_id=user_id)
            if not changed:
                return False
            unread = await crud_message.count_unread_from(
                db, receiver_id=user_id, sender_id=message.sender_id
            )

        await self.emit_to_user(
            message.sender_id,
            outbound(RealtimeEvent.MESSAGE_READ, messageId=message.id, status=MessageStatus.READ.value),
        )
        await self.emit_to_user(
            user_id,
            outbound(RealtimeEvent.UNREAD_COUNT_UPDATE, senderId=message.sender_id, count=unread),
        )
        return True

    async def join_conversation(self, connection: ClientConnection, peer_id: str) -> List[str]:
        """
        Open the chat with peer_id on this connection and read everything
        the peer sent. Safe to repeat: already-read messages emit nothing.
        """
        self.presence.join(connection, peer_id)
        return await self.mark_conversation_read(connection.user_id, peer_id)

    def leave_conversation(self, connection: ClientConnection, peer_id: str) -> None:
        self.presence.leave(connection, peer_id)

    async def mark_conversation_read(self, reader_id: str, peer_id: str) -> List[str]:
        """Mark peer_id's messages to reader_id read and route the receipts."""
        async with self._session() as db:
            changed = await crud_message.mark_conversation_read(
                db, reader_id=reader_id, peer_id=peer_id
            )
            unread = await crud_message.count_unread_from(
                db, receiver_id=reader_id, sender_id=peer_id
            )

        if not changed:
            return []

        peer_connections = self.presence.connections_for(peer_id)
        for message in changed:
            await self._fan_out(
                peer_connections,
                outbound(RealtimeEvent.MESSAGE_READ, messageId=message.id, status=MessageStatus.READ.value),
            )

        await self.emit_to_user(
            reader_id,
            outbound(RealtimeEvent.UNREAD_COUNT_UPDATE, senderId=peer_id, count=unread),
        )
        logger.debug(f"{reader_id} read {len(changed)} message(s) from {peer_id}")
        return [m.id for m in changed]

    async def _push_message(self, message: Message) -> List[PushTicket]:
        sender_name = await self._display_name(message.sender_id)
        return await self._push(
            message.receiver_id,
            title=sender_name or NOTIFICATION_PUSH_TITLES[NotificationType.MESSAGE],
            body=snippet(message.content, self.push_body_max_length),
            data={
                "type": NotificationType.MESSAGE.value,
                "messageId": message.id,
                "senderId": message.sender_id,
            },
        )

    # ==================== Notifications ====================

    async def dispatch_notification(self, notification: Notification) -> None:
        """Deliver a stored notification live, or by remote push if the user is offline."""
        reached = await self.emit_to_user(
            notification.user_id,
            outbound(RealtimeEvent.NOTIFICATION, **notification.to_dict()),
        )
        if reached:
            return

        notification_type = NotificationType(notification.type)
        await self._push(
            notification.user_id,
            title=NOTIFICATION_PUSH_TITLES[notification_type],
            body=snippet(notification.message, self.push_body_max_length),
            data={
                "type": notification_type.value,
                "notificationId": notification.id,
                "taskId": notification.task_id,
                "offerId": notification.offer_id,
            },
        )

    # ==================== Transport ====================

    async def emit_to_user(self, user_id: str, event: Dict[str, Any]) -> int:
        """Send an event to every live connection of a user. Returns how many succeeded."""
        return await self._fan_out(self.presence.connections_for(user_id), event)

    async def _fan_out(self, connections: Iterable[ClientConnection], event: Dict[str, Any]) -> int:
        connections = list(connections)
        if not connections:
            return 0

        results = await asyncio.gather(
            *(c.send(event) for c in connections), return_exceptions=True
        )

        delivered = 0
        for connection, result in zip(connections, results):
            if isinstance(result, DeliveryError):
                logger.warning(
                    f"Live {event.get('type')} to {connection.user_id} failed: {result.message}",
                    extra={"user_id": connection.user_id, "connection_id": connection.id},
                )
            elif isinstance(result, BaseException):
                logger.error(
                    f"Unexpected error emitting {event.get('type')} to {connection.user_id}: {result}"
                )
            else:
                delivered += 1
        return delivered

    async def _display_name(self, user_id: str) -> Optional[str]:
        try:
            user = await self.user_directory.find_user(user_id)
        except Exception as e:
            logger.warning(f"Could not resolve display name for {user_id}: {e}")
            return None
        return user.name if user else None

    async def _push(self, user_id: str, title: str, body: str, data: Dict[str, Any]) -> List[PushTicket]:
        try:
            user = await self.user_directory.find_user(user_id)
        except Exception as e:
            logger.error(f"Push to {user_id} skipped, user lookup failed: {e}")
            return []

        if user is None or not user.push_token:
            logger.info(f"User {user_id} offline with no push token; will see it on next fetch")
            return []

        try:
            tickets = await self.push_provider.send(
                [PushMessage(to=user.push_token, title=title, body=body, data=data)]
            )
        except Exception as e:
            logger.error(f"Push provider failed for {user_id}: {e}", extra={"data": data})
            return []

        if self.ticket_queue is not None and tickets:
            try:
                await self.ticket_queue.enqueue(tickets)
            except Exception as e:
                logger.warning(f"Could not queue {len(tickets)} push ticket(s) for receipts: {e}")
        return tickets
