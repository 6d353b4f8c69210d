"""
Message Store: persistence and status transitions for direct messages.

Transitions are single conditional UPDATE statements so concurrent
mark_read / mark_delivered calls on the same row resolve without locks:
whichever lands second simply matches zero rows.
"""
import logging
from typing import List, Optional, Tuple

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import Message, utc_now_naive
from app.middleware.error_handler import NotFoundError, ValidationError
from app.models.status import MessageStatus

logger = logging.getLogger(__name__)


def _require_id(value: Optional[str], field: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required", field=field)
    return str(value).strip()


async def create_message(
    db: AsyncSession,
    *,
    sender_id: str,
    receiver_id: str,
    content: Optional[str],
    task_id: Optional[str] = None,
) -> Message:
    """Persist a new message with status=sent, read=False."""
    sender_id = _require_id(sender_id, "sender_id")
    receiver_id = _require_id(receiver_id, "receiver_id")
    if sender_id == receiver_id:
        raise ValidationError("Cannot send a message to yourself", field="receiver_id")

    text = (content or "").strip()
    if not text:
        raise ValidationError("Message content cannot be empty", field="content")

    message = Message(
        sender_id=sender_id,
        receiver_id=receiver_id,
        task_id=task_id or None,
        content=text,
        status=MessageStatus.SENT.value,
        read=False,
    )
    db.add(message)
    await db.commit()
    await db.refresh(message)
    logger.debug(f"Message {message.id} stored: {sender_id} -> {receiver_id}")
    return message


async def get_message(db: AsyncSession, message_id: str) -> Message:
    message = await db.get(Message, message_id)
    if message is None:
        raise NotFoundError("Message", message_id)
    return message


async def get_conversation_messages(
    db: AsyncSession, user_a: str, user_b: str
) -> List[Message]:
    """All messages exchanged between two users, oldest first."""
    result = await db.execute(
        select(Message)
        .where(
            or_(
                and_(Message.sender_id == user_a, Message.receiver_id == user_b),
                and_(Message.sender_id == user_b, Message.receiver_id == user_a),
            )
        )
        .order_by(Message.created_at.asc(), Message.id.asc())
    )
    return list(result.scalars().all())


async def _conditional_update(db: AsyncSession, message_id: str, *conditions, **values) -> bool:
    result = await db.execute(
        update(Message)
        .where(Message.id == message_id, *conditions)
        .values(updated_at=utc_now_naive(), **values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount > 0


async def mark_read(
    db: AsyncSession, message_id: str, reader_id: Optional[str] = None
) -> Tuple[Message, bool]:
    """
    Mark a message read. No-op if it already is.

    Returns:
        (message, changed) - changed is False when the call was a no-op
    """
    message = await get_message(db, message_id)
    if reader_id is not None and message.receiver_id != reader_id:
        # Only the receiver may read-mark; do not reveal the message exists
        raise NotFoundError("Message", message_id)

    changed = await _conditional_update(
        db,
        message_id,
        Message.read.is_(False),
        read=True,
        status=MessageStatus.READ.value,
    )
    await db.refresh(message)
    return message, changed


async def mark_delivered(db: AsyncSession, message_id: str) -> Tuple[Message, bool]:
    """
    Move a message from sent to delivered. Any other source status is a no-op,
    so a late delivery ack never regresses a read message.
    """
    message = await get_message(db, message_id)
    changed = await _conditional_update(
        db,
        message_id,
        Message.status == MessageStatus.SENT.value,
        status=MessageStatus.DELIVERED.value,
    )
    await db.refresh(message)
    return message, changed


async def mark_conversation_read(
    db: AsyncSession, *, reader_id: str, peer_id: str
) -> List[Message]:
    """
    Mark every unread message from peer_id to reader_id as read.

    Returns only the messages this call actually changed, so repeated calls
    (or two devices joining at once) emit each read receipt once.
    """
    result = await db.execute(
        select(Message.id)
        .where(
            Message.sender_id == peer_id,
            Message.receiver_id == reader_id,
            Message.read.is_(False),
        )
        .order_by(Message.created_at.asc())
    )
    candidate_ids = list(result.scalars().all())

    changed = []
    for message_id in candidate_ids:
        if await _conditional_update(
            db,
            message_id,
            Message.read.is_(False),
            read=True,
            status=MessageStatus.READ.value,
        ):
            changed.append(message_id)

    if not changed:
        return []

    result = await db.execute(
        select(Message).where(Message.id.in_(changed)).order_by(Message.created_at.asc())
    )
    messages = list(result.scalars().all())
    for message in messages:
        await db.refresh(message)
    return messages


async def count_unread_from(db: AsyncSession, *, receiver_id: str, sender_id: str) -> int:
    result = await db.execute(
        select(func.count(Message.id)).where(
            Message.sender_id == sender_id,
            Message.receiver_id == receiver_id,
            Message.read.is_(False),
        )
    )
    return result.scalar_one()


async def count_unread(db: AsyncSession, receiver_id: str) -> int:
    """Total unread messages addressed to a user across all conversations."""
    result = await db.execute(
        select(func.count(Message.id)).where(
            Message.receiver_id == receiver_id,
            Message.read.is_(False),
        )
    )
    return result.scalar_one()
