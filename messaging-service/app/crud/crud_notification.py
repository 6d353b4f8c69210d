# app/crud/crud_notification.py
"""
CRUD operations for in-app notifications.
"""
from typing import Optional, List, Union

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import Notification
from app.middleware.error_handler import NotFoundError, ValidationError
from app.models.status import NotificationType, REQUIRED_NOTIFICATION_REFS


def _parse_type(value: Union[str, NotificationType, None]) -> NotificationType:
    try:
        return NotificationType(value)
    except ValueError:
        allowed = ", ".join(t.value for t in NotificationType)
        raise ValidationError(
            f"Invalid notification type '{value}'. Expected one of: {allowed}",
            field="type",
        )


async def create_notification(
    db: AsyncSession,
    *,
    user_id: str,
    type: Union[str, NotificationType],
    message: str,
    sender_id: str,
    sender_name: str,
    task_id: Optional[str] = None,
    offer_id: Optional[str] = None,
) -> Notification:
    """Create a notification after checking type and contextual references."""
    notification_type = _parse_type(type)

    required = {
        "user_id": user_id,
        "message": message,
        "sender_id": sender_id,
        "sender_name": sender_name,
    }
    refs = {"task_id": task_id, "offer_id": offer_id}
    for field in REQUIRED_NOTIFICATION_REFS[notification_type]:
        required[field] = refs[field]

    for field, value in required.items():
        if value is None or not str(value).strip():
            raise ValidationError(
                f"{field} is required for '{notification_type.value}' notifications",
                field=field,
            )

    notif = Notification(
        user_id=user_id,
        type=notification_type.value,
        task_id=task_id,
        offer_id=offer_id,
        message=message.strip(),
        sender_id=sender_id,
        sender_name=sender_name,
        read=False,
    )
    db.add(notif)
    await db.commit()
    await db.refresh(notif)
    return notif


async def list_for_user(
    db: AsyncSession,
    user_id: str,
    limit: int = 50,
) -> List[Notification]:
    """Get recent notifications for a user, newest first."""
    result = await db.execute(
        select(Notification)
        .where(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def count_unread(db: AsyncSession, user_id: str) -> int:
    result = await db.execute(
        select(func.count(Notification.id)).where(
            Notification.user_id == user_id,
            Notification.read.is_(False),
        )
    )
    return result.scalar_one()


async def _get_owned(db: AsyncSession, notification_id: str, user_id: str) -> Notification:
    result = await db.execute(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user_id,
        )
    )
    notif = result.scalar_one_or_none()
    if notif is None:
        # Same answer whether it is missing or someone else's
        raise NotFoundError("Notification", notification_id)
    return notif


async def mark_read(db: AsyncSession, notification_id: str, user_id: str) -> Notification:
    """Mark a notification read. Only its target user may do this."""
    notif = await _get_owned(db, notification_id, user_id)
    if not notif.read:
        notif.read = True
        await db.commit()
        await db.refresh(notif)
    return notif


async def mark_all_read(db: AsyncSession, user_id: str) -> int:
    """Mark every unread notification for a user read. Returns the count changed."""
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.read.is_(False))
        .values(read=True)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount


async def delete_notification(db: AsyncSession, notification_id: str, user_id: str) -> None:
    notif = await _get_owned(db, notification_id, user_id)
    await db.delete(notif)
    await db.commit()


async def clear_for_user(db: AsyncSession, user_id: str) -> int:
    """Delete all of a user's notifications. Returns the number removed."""
    result = await db.execute(
        delete(Notification)
        .where(Notification.user_id == user_id)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount
