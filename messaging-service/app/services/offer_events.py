"""
Offer lifecycle events.

The task service reports offer activity here instead of this service
watching offer records. Each event becomes a stored notification (and,
for an accepted offer, the opening chat message), and is re-published on
the `task-updates` channel so the task service can refresh its views.
"""

import json
import logging
from datetime import datetime
from typing import Annotated, Any, Callable, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from app.core.redis_client import RedisClient
from app.crud import crud_notification
from app.db.models import Message, Notification
from app.middleware.error_handler import DatabaseError
from app.models.status import NotificationType

logger = logging.getLogger(__name__)

TASK_UPDATES_CHANNEL = "task-updates"
OFFER_ACCEPTED_OPENING_MESSAGE = "Offer accepted! You can now start discussing the task details."


class OfferCreatedEvent(BaseModel):
    """A tasker made an offer on someone's task"""
    event: Literal["offer.created"] = "offer.created"
    offerId: str = Field(..., min_length=1)
    taskId: str = Field(..., min_length=1)
    taskTitle: str = Field(..., min_length=1)
    ownerId: str = Field(..., min_length=1)
    taskerId: str = Field(..., min_length=1)
    taskerName: str = Field(..., min_length=1)


class OfferStatusChangedEvent(BaseModel):
    """The task owner accepted or rejected an offer"""
    event: Literal["offer.status_changed"] = "offer.status_changed"
    offerId: str = Field(..., min_length=1)
    taskId: str = Field(..., min_length=1)
    taskTitle: str = Field(..., min_length=1)
    ownerId: str = Field(..., min_length=1)
    ownerName: str = Field(..., min_length=1)
    taskerId: str = Field(..., min_length=1)
    status: str

    @field_validator('status')
    @classmethod
    def validate_status(cls, v):
        v = v.strip().lower()
        if v not in ("accepted", "rejected"):
            raise ValueError("status must be 'accepted' or 'rejected'")
        return v


OfferEvent = Annotated[
    Union[OfferCreatedEvent, OfferStatusChangedEvent],
    Field(discriminator="event"),
]


class OfferEventHandler:
    """Turns offer events into notifications, messages and task updates"""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Any]],
        dispatcher,
        redis_client: Optional[RedisClient] = None,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.redis = redis_client

    def _session(self):
        if self.session_factory is None:
            raise DatabaseError("Notification store is not configured")
        return self.session_factory()

    async def handle(self, event: Union[OfferCreatedEvent, OfferStatusChangedEvent]) -> Notification:
        if isinstance(event, OfferCreatedEvent):
            return await self.offer_created(event)
        return await self.offer_status_changed(event)

    async def offer_created(self, event: OfferCreatedEvent) -> Notification:
        async with self._session() as db:
            notification = await crud_notification.create_notification(
                db,
                user_id=event.ownerId,
                type=NotificationType.OFFER,
                message=f"New offer received for task: {event.taskTitle}",
                sender_id=event.taskerId,
                sender_name=event.taskerName,
                task_id=event.taskId,
                offer_id=event.offerId,
            )

        await self.dispatcher.dispatch_notification(notification)
        await self._publish_activity(event, notification_id=notification.id)
        return notification

    async def offer_status_changed(self, event: OfferStatusChangedEvent) -> Notification:
        notification_type = NotificationType(f"offer_{event.status}")

        async with self._session() as db:
            notification = await crud_notification.create_notification(
                db,
                user_id=event.taskerId,
                type=notification_type,
                message=f'Your offer for task "{event.taskTitle}" has been {event.status}',
                sender_id=event.ownerId,
                sender_name=event.ownerName,
                task_id=event.taskId,
                offer_id=event.offerId,
            )

        await self.dispatcher.dispatch_notification(notification)

        opening: Optional[Message] = None
        if notification_type == NotificationType.OFFER_ACCEPTED:
            opening = await self.dispatcher.send_message(
                event.ownerId,
                event.taskerId,
                OFFER_ACCEPTED_OPENING_MESSAGE,
                task_id=event.taskId,
            )

        await self._publish_activity(
            event,
            notification_id=notification.id,
            message_id=opening.id if opening else None,
        )
        return notification

    async def _publish_activity(self, event: BaseModel, **refs: Optional[str]) -> bool:
        if self.redis is None or not self.redis.connected:
            logger.debug(f"Redis not configured; {event.event} not published to {TASK_UPDATES_CHANNEL}")
            return False

        record = {
            "type": "task.offer_activity",
            "event": event.model_dump(),
            "timestamp": datetime.utcnow().isoformat() + "Z",
            **{k: v for k, v in refs.items() if v is not None},
        }
        try:
            await self.redis.publish(TASK_UPDATES_CHANNEL, json.dumps(record))
            return True
        except Exception as e:
            # The notification is already stored; the task view catches up on its next read
            logger.error(
                f"Failed to publish {event.event} for offer {event.offerId}: {e}",
                extra={"offer_id": event.offerId, "task_id": event.taskId},
            )
            return False
