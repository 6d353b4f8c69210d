"""
Notification REST endpoints.

Every operation is scoped to the authenticated user; touching someone
else's notification answers 404, the same as a missing one.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db
from app.crud import crud_notification
from app.middleware.auth import AuthUser, verify_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications")


class NotificationResponse(BaseModel):
    id: str
    userId: str
    type: str
    taskId: Optional[str] = None
    offerId: Optional[str] = None
    message: str
    senderId: str
    senderName: str
    read: bool
    createdAt: str


@router.get("", response_model=List[NotificationResponse])
async def list_notifications(
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(verify_token),
):
    notifications = await crud_notification.list_for_user(db, user.user_id, limit=limit)
    return [n.to_dict() for n in notifications]


@router.get("/unread-count")
async def unread_count(
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(verify_token),
):
    return {"count": await crud_notification.count_unread(db, user.user_id)}


@router.post("/read-all")
async def mark_all_read(
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(verify_token),
):
    updated = await crud_notification.mark_all_read(db, user.user_id)
    return {"updated": updated}


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(
    notification_id: str,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(verify_token),
):
    notification = await crud_notification.mark_read(db, notification_id, user.user_id)
    return notification.to_dict()


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_notification(
    notification_id: str,
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(verify_token),
):
    await crud_notification.delete_notification(db, notification_id, user.user_id)


@router.delete("")
async def clear_notifications(
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(verify_token),
):
    deleted = await crud_notification.clear_for_user(db, user.user_id)
    logger.info(f"Cleared {deleted} notification(s) for {user.user_id}")
    return {"deleted": deleted}
