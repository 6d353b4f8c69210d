"""
Message REST endpoints.

Fetching and sending over HTTP for clients without a live socket. Sends go
through the same dispatcher as socket sends, so a REST send still reaches
the receiver's live devices or their phone.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db, get_dispatcher, get_user_directory
from app.crud import crud_message
from app.middleware.auth import AuthUser, verify_token
from app.realtime.dispatcher import DeliveryDispatcher
from app.services.conversations import list_conversations
from app.services.user_directory import UserDirectory

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages")


class SendMessageRequest(BaseModel):
    receiverId: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., max_length=5000)
    taskId: Optional[str] = Field(None, max_length=255)


class MessageResponse(BaseModel):
    id: str
    senderId: str
    receiverId: str
    taskId: Optional[str] = None
    content: str
    status: str
    read: bool
    createdAt: str


class ConversationResponse(BaseModel):
    userId: str
    userName: Optional[str] = None
    lastMessage: str
    lastMessageTime: str
    unreadCount: int


@router.get("/conversations", response_model=List[ConversationResponse])
async def get_conversations(
    db: AsyncSession = Depends(get_db),
    directory: UserDirectory = Depends(get_user_directory),
    user: AuthUser = Depends(verify_token),
):
    """One summary per chat partner, most recent conversation first."""
    summaries = await list_conversations(db, user.user_id, directory)
    return [s.to_dict() for s in summaries]


@router.get("/{peer_id}", response_model=List[MessageResponse])
async def get_messages(
    peer_id: str,
    mark_read: bool = Query(True, description="Mark the peer's messages to you as read"),
    db: AsyncSession = Depends(get_db),
    dispatcher: DeliveryDispatcher = Depends(get_dispatcher),
    user: AuthUser = Depends(verify_token),
):
    """
    Full history between the caller and peer_id, oldest first.

    Opening a conversation reads it: read receipts go out to the peer
    exactly as if the caller had joined the chat over the socket.
    """
    if mark_read:
        await dispatcher.mark_conversation_read(user.user_id, peer_id)

    messages = await crud_message.get_conversation_messages(db, user.user_id, peer_id)
    return [m.to_dict() for m in messages]


@router.post("", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    request: SendMessageRequest,
    dispatcher: DeliveryDispatcher = Depends(get_dispatcher),
    user: AuthUser = Depends(verify_token),
):
    message = await dispatcher.send_message(
        user.user_id,
        request.receiverId,
        request.content,
        task_id=request.taskId,
    )
    logger.info(f"Message {message.id} sent by {user.user_id} via REST")
    return message.to_dict()
