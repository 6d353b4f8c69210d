"""
Conversation Aggregator

Builds a user's conversation list from the Message Store at read time:
one row per peer with the latest message and the unread count. Nothing is
cached or stored, so there is nothing to invalidate when a message lands.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import Message
from app.services.user_directory import UserDirectory

logger = logging.getLogger(__name__)


@dataclass
class ConversationSummary:
    user_id: str
    user_name: Optional[str]
    last_message: str
    last_message_time: datetime
    unread_count: int

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "userName": self.user_name,
            "lastMessage": self.last_message,
            "lastMessageTime": self.last_message_time.isoformat(),
            "unreadCount": self.unread_count,
        }


async def _resolve_name(directory: UserDirectory, user_id: str) -> Optional[str]:
    try:
        user = await directory.find_user(user_id)
    except Exception as e:
        logger.warning(f"Could not resolve name for {user_id}: {e}")
        return None
    if user is None:
        logger.warning(f"Conversation peer {user_id} not found in user directory")
        return None
    return user.name


async def list_conversations(
    db: AsyncSession, user_id: str, directory: UserDirectory
) -> List[ConversationSummary]:
    """
    Summarise every conversation user_id takes part in.

    Rows come back newest conversation first. Messages sharing a timestamp
    are ordered by id, which is arbitrary but stable.
    """
    result = await db.execute(
        select(Message)
        .where(or_(Message.sender_id == user_id, Message.receiver_id == user_id))
        .order_by(Message.created_at.desc(), Message.id.desc())
    )

    groups: Dict[str, ConversationSummary] = {}
    for message in result.scalars():
        peer_id = message.receiver_id if message.sender_id == user_id else message.sender_id
        summary = groups.get(peer_id)
        if summary is None:
            # First row seen per peer is the latest message
            summary = ConversationSummary(
                user_id=peer_id,
                user_name=None,
                last_message=message.content,
                last_message_time=message.created_at,
                unread_count=0,
            )
            groups[peer_id] = summary
        if message.receiver_id == user_id and not message.read:
            summary.unread_count += 1

    summaries = list(groups.values())
    names = await asyncio.gather(*(_resolve_name(directory, s.user_id) for s in summaries))
    for summary, name in zip(summaries, names):
        summary.user_name = name

    return summaries
