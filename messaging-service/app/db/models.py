from sqlalchemy import Column, String, Text, Boolean, TIMESTAMP, Index
from datetime import datetime, timezone
import uuid
from app.db.session import Base
from app.models.status import MessageStatus


def utc_now_naive():
    """Return current UTC time as naive datetime (for TIMESTAMP WITHOUT TIME ZONE)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Message(Base):
    """A direct message between two users"""
    __tablename__ = "messages"

    id = Column(String(32), primary_key=True, default=lambda: f"msg_{uuid.uuid4().hex[:12]}")
    sender_id = Column(String(255), nullable=False, index=True)
    receiver_id = Column(String(255), nullable=False, index=True)
    task_id = Column(String(255), nullable=True)  # Opaque reference, never validated
    content = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=MessageStatus.SENT.value)
    read = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(TIMESTAMP, nullable=False, default=utc_now_naive)
    updated_at = Column(TIMESTAMP, nullable=False, default=utc_now_naive, onupdate=utc_now_naive)

    __table_args__ = (
        Index('idx_message_conversation', 'sender_id', 'receiver_id', 'created_at'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "senderId": self.sender_id,
            "receiverId": self.receiver_id,
            "taskId": self.task_id,
            "content": self.content,
            "status": self.status,
            "read": self.read,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class Notification(Base):
    """An in-app notification for a single user"""
    __tablename__ = "notifications"

    id = Column(String(32), primary_key=True, default=lambda: f"ntf_{uuid.uuid4().hex[:12]}")
    user_id = Column(String(255), nullable=False, index=True)
    type = Column(String(30), nullable=False)  # offer, message, offer_accepted, offer_rejected
    task_id = Column(String(255), nullable=True)
    offer_id = Column(String(255), nullable=True)
    message = Column(Text, nullable=False)
    sender_id = Column(String(255), nullable=False)
    sender_name = Column(String(255), nullable=False)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(TIMESTAMP, nullable=False, default=utc_now_naive)

    __table_args__ = (
        Index('idx_notification_user_created', 'user_id', 'created_at'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "type": self.type,
            "taskId": self.task_id,
            "offerId": self.offer_id,
            "message": self.message,
            "senderId": self.sender_id,
            "senderName": self.sender_name,
            "read": self.read,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
