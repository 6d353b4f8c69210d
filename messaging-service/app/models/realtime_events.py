"""
Pydantic models for the real-time socket protocol
Inbound frames are validated before any handler touches them
"""
import logging
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, Any, Dict
from datetime import datetime
from enum import Enum

logger = logging.getLogger(__name__)


# =====================
# Server -> Client
# =====================

class RealtimeEvent(str, Enum):
    """Events the server emits to connected clients"""
    NEW_MESSAGE = "newMessage"
    CONVERSATION_UPDATE = "conversationUpdate"
    MESSAGE_DELIVERED = "messageDelivered"
    MESSAGE_READ = "messageRead"
    UNREAD_COUNT_UPDATE = "unreadCountUpdate"
    NOTIFICATION = "notification"
    ACK = "ack"
    ERROR = "error"
    PONG = "pong"


class WsOutbound(BaseModel):
    """
    Server -> Client frame.

    Example:
    {
        "type": "messageRead",
        "data": {"messageId": "msg_3f9a0c1b2d4e", "status": "read"},
        "timestamp": "2026-02-02T12:00:00Z"
    }
    """
    type: RealtimeEvent
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=lambda: datetime.utcnow().isoformat() + "Z")

    model_config = ConfigDict(use_enum_values=True)


def outbound(event: RealtimeEvent, /, **data: Any) -> Dict[str, Any]:
    """Build a JSON-ready outbound frame."""
    return WsOutbound(type=event, data=data).model_dump()


# =====================
# Client -> Server
# =====================

class ClientAction(str, Enum):
    """Actions a client may send over its socket"""
    SEND_MESSAGE = "sendMessage"
    JOIN_CONVERSATION = "joinConversation"
    LEAVE_CONVERSATION = "leaveConversation"
    MARK_CONVERSATION_READ = "markConversationRead"
    MESSAGE_RECEIVED = "messageReceived"
    MESSAGE_READ = "messageRead"
    PING = "ping"


class WsInbound(BaseModel):
    """
    Client -> Server frame.

    Example:
    {
        "type": "sendMessage",
        "data": {"receiverId": "user_456", "content": "Hi", "clientTempId": "tmp_1"}
    }
    """
    type: ClientAction
    data: Dict[str, Any] = Field(default_factory=dict)


class SendMessagePayload(BaseModel):
    """Payload of a sendMessage action"""
    receiverId: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., max_length=5000)
    clientTempId: Optional[str] = Field(None, max_length=255)
    taskId: Optional[str] = Field(None, max_length=255)

    @field_validator('receiverId')
    @classmethod
    def validate_receiver(cls, v):
        """Ensure receiver ID is a non-empty string"""
        if not v or not v.strip():
            raise ValueError('receiverId must be a non-empty string')
        return v.strip()


class PeerPayload(BaseModel):
    """Payload of join/leave/markConversationRead actions"""
    peerId: str = Field(..., min_length=1, max_length=255)

    @field_validator('peerId')
    @classmethod
    def validate_peer(cls, v):
        if not v or not v.strip():
            raise ValueError('peerId must be a non-empty string')
        return v.strip()


class MessageIdPayload(BaseModel):
    """Payload of messageReceived and messageRead: one message by id"""
    messageId: str = Field(..., min_length=1, max_length=64)
