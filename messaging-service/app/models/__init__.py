"""
Messaging service models
"""
from .realtime_events import (
    RealtimeEvent,
    WsOutbound,
    outbound,
    ClientAction,
    WsInbound,
    SendMessagePayload,
    PeerPayload,
    MessageIdPayload,
)
from .status import (
    MessageStatus,
    NotificationType,
    MESSAGE_TRANSITIONS,
    can_transition,
)

__all__ = [
    # Events the server emits
    "RealtimeEvent",
    "WsOutbound",
    "outbound",
    # Actions clients send
    "ClientAction",
    "WsInbound",
    "SendMessagePayload",
    "PeerPayload",
    "MessageIdPayload",
    # Status vocabularies
    "MessageStatus",
    "NotificationType",
    "MESSAGE_TRANSITIONS",
    "can_transition",
]
