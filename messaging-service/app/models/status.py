"""
Closed status/type vocabularies for messages and notifications.

Every consumer that branches on one of these enums goes through a lookup
table keyed by every member, so adding a member without handling it fails
the import-time completeness checks below.
"""
from enum import Enum
from typing import Dict, FrozenSet


class MessageStatus(str, Enum):
    """Lifecycle of a direct message"""
    SENDING = "sending"      # Client-local, before server acknowledgment
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    ERROR = "error"          # Client-local, only reachable from SENDING


MESSAGE_TRANSITIONS: Dict[MessageStatus, FrozenSet[MessageStatus]] = {
    MessageStatus.SENDING: frozenset({MessageStatus.SENT, MessageStatus.ERROR}),
    MessageStatus.SENT: frozenset({MessageStatus.DELIVERED, MessageStatus.READ}),
    MessageStatus.DELIVERED: frozenset({MessageStatus.READ}),
    MessageStatus.READ: frozenset(),
    MessageStatus.ERROR: frozenset(),
}

def can_transition(current: MessageStatus, target: MessageStatus) -> bool:
    """Return True if a message may move from current to target."""
    return target in MESSAGE_TRANSITIONS[MessageStatus(current)]


class NotificationType(str, Enum):
    """Events that need a user's attention"""
    OFFER = "offer"
    MESSAGE = "message"
    OFFER_ACCEPTED = "offer_accepted"
    OFFER_REJECTED = "offer_rejected"


# Contextual references each notification type must carry
REQUIRED_NOTIFICATION_REFS: Dict[NotificationType, tuple] = {
    NotificationType.OFFER: ("task_id", "offer_id"),
    NotificationType.MESSAGE: (),
    NotificationType.OFFER_ACCEPTED: ("task_id", "offer_id"),
    NotificationType.OFFER_REJECTED: ("task_id", "offer_id"),
}
