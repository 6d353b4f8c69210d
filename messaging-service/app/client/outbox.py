"""
Client-side provisional messages.

A chat client shows a message the moment the user hits send, before the
server has stored it. The outbox tracks those provisional entries under a
temporary id until the server acknowledges them (confirmed, carrying the
real message id) or the send fails (error, offered for retry).

Once confirmed, the entry follows server receipts (delivered, read) through
the shared message transition table.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Protocol

from app.models.status import MessageStatus, can_transition

logger = logging.getLogger(__name__)


class OutboxState(str, Enum):
    LOCAL_PENDING = "local_pending"
    CONFIRMED = "confirmed"
    ERROR = "error"


OUTBOX_TRANSITIONS: Dict[OutboxState, FrozenSet[OutboxState]] = {
    OutboxState.LOCAL_PENDING: frozenset({OutboxState.CONFIRMED, OutboxState.ERROR}),
    OutboxState.CONFIRMED: frozenset(),
    OutboxState.ERROR: frozenset(),
}

# Message status shown to the user for each outbox state
OUTBOX_DISPLAY_STATUS: Dict[OutboxState, MessageStatus] = {
    OutboxState.LOCAL_PENDING: MessageStatus.SENDING,
    OutboxState.CONFIRMED: MessageStatus.SENT,
    OutboxState.ERROR: MessageStatus.ERROR,
}


class InvalidTransitionError(Exception):
    """Raised when an entry is moved along an edge the table does not allow"""


class MessageTransport(Protocol):
    async def submit(self, frame: Dict[str, Any]) -> Dict[str, Any]:
        """Send a sendMessage payload and return the server's ack data."""
        ...


@dataclass
class PendingMessage:
    temp_id: str
    receiver_id: str
    content: str
    task_id: Optional[str] = None
    state: OutboxState = OutboxState.LOCAL_PENDING
    status: MessageStatus = MessageStatus.SENDING
    message_id: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    def move_to(self, target: OutboxState) -> None:
        if target not in OUTBOX_TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"{self.temp_id}: {self.state.value} -> {target.value}")
        self.state = target
        self.status = OUTBOX_DISPLAY_STATUS[target]

    def apply_receipt(self, status: MessageStatus) -> bool:
        """Advance a confirmed entry on a server receipt. Stale receipts are ignored."""
        status = MessageStatus(status)
        if self.state != OutboxState.CONFIRMED or not can_transition(self.status, status):
            return False
        self.status = status
        return True


class MessageOutbox:
    """Provisional message list for one signed-in client"""

    def __init__(self, transport: MessageTransport, ack_timeout: float = 5.0):
        self.transport = transport
        self.ack_timeout = ack_timeout
        self._entries: Dict[str, PendingMessage] = {}
        self._by_message_id: Dict[str, str] = {}

    @property
    def entries(self) -> List[PendingMessage]:
        return list(self._entries.values())

    def get(self, temp_id: str) -> Optional[PendingMessage]:
        return self._entries.get(temp_id)

    def by_message_id(self, message_id: str) -> Optional[PendingMessage]:
        temp_id = self._by_message_id.get(message_id)
        return self._entries.get(temp_id) if temp_id else None

    async def send(self, receiver_id: str, content: str, task_id: Optional[str] = None) -> PendingMessage:
        """
        Show the message immediately, then wait for the server's ack.

        The returned entry is confirmed or in error; it never stays pending
        past the ack timeout.
        """
        entry = PendingMessage(
            temp_id=f"tmp_{uuid.uuid4().hex[:12]}",
            receiver_id=receiver_id,
            content=content,
            task_id=task_id,
        )
        self._entries[entry.temp_id] = entry

        frame = {"receiverId": receiver_id, "content": content, "clientTempId": entry.temp_id}
        if task_id:
            frame["taskId"] = task_id

        try:
            ack = await asyncio.wait_for(self.transport.submit(frame), timeout=self.ack_timeout)
        except asyncio.TimeoutError:
            self._fail(entry, "Timed out waiting for the server")
            return entry
        except Exception as e:
            self._fail(entry, str(e) or type(e).__name__)
            return entry

        if ack.get("success") and ack.get("messageId"):
            entry.move_to(OutboxState.CONFIRMED)
            entry.message_id = ack["messageId"]
            self._by_message_id[entry.message_id] = entry.temp_id
            if ack.get("status"):
                entry.apply_receipt(MessageStatus(ack["status"]))
        else:
            self._fail(entry, ack.get("error") or "Message was rejected")
        return entry

    async def retry(self, temp_id: str) -> PendingMessage:
        """Re-submit a failed entry as a fresh send; the failed entry is dropped."""
        entry = self._entries.get(temp_id)
        if entry is None:
            raise KeyError(temp_id)
        if entry.state != OutboxState.ERROR:
            raise InvalidTransitionError(f"{temp_id}: only failed messages can be retried")

        del self._entries[temp_id]
        return await self.send(entry.receiver_id, entry.content, task_id=entry.task_id)

    def apply_receipt(self, message_id: str, status: MessageStatus) -> bool:
        entry = self.by_message_id(message_id)
        if entry is None:
            return False
        return entry.apply_receipt(status)

    def _fail(self, entry: PendingMessage, reason: str) -> None:
        entry.move_to(OutboxState.ERROR)
        entry.error = reason
        logger.warning(f"Message {entry.temp_id} to {entry.receiver_id} failed: {reason}")
