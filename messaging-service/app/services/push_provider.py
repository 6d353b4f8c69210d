"""
Remote push delivery through the Expo push service.

The mobile client registers an Expo push token with the user service; this
module turns messages and notifications into Expo push requests, returns
the per-message tickets, and looks up receipts for those tickets later.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from app.core.circuit_breaker import CircuitBreaker, CircuitBreakerError, push_circuit_breaker

logger = logging.getLogger(__name__)

EXPO_PUSH_SEND_URL = "https://exp.host/--/api/v2/push/send"
EXPO_PUSH_RECEIPTS_URL = "https://exp.host/--/api/v2/push/getReceipts"

# Limits enforced by the Expo push API
PUSH_CHUNK_LIMIT = 100
RECEIPT_CHUNK_LIMIT = 300

_EXPO_TOKEN_RE = re.compile(r"^Expo(nent)?PushToken\[.+\]$")
_UUID_TOKEN_RE = re.compile(r"^[a-z\d]{8}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{12}$", re.IGNORECASE)


def is_expo_push_token(token: Optional[str]) -> bool:
    """Check that a token looks like something Expo will accept."""
    if not token:
        return False
    return bool(_EXPO_TOKEN_RE.match(token) or _UUID_TOKEN_RE.match(token))


def chunk(items: List[Any], size: int) -> List[List[Any]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


@dataclass
class PushMessage:
    """One push notification addressed to one device token"""
    to: str
    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)
    sound: str = "default"
    priority: str = "high"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "to": self.to,
            "title": self.title,
            "body": self.body,
            "data": self.data,
            "sound": self.sound,
            "priority": self.priority,
        }


@dataclass
class PushTicket:
    """Provider's immediate answer for one submitted push message"""
    status: str
    id: Optional[str] = None
    message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PushTicket":
        return cls(
            status=data.get("status", "error"),
            id=data.get("id"),
            message=data.get("message"),
            details=data.get("details") or {},
        )


@dataclass
class PushReceipt:
    """Final delivery outcome for a ticket, fetched later"""
    ticket_id: str
    status: str
    message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def error_code(self) -> Optional[str]:
        return self.details.get("error")


class PushProvider(ABC):
    """Abstract push provider.

    Implementations must never raise from send(): a failed chunk is logged
    and skipped so the remaining chunks still go out.
    """

    provider_name: str = "base"

    @abstractmethod
    async def send(self, messages: List[PushMessage]) -> List[PushTicket]:
        raise NotImplementedError

    @abstractmethod
    async def get_receipts(self, ticket_ids: List[str]) -> Dict[str, PushReceipt]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class ExpoPushProvider(PushProvider):
    """Expo push service client (https://docs.expo.dev/push-notifications/sending-notifications/)"""

    provider_name = "expo"

    def __init__(
        self,
        access_token: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = headers
        self._circuit_breaker = circuit_breaker or push_circuit_breaker

    async def send(self, messages: List[PushMessage]) -> List[PushTicket]:
        valid = []
        for msg in messages:
            if is_expo_push_token(msg.to):
                valid.append(msg)
            else:
                logger.error(f"Push token {msg.to} is not a valid Expo push token")

        tickets: List[PushTicket] = []
        for index, batch in enumerate(chunk(valid, PUSH_CHUNK_LIMIT)):
            try:
                async with self._circuit_breaker:
                    response = await self._client.post(
                        EXPO_PUSH_SEND_URL,
                        json=[m.to_payload() for m in batch],
                        headers=self._headers,
                    )
                    response.raise_for_status()
                tickets.extend(PushTicket.from_dict(t) for t in response.json().get("data", []))
            except CircuitBreakerError as e:
                logger.warning(f"Push chunk {index} skipped: {e}")
            except Exception as e:
                logger.error(
                    f"Error sending push chunk {index} ({len(batch)} message(s)): {e}",
                    extra={"provider": self.provider_name},
                )

        for ticket in tickets:
            if not ticket.ok:
                logger.error(
                    f"Push ticket error: {ticket.message} "
                    f"(code: {ticket.details.get('error', 'unknown')})"
                )
        return tickets

    async def get_receipts(self, ticket_ids: List[str]) -> Dict[str, PushReceipt]:
        receipts: Dict[str, PushReceipt] = {}
        for index, batch in enumerate(chunk(list(ticket_ids), RECEIPT_CHUNK_LIMIT)):
            try:
                async with self._circuit_breaker:
                    response = await self._client.post(
                        EXPO_PUSH_RECEIPTS_URL,
                        json={"ids": batch},
                        headers=self._headers,
                    )
                    response.raise_for_status()
                for ticket_id, raw in (response.json().get("data") or {}).items():
                    receipts[ticket_id] = PushReceipt(
                        ticket_id=ticket_id,
                        status=raw.get("status", "error"),
                        message=raw.get("message"),
                        details=raw.get("details") or {},
                    )
            except CircuitBreakerError as e:
                logger.warning(f"Receipt chunk {index} skipped: {e}")
            except Exception as e:
                logger.error(f"Error checking receipts for chunk {index}: {e}")
        return receipts

    async def close(self) -> None:
        await self._client.aclose()
