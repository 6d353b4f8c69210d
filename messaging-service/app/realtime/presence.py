"""
Presence / Connection Registry

Process-local routing table from user id to live socket connections.
One instance is created per application (see main.lifespan) and injected
wherever it is needed; nothing here is persisted, so a restart starts
everyone offline and the stores remain the source of truth.

All mutating methods are synchronous: on a single event loop they run
without interleaving, which is all the atomicity connect/disconnect needs.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional, Set

from app.middleware.error_handler import DeliveryError

logger = logging.getLogger(__name__)


class ClientConnection:
    """
    One live real-time connection for an authenticated user.

    `transport` is anything with an async `send_json(dict)` method,
    normally a Starlette WebSocket.
    """

    def __init__(self, user_id: str, transport: Any, connection_id: Optional[str] = None):
        self.id = connection_id or f"conn_{uuid.uuid4().hex[:12]}"
        self.user_id = user_id
        self.transport = transport
        self.joined_peers: Set[str] = set()

    async def send(self, event: Dict[str, Any]) -> None:
        """Send one event. Transport failures surface as DeliveryError."""
        try:
            await self.transport.send_json(event)
        except Exception as e:
            raise DeliveryError(
                f"Send to connection {self.id} failed: {e}",
                user_id=self.user_id,
                details={"connection_id": self.id, "event": event.get("type")},
            ) from e

    def __repr__(self) -> str:
        return f"ClientConnection(id={self.id!r}, user_id={self.user_id!r})"


class PresenceRegistry:
    """Maps user ids to their live connections (multi-device aware)"""

    def __init__(self):
        self._connections: Dict[str, Set[ClientConnection]] = {}

    def register(self, user_id: str, connection: ClientConnection) -> None:
        """Add a connection. Several per user are legal."""
        self._connections.setdefault(user_id, set()).add(connection)
        logger.info(
            f"User {user_id} connected ({connection.id}), "
            f"{len(self._connections[user_id])} active connection(s)"
        )

    def unregister(self, user_id: str, connection: ClientConnection) -> None:
        """Remove a connection; the user goes offline with their last one."""
        connections = self._connections.get(user_id)
        if not connections:
            return
        connections.discard(connection)
        connection.joined_peers.clear()
        if not connections:
            del self._connections[user_id]
            logger.info(f"User {user_id} disconnected ({connection.id}), now offline")
        else:
            logger.info(
                f"User {user_id} disconnected ({connection.id}), "
                f"{len(connections)} connection(s) remaining"
            )

    def is_online(self, user_id: str) -> bool:
        return bool(self._connections.get(user_id))

    def connections_for(self, user_id: str) -> Set[ClientConnection]:
        """Snapshot of a user's connections; safe to iterate across awaits."""
        return set(self._connections.get(user_id, ()))

    def join(self, connection: ClientConnection, peer_id: str) -> None:
        """Record that this connection has the conversation with peer_id open."""
        connection.joined_peers.add(peer_id)

    def leave(self, connection: ClientConnection, peer_id: str) -> None:
        connection.joined_peers.discard(peer_id)

    def has_joined(self, user_id: str, peer_id: str) -> bool:
        """True if any of user_id's connections has the chat with peer_id open."""
        return any(peer_id in c.joined_peers for c in self._connections.get(user_id, ()))

    def online_users(self) -> List[str]:
        return list(self._connections)

    def connection_count(self) -> int:
        return sum(len(c) for c in self._connections.values())

    def clear(self) -> None:
        """Drop all entries (application shutdown)."""
        count = self.connection_count()
        self._connections.clear()
        logger.info(f"Presence registry cleared ({count} connection(s) dropped)")
