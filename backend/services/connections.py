"""ConnectionRegistry — live socket connections, their users and conversation rooms.

Owned by the application lifespan (``app.state.connections``) and injected into
the relay; there is no module-level registry.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from services.conversations import EphemeralConversation

logger = logging.getLogger(__name__)

Sender = Callable[[str, dict], Awaitable[None]]


def room_name(conversation_id: int) -> str:
    return f"conversation:{conversation_id}"


@dataclass(eq=False)
class Connection:
    send: Sender
    user_id: int | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    rooms: set[str] = field(default_factory=set)
    # Guest-only state, dropped with the connection
    guest_conversations: dict[int, EphemeralConversation] = field(default_factory=dict)
    guest_messages_sent: int = 0

    @property
    def is_guest(self) -> bool:
        return self.user_id is None


class ConnectionRegistry:
    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}
        self._by_user: dict[int, set[str]] = {}
        self._rooms: dict[str, set[str]] = {}

    def add(self, connection: Connection) -> Connection:
        self._connections[connection.id] = connection
        if connection.user_id is not None:
            self._by_user.setdefault(connection.user_id, set()).add(connection.id)
        logger.info(
            "Connection %s opened (user=%s, total=%d)",
            connection.id, connection.user_id, len(self._connections),
        )
        return connection

    def remove(self, connection_id: str) -> Connection | None:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return None
        if connection.user_id is not None:
            ids = self._by_user.get(connection.user_id)
            if ids is not None:
                ids.discard(connection_id)
                if not ids:
                    del self._by_user[connection.user_id]
        for room in list(connection.rooms):
            self._leave(connection, room)
        logger.info("Connection %s closed (total=%d)", connection_id, len(self._connections))
        return connection

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def user_connections(self, user_id: int) -> list[Connection]:
        return [self._connections[cid] for cid in self._by_user.get(user_id, ()) if cid in self._connections]

    def is_user_connected(self, user_id: int) -> bool:
        return bool(self._by_user.get(user_id))

    def join(self, connection_id: str, room: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is None:
            return
        connection.rooms.add(room)
        self._rooms.setdefault(room, set()).add(connection_id)

    def leave(self, connection_id: str, room: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is not None:
            self._leave(connection, room)

    def _leave(self, connection: Connection, room: str) -> None:
        connection.rooms.discard(room)
        members = self._rooms.get(room)
        if members is not None:
            members.discard(connection.id)
            if not members:
                del self._rooms[room]

    def room_members(self, room: str, exclude: str | None = None) -> list[Connection]:
        return [
            self._connections[cid]
            for cid in self._rooms.get(room, ())
            if cid != exclude and cid in self._connections
        ]

    def stats(self) -> dict:
        return {
            "totalConnections": len(self._connections),
            "connectedUsers": len(self._by_user),
            "rooms": len(self._rooms),
        }
