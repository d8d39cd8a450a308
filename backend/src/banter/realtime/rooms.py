"""Per-connection chat room subscriptions."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Set

logger = logging.getLogger(__name__)


class RoomMembershipTracker:
    """Maps connections to the chat rooms they joined, and back.

    Membership lives only as long as the connection: nothing here is
    persisted and ``drop_connection`` forgets every room a socket joined.
    """

    def __init__(self) -> None:
        self._connection_rooms: Dict[str, Set[int]] = defaultdict(set)
        self._room_connections: Dict[int, Set[str]] = defaultdict(set)
        self._connection_users: Dict[str, int] = {}

    def join(self, user_id: int, room_id: int, connection_id: str) -> bool:
        """Subscribe ``connection_id`` to ``room_id``; returns ``False`` if already joined."""

        owner = self._connection_users.get(connection_id)
        if owner is not None and owner != user_id:
            logger.warning(
                "Connection %s belongs to user %s, refusing join for user %s",
                connection_id,
                owner,
                user_id,
            )
            return False
        self._connection_users[connection_id] = user_id
        rooms = self._connection_rooms[connection_id]
        if room_id in rooms:
            return False
        rooms.add(room_id)
        self._room_connections[room_id].add(connection_id)
        return True

    def leave(self, connection_id: str, room_id: int) -> bool:
        rooms = self._connection_rooms.get(connection_id)
        if not rooms or room_id not in rooms:
            return False
        rooms.discard(room_id)
        self._discard_subscriber(room_id, connection_id)
        if not rooms:
            self._forget(connection_id)
        return True

    def remove_user(self, user_id: int, room_id: int) -> Set[str]:
        """Unsubscribe every connection of ``user_id`` from ``room_id``."""

        removed = {
            connection_id
            for connection_id in self._room_connections.get(room_id, ())
            if self._connection_users.get(connection_id) == user_id
        }
        for connection_id in removed:
            self.leave(connection_id, room_id)
        return removed

    def drop_connection(self, connection_id: str) -> Set[int]:
        """Remove every subscription of ``connection_id`` and return the rooms it left."""

        rooms = self._connection_rooms.get(connection_id, set())
        for room_id in rooms:
            self._discard_subscriber(room_id, connection_id)
        self._forget(connection_id)
        return set(rooms)

    def _discard_subscriber(self, room_id: int, connection_id: str) -> None:
        subscribers = self._room_connections.get(room_id)
        if subscribers is None:
            return
        subscribers.discard(connection_id)
        if not subscribers:
            self._room_connections.pop(room_id, None)

    def _forget(self, connection_id: str) -> None:
        self._connection_rooms.pop(connection_id, None)
        self._connection_users.pop(connection_id, None)

    def is_user_in_room(self, user_id: int, room_id: int) -> bool:
        return any(
            self._connection_users.get(connection_id) == user_id
            for connection_id in self._room_connections.get(room_id, ())
        )

    def subscribers(self, room_id: int) -> Set[str]:
        return set(self._room_connections.get(room_id, ()))

    def users_in_room(self, room_id: int) -> Set[int]:
        return {
            self._connection_users[connection_id]
            for connection_id in self._room_connections.get(room_id, ())
            if connection_id in self._connection_users
        }

    def rooms_for(self, connection_id: str) -> Set[int]:
        return set(self._connection_rooms.get(connection_id, ()))
