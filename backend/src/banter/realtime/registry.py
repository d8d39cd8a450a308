"""Connection and presence bookkeeping for websocket sessions."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Set

from app.monitoring.metrics import realtime_connections

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coerce_user_id(value: Any) -> int | None:
    """Return ``value`` as a positive user id, or ``None`` when it is malformed."""

    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    return None


@dataclass(slots=True)
class ConnectionSession:
    connection_id: str
    user_id: int
    connected_at: datetime


@dataclass(slots=True)
class PresenceRecord:
    online: bool = False
    last_seen: datetime | None = None
    updated_at: datetime | None = field(default=None, repr=False)


class ConnectionRegistry:
    """Tracks live connections per user and the derived online flag.

    All mutators are synchronous so they complete without yielding to the
    event loop. They return ``True`` only when the user's online flag flipped,
    which is the caller's cue to broadcast ``userOnline``/``userOffline``.
    """

    def __init__(self, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._sessions: Dict[str, ConnectionSession] = {}
        self._user_connections: Dict[int, Set[str]] = defaultdict(set)
        self._presence: Dict[int, PresenceRecord] = {}

    def _record(self, user_id: int) -> PresenceRecord:
        record = self._presence.get(user_id)
        if record is None:
            record = PresenceRecord()
            self._presence[user_id] = record
        return record

    def _validated(self, user_id: Any, action: str) -> int | None:
        parsed = coerce_user_id(user_id)
        if parsed is None:
            logger.warning("Ignoring %s for malformed user id %r", action, user_id)
        return parsed

    def _mark_online(self, user_id: int) -> bool:
        record = self._record(user_id)
        if record.online:
            return False
        record.online = True
        record.updated_at = self._clock()
        return True

    def _mark_offline(self, user_id: int) -> bool:
        record = self._presence.get(user_id)
        if record is None or not record.online:
            return False
        now = self._clock()
        record.online = False
        record.last_seen = now
        record.updated_at = now
        return True

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------
    def register_connection(self, user_id: Any, connection_id: str) -> bool:
        parsed = self._validated(user_id, "register")
        if parsed is None:
            return False

        existing = self._sessions.get(connection_id)
        if existing is not None and existing.user_id != parsed:
            # A connection re-announcing itself as someone else drops the old identity.
            self.deregister_connection(existing.user_id, connection_id)
            existing = None
        if existing is None:
            self._sessions[connection_id] = ConnectionSession(
                connection_id=connection_id, user_id=parsed, connected_at=self._clock()
            )
            self._user_connections[parsed].add(connection_id)
            realtime_connections.inc()
        return self._mark_online(parsed)

    def deregister_connection(self, user_id: Any, connection_id: str) -> bool:
        parsed = self._validated(user_id, "deregister")
        if parsed is None:
            return False

        session = self._sessions.get(connection_id)
        if session is None or session.user_id != parsed:
            logger.debug("Connection %s is not registered for user %s", connection_id, parsed)
            return False

        del self._sessions[connection_id]
        realtime_connections.dec()
        remaining = self._user_connections.get(parsed)
        if remaining is not None:
            remaining.discard(connection_id)
            if remaining:
                return False
            self._user_connections.pop(parsed, None)
        return self._mark_offline(parsed)

    def set_online(self, user_id: Any) -> bool:
        parsed = self._validated(user_id, "set_online")
        if parsed is None:
            return False
        return self._mark_online(parsed)

    def set_offline(self, user_id: Any) -> bool:
        parsed = self._validated(user_id, "set_offline")
        if parsed is None:
            return False
        return self._mark_offline(parsed)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def is_online(self, user_id: int) -> bool:
        record = self._presence.get(user_id)
        return bool(record and record.online)

    def last_seen(self, user_id: int) -> datetime | None:
        record = self._presence.get(user_id)
        return record.last_seen if record else None

    def presence(self, user_id: int) -> PresenceRecord | None:
        return self._presence.get(user_id)

    def online_user_ids(self) -> list[int]:
        return sorted(user_id for user_id, record in self._presence.items() if record.online)

    def connections_for(self, user_id: int) -> Set[str]:
        return set(self._user_connections.get(user_id, ()))

    def all_connections(self) -> Set[str]:
        return set(self._sessions)

    def session(self, connection_id: str) -> ConnectionSession | None:
        return self._sessions.get(connection_id)

    def user_for(self, connection_id: str) -> int | None:
        session = self._sessions.get(connection_id)
        return session.user_id if session else None
