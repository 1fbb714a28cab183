"""Room membership table - which connections are subscribed to which room."""

import logging

from roomcast.connections import ConnectionRegistry

logger = logging.getLogger(__name__)


class MembershipTable:
    """Maps room ids to their subscribed connections.

    A connection is a member of at most one room at a time: joining a room
    first removes the connection from whatever room it was in.
    """

    def __init__(self, registry: ConnectionRegistry) -> None:
        self._registry = registry
        self._members: dict[str, set[str]] = {}
        self._room_of: dict[str, str] = {}

    def join(self, connection_id: str, room_id: str) -> set[str]:
        """Subscribe a connection to a room and return the room's members."""
        connection = self._registry.get(connection_id)

        previous = self._room_of.get(connection_id)
        if previous is not None and previous != room_id:
            self._discard(connection_id, previous)

        self._members.setdefault(room_id, set()).add(connection_id)
        self._room_of[connection_id] = room_id
        connection.room_id = room_id
        logger.debug("Connection %s joined room %s", connection_id, room_id)
        return self.members_of(room_id)

    def leave(self, connection_id: str) -> str | None:
        """Unsubscribe a connection from its room, if any.

        Returns the room that was left.
        """
        room_id = self._room_of.pop(connection_id, None)
        if room_id is None:
            return None

        self._discard(connection_id, room_id)
        connection = self._registry.find(connection_id)
        if connection is not None:
            connection.room_id = None
        logger.debug("Connection %s left room %s", connection_id, room_id)
        return room_id

    def members_of(self, room_id: str) -> set[str]:
        """Current members of a room, copied at call time."""
        return set(self._members.get(room_id, ()))

    def room_of(self, connection_id: str) -> str | None:
        return self._room_of.get(connection_id)

    def rooms(self) -> list[str]:
        return list(self._members)

    def _discard(self, connection_id: str, room_id: str) -> None:
        members = self._members.get(room_id)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self._members[room_id]
