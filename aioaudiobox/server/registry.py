"""Room membership of live transport connections."""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """
    Tracks which room(s) each connection belongs to.

    A room is named after the stream id it carries. The registry knows nothing
    about owners or listeners; that is derived by the session table.
    """

    _rooms: dict[str, set[str]]
    """Room id -> connection ids."""
    _memberships: dict[str, set[str]]
    """Connection id -> room ids."""

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._rooms = {}
        self._memberships = {}

    def join(self, connection_id: str, room_id: str) -> None:
        """Add a connection to a room. Joining twice is a no-op."""
        self._rooms.setdefault(room_id, set()).add(connection_id)
        self._memberships.setdefault(connection_id, set()).add(room_id)

    def leave(self, connection_id: str, room_id: str) -> bool:
        """
        Remove a connection from a room.

        Returns:
            True if the connection was a member, False if nothing changed.
        """
        members = self._rooms.get(room_id)
        if members is None or connection_id not in members:
            return False
        members.discard(connection_id)
        if not members:
            del self._rooms[room_id]
        rooms = self._memberships.get(connection_id)
        if rooms is not None:
            rooms.discard(room_id)
            if not rooms:
                del self._memberships[connection_id]
        return True

    def members_of(self, room_id: str) -> frozenset[str]:
        """Return a snapshot of the connections in a room."""
        return frozenset(self._rooms.get(room_id, ()))

    def is_member(self, connection_id: str, room_id: str) -> bool:
        """Check whether a connection is in a room."""
        return connection_id in self._rooms.get(room_id, ())

    def rooms_of(self, connection_id: str) -> frozenset[str]:
        """Return a snapshot of the rooms a connection is in."""
        return frozenset(self._memberships.get(connection_id, ()))

    def close_room(self, room_id: str) -> frozenset[str]:
        """Remove every member from a room and return who was in it."""
        members = self._rooms.pop(room_id, set())
        for connection_id in members:
            rooms = self._memberships.get(connection_id)
            if rooms is not None:
                rooms.discard(room_id)
                if not rooms:
                    del self._memberships[connection_id]
        return frozenset(members)

    def drop_connection(self, connection_id: str) -> frozenset[str]:
        """
        Remove a closing connection from all its rooms.

        Each room is reported once, so callers can react exactly once per room
        even when the connection was owner of one and listener of others.
        """
        rooms = self._memberships.pop(connection_id, set())
        for room_id in rooms:
            members = self._rooms.get(room_id)
            if members is None:
                continue
            members.discard(connection_id)
            if not members:
                del self._rooms[room_id]
        if rooms:
            logger.debug("Connection %s dropped from rooms %s", connection_id, sorted(rooms))
        return frozenset(rooms)
