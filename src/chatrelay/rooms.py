"""Room membership for live connections.

A room is a broadcast group keyed by conversation id. Membership belongs to
connections, not identities, and never touches the stored conversation: a
participant who is online but has not joined a conversation's room is not a
member of it.

Broadcasts send to a snapshot of the room concurrently with asyncio.gather().
A connection whose send fails is dropped from every room; its disconnect
handler will finish the cleanup.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable

from .registry import Connection

logger = logging.getLogger(__name__)


class RoomManager:
    """Per-connection room membership and room broadcast."""

    def __init__(self) -> None:
        self._rooms: dict[str, set[Connection]] = defaultdict(set)
        self._memberships: dict[Connection, set[str]] = defaultdict(set)
        # room -> (lock, number of tasks holding or waiting on it)
        self._sequencers: dict[str, tuple[asyncio.Lock, int]] = {}

    def join(self, room: str, conn: Connection) -> bool:
        """Add a connection to a room. Returns False if it was already there."""
        if conn in self._rooms[room]:
            return False
        self._rooms[room].add(conn)
        self._memberships[conn].add(room)
        return True

    def leave(self, room: str, conn: Connection) -> bool:
        members = self._rooms.get(room)
        if not members or conn not in members:
            return False
        members.discard(conn)
        self._memberships[conn].discard(room)
        if not self._memberships[conn]:
            del self._memberships[conn]
        self._forget_if_empty(room)
        return True

    def drop(self, conn: Connection) -> list[str]:
        """Remove a connection from every room it joined."""
        rooms = sorted(self._memberships.pop(conn, set()))
        for room in rooms:
            self._rooms[room].discard(conn)
            self._forget_if_empty(room)
        return rooms

    def members(self, room: str) -> frozenset[Connection]:
        return frozenset(self._rooms.get(room, ()))

    def rooms_of(self, conn: Connection) -> frozenset[str]:
        return frozenset(self._memberships.get(conn, ()))

    def is_member(self, room: str, conn: Connection) -> bool:
        return conn in self._rooms.get(room, ())

    def room_count(self) -> int:
        return len(self._rooms)

    @asynccontextmanager
    async def sequencer(self, room: str) -> AsyncIterator[None]:
        """Hold the lock that orders persist-then-broadcast for one room.

        The lock is forgotten once no task holds or waits on it.
        """
        lock, users = self._sequencers.get(room, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._sequencers[room] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._sequencers[room]
            if users == 1:
                del self._sequencers[room]
            else:
                self._sequencers[room] = (lock, users - 1)

    def _forget_if_empty(self, room: str) -> None:
        if room in self._rooms and not self._rooms[room]:
            del self._rooms[room]

    async def broadcast(
        self,
        room: str,
        event: str,
        data: dict,
        exclude: Connection | None = None,
        members: Iterable[Connection] | None = None,
    ) -> int:
        """Send an event to every member of a room.

        Args:
            room: Room key
            event: Event name
            data: Event payload
            exclude: Connection that should not receive the event
            members: Snapshot to send to instead of the current membership

        Returns:
            Number of connections the event was handed to.
        """
        snapshot = self.members(room) if members is None else members
        targets = [conn for conn in snapshot if conn is not exclude]
        return await self.send_all(targets, event, data)

    async def send_all(self, targets: Iterable[Connection], event: str, data: dict) -> int:
        """Send an event to many connections concurrently."""
        targets = list(targets)
        if not targets:
            return 0

        results = await asyncio.gather(
            *[conn.send(event, data) for conn in targets],
            return_exceptions=True,
        )

        delivered = 0
        for conn, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(f"Failed to send {event} to {conn!r}: {result}")
                self.drop(conn)
            else:
                delivered += 1
        return delivered
