"""Live connections and the identity -> connection registry.

The registry holds exactly one connection per identity key. A new connection
from the same identity replaces the old entry (multi-tab and reconnects
supersede, they do not merge), and a disconnect only removes the entry when it
still points at the disconnecting connection. Without that match check a late
disconnect from an old tab would mark an identity offline while its newer
connection is live.

All mutations are single dict operations with no await in between, so the
registry needs no lock under the asyncio event loop.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Iterator, Protocol

from .auth import Identity, IdentityKey

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Anything that can deliver a JSON frame (a Starlette WebSocket, a test fake)."""

    async def send_json(self, data: Any) -> None: ...


class Connection:
    """One authenticated live connection.

    ``lock`` is held while an inbound event from this connection is being
    handled, so events from one client are processed one at a time even when
    handlers suspend on storage calls. Sends go through their own lock so that
    broadcasts from other connections' handlers never interleave frames.
    """

    def __init__(self, transport: Transport, identity: Identity) -> None:
        self.id = uuid.uuid4().hex
        self.transport = transport
        self.identity = identity
        self.connected_at = datetime.now(timezone.utc).isoformat()
        self.lock = asyncio.Lock()
        self._send_lock = asyncio.Lock()

    @property
    def key(self) -> IdentityKey:
        return self.identity.key

    async def send(self, event: str, data: dict) -> None:
        """Send one ``{"event": ..., "data": ...}`` frame."""
        async with self._send_lock:
            await self.transport.send_json({"event": event, "data": data})

    def __repr__(self) -> str:
        return f"<Connection {self.id[:8]} {self.identity.kind}:{self.identity.id}>"


class ConnectionRegistry:
    """Process-scoped map of identity key -> current connection."""

    def __init__(self) -> None:
        self._entries: dict[IdentityKey, Connection] = {}

    def register(self, key: IdentityKey, handle: Connection) -> Connection | None:
        """Make `handle` the current connection for `key`.

        Returns:
            The connection it replaced, if any. It is not closed here.
        """
        previous = self._entries.get(key)
        self._entries[key] = handle
        if previous is not None and previous is not handle:
            logger.debug(f"{handle!r} supersedes {previous!r}")
        return previous

    def lookup(self, key: IdentityKey) -> Connection | None:
        return self._entries.get(key)

    def unregister(self, key: IdentityKey, handle: Connection) -> bool:
        """Remove the entry for `key` only if it is still `handle`.

        Returns:
            True if the entry was removed, False if a newer connection owns it
            (or nothing was registered).
        """
        if self._entries.get(key) is not handle:
            return False
        del self._entries[key]
        return True

    def is_registered(self, handle: Connection) -> bool:
        """True if `handle` is the current connection for its identity."""
        return self._entries.get(handle.key) is handle

    def keys(self) -> list[IdentityKey]:
        return list(self._entries)

    def connections(self) -> list[Connection]:
        return list(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[IdentityKey]:
        return iter(list(self._entries))
