"""Durable presence records.

One row per identity key holds the last known online state, the id of the
connection that set it, and last_seen. Rows carry an expires_at that every
write pushes back; a periodic sweep deletes rows that have gone idle. The
sweep first refreshes identities that still have a live connection, so a
long-lived connection is never swept out from under itself.

Offline writes are conditional on the recorded connection id. Whichever of a
racing "new connection online" and "old connection offline" write lands
second, the newer connection stays recorded as online.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from . import db
from .auth import Identity, IdentityKey

logger = logging.getLogger(__name__)


class PresenceStore:
    """Async facade over the presence table."""

    def __init__(self, ttl: float = 3600.0) -> None:
        self.ttl = ttl

    async def set_online(self, identity: Identity, connection_id: str) -> dict:
        return await db.run_sync(
            db.set_presence_online, identity.as_participant(), connection_id, self.ttl
        )

    async def set_offline(self, key: IdentityKey, connection_id: str) -> dict | None:
        """Mark offline if `connection_id` is still the recorded connection."""
        user_id, user_kind = key
        return await db.run_sync(
            db.set_presence_offline, user_id, user_kind, connection_id, self.ttl
        )

    async def remember(self, identity: Identity) -> None:
        """Refresh the cached profile without changing online state."""
        await db.run_sync(db.upsert_user, identity.as_participant(), self.ttl)

    async def get(self, key: IdentityKey) -> dict | None:
        return await db.run_sync(db.get_presence, *key)

    async def list_online(self) -> list[dict]:
        return await db.run_sync(db.list_online)

    async def sweep(self, live_keys: list[IdentityKey]) -> int:
        """Refresh live identities, then delete expired rows.

        Returns:
            Number of rows deleted.
        """
        await db.run_sync(db.touch_presence, live_keys, self.ttl)
        removed = await db.run_sync(db.delete_expired_presence)
        if removed:
            logger.info(f"Presence sweep removed {removed} expired records")
        return removed


# --- Background sweep ---

_shutdown_event: asyncio.Event | None = None
_sweep_task: asyncio.Task | None = None


def schedule_presence_sweep(
    store: PresenceStore,
    live_keys: Callable[[], list[IdentityKey]],
    interval: float,
) -> None:
    """Run PresenceStore.sweep every `interval` seconds until stopped.

    Called from the app lifespan. An interval of 0 disables the sweep.
    """
    global _shutdown_event, _sweep_task

    if interval <= 0:
        logger.info("Presence sweep disabled")
        return

    _shutdown_event = asyncio.Event()
    shutdown = _shutdown_event

    async def _sweep_loop() -> None:
        while not shutdown.is_set():
            try:
                await asyncio.wait_for(shutdown.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await store.sweep(live_keys())
            except Exception:
                # Continue running, the next interval retries
                logger.error("Presence sweep failed", exc_info=True)

    _sweep_task = asyncio.get_running_loop().create_task(_sweep_loop())
    logger.info(f"Presence sweep scheduled every {interval}s")


def stop_presence_sweep() -> None:
    """Signal the background sweep to stop. Called on shutdown."""
    global _shutdown_event, _sweep_task
    if _shutdown_event is not None:
        _shutdown_event.set()
    _shutdown_event = None
    _sweep_task = None
